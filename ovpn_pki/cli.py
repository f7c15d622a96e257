import argparse
import sys
from pathlib import Path

from . import __version__
from .config import TOOLCHAINS, Config
from .errors import PkiError
from .facade import OperationResult, OpenVpnPki
from .log import configure_logging, get_logger
from .models import utcnow

logger = get_logger("cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ovpn-pki",
        description="OpenVPN PKI management: CA, client certificates, backups and the server container.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    parser.add_argument("-d", "--data-volume", help="Instance (data volume) name [OVPN_DATA]")
    parser.add_argument("-i", "--image", help="OpenVPN container image [OPENVPN_IMAGE]")
    parser.add_argument("--data-dir", type=Path, help="Directory holding the instance roots [OVPN_HOME]")
    parser.add_argument("--toolchain", choices=TOOLCHAINS, help="PKI toolchain [OVPN_TOOLCHAIN]")
    parser.add_argument("--audit-log", type=Path, help="Append lifecycle events to this file")

    sub = parser.add_subparsers(dest="command", metavar="command")

    p = sub.add_parser("init", help="Initialize the configuration and the PKI")
    p.add_argument("server_url", help="Server URL, e.g. udp://vpn.example.com:1194")

    sub.add_parser("start", help="Start the OpenVPN server")
    sub.add_parser("stop", help="Stop the OpenVPN server")
    sub.add_parser("status", help="Show instance and server status")
    p = sub.add_parser("logs", help="Show server logs")
    p.add_argument("-n", "--tail", type=int, default=10, help="Number of lines [10]")

    p = sub.add_parser("client-add", help="Issue a client certificate")
    p.add_argument("name")
    p = sub.add_parser("client-get", help="Print the inline client profile")
    p.add_argument("name")
    p.add_argument("-o", "--output", type=Path, help="Write the profile to this file")
    sub.add_parser("client-list", help="List client certificates")
    p = sub.add_parser("client-revoke", help="Revoke a client certificate")
    p.add_argument("name")
    sub.add_parser("refresh-crl", help="Regenerate the certificate revocation list")

    p = sub.add_parser("backup", help="Back up the whole PKI")
    p.add_argument("path", nargs="?", type=Path, help="Archive file or directory [current directory]")
    p = sub.add_parser("restore", help="Replace the PKI with a backup")
    p.add_argument("path", type=Path)
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    p = sub.add_parser("inspect", help="Verify a backup without restoring it")
    p.add_argument("path", type=Path)

    sub.add_parser("update", help="Pull the latest server image")
    return parser


# =========================
# OUTPUT
# =========================
def _report(result: OperationResult, success: str = "") -> int:
    for warning in result.warnings:
        logger.warning("%s", warning)
    if not result.ok:
        logger.error("%s", result.error)
        return EXIT_FAILURE
    if success:
        logger.info("%s", success)
    return EXIT_OK


def print_clients(clients) -> None:
    if not clients:
        print("[i] No clients have been issued")
        return

    now = utcnow()
    print("=" * 80)
    print(f"{'Status':<8} {'Client Name':<24} {'Expires':<24} {'Serial'}")
    print("-" * 80)
    for cert in clients:
        status = "VALID" if cert.active else "REVOKED"
        if cert.expires_at:
            expiry = cert.expires_at.strftime("%Y-%m-%d")
            if cert.active:
                days = (cert.expires_at - now).days
                expiry += f" ({days} days)" if days >= 30 else f" ! ({days} days)"
        else:
            expiry = "-"
        print(f"{status:<8} {cert.name:<24} {expiry:<24} {cert.serial}")
    print("=" * 80)


def print_status(info) -> None:
    print(f"Instance:        {info['instance']} ({info['phase']})")
    print(f"Server:          {info['server'] or '-'}")
    print(f"CA fingerprint:  {info['ca_fingerprint'] or '-'}")
    print(f"Clients:         {info['active_clients']} active, {info['revoked_clients']} revoked")
    crl = info["crl_next_update"] or "-"
    if info["crl_stale"]:
        crl += " (STALE)"
    print(f"CRL next update: {crl}")
    print(f"Container:       {info.get('container', '-')} "
          f"({'running' if info.get('running') else 'not running'})")
    if info.get("log_tail"):
        print("Recent logs:")
        print(info["log_tail"].rstrip())


def confirm_restore(path: Path) -> bool:
    if not sys.stdin.isatty():
        return False
    logger.warning("This will overwrite existing PKI data in the instance!")
    answer = input(f"Restore from {path}? (yes/no): ")
    return answer.strip().lower() == "yes"


# =========================
# COMMANDS
# =========================
def run_command(pki: OpenVpnPki, args) -> int:
    cmd = args.command

    if cmd == "init":
        result = pki.init(args.server_url)
        code = _report(result, "PKI initialization complete")
        if result.ok:
            print(f"CA fingerprint: {result.value.ca_fingerprint}")
        return code

    if cmd == "client-add":
        result = pki.add_client(args.name)
        code = _report(result, f"Client certificate created for: {args.name}")
        if result.ok:
            print(f"Serial: {result.value.serial}")
        return code

    if cmd == "client-get":
        result = pki.get_client(args.name)
        if result.ok:
            if args.output:
                args.output.write_text(result.value)
                logger.info("Client configuration saved to: %s", args.output)
            else:
                sys.stdout.write(result.value)
        return _report(result)

    if cmd == "client-list":
        result = pki.list_clients()
        _report(result)
        print_clients(result.value or [])
        return EXIT_OK

    if cmd == "client-revoke":
        return _report(pki.revoke_client(args.name), f"Client certificate revoked: {args.name}")

    if cmd == "refresh-crl":
        return _report(pki.refresh_crl(), "CRL regenerated")

    if cmd == "backup":
        result = pki.backup(args.path)
        code = _report(result)
        if result.ok:
            logger.info("Backup created successfully: %s", result.value.path)
            print(result.value.digest)
        return code

    if cmd == "restore":
        confirm = args.yes or confirm_restore(args.path)
        if not confirm:
            logger.info("Restore cancelled")
        return _report(pki.restore(args.path, confirm=confirm), "Restore completed successfully")

    if cmd == "inspect":
        result = pki.inspect_backup(args.path)
        if result.ok:
            snap = result.value
            print(f"Instance: {snap.instance_id}")
            print(f"Created:  {snap.created_at.isoformat() if snap.created_at else '-'}")
            print(f"Files:    {snap.file_count}")
            print(f"Digest:   {snap.digest}")
        return _report(result)

    if cmd == "start":
        return _report(pki.start())
    if cmd == "stop":
        return _report(pki.stop())

    if cmd == "status":
        result = pki.status()
        _report(result)
        print_status(result.value)
        return EXIT_OK

    if cmd == "logs":
        result = pki.logs(args.tail)
        if result.ok:
            sys.stdout.write(result.value)
        return _report(result)

    if cmd == "update":
        return _report(pki.update())

    raise ValueError(f"unhandled command {cmd!r}")


def main(argv=None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_USAGE
    if not args.command:
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        config = Config.from_env().replace(
            data_volume=args.data_volume,
            image=args.image,
            data_dir=args.data_dir,
            toolchain=args.toolchain,
            audit_log=args.audit_log,
            debug=True if args.verbose else None,
        )
    except PkiError as e:
        configure_logging()
        logger.error("%s", e)
        return EXIT_USAGE

    configure_logging(config.debug, config.audit_log)
    logger.debug("Using data volume %s under %s", config.data_volume, config.data_dir)

    try:
        pki = OpenVpnPki(config)
    except PkiError as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    try:
        return run_command(pki, args)
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return EXIT_FAILURE
    finally:
        pki.close()
