"""Crypto toolchain adapters.

A toolchain performs the actual key generation, signing and CRL work. The
state machine decides when each call happens; adapters only translate one
call into toolchain invocations and toolchain output into results. Nothing
here retries: re-running an issuance would mint a second certificate.
"""

import os
import secrets
import shlex
import subprocess
from datetime import datetime
from typing import Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from .errors import (
    InvalidInput, NotFound, PassphraseRequired, Timeout, ToolchainError,
    ToolchainNotFound,
)
from .log import get_logger
from .models import CAHandle, IssuedCertificate, validate_client_name

logger = get_logger(__name__)

CA_CERT = "pki/ca.crt"
CA_KEY = "pki/private/ca.key"
CRL_FILE = "pki/crl.pem"
TA_KEY = "pki/ta.key"
INDEX_FILE = "pki/index.txt"
SERIAL_FILE = "pki/serial"
ISSUED_DIR = "pki/issued/"
PRIVATE_DIR = "pki/private/"

STDERR_EXCERPT = 2000
PASSPHRASE_PROMPTS = ("enter pass phrase", "enter pem pass phrase", "passphrase:")


# =========================
# CERTIFICATE HELPERS
# =========================
def format_serial(number: int) -> str:
    """Uppercase hex with an even number of digits, as openssl writes serials."""
    text = format(number, "X")
    return text if len(text) % 2 == 0 else "0" + text


def load_certificate(pem: bytes) -> x509.Certificate:
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise ToolchainError(f"Toolchain produced an unreadable certificate: {e}") from e


def common_name(cert: x509.Certificate) -> str:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else cert.subject.rfc4514_string()


def ca_handle_from_pem(pem: bytes) -> CAHandle:
    cert = load_certificate(pem)
    return CAHandle(
        subject=common_name(cert),
        fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        key_ref=CA_KEY,
    )


def issued_from_pem(pem: bytes) -> IssuedCertificate:
    cert = load_certificate(pem)
    return IssuedCertificate(serial=format_serial(cert.serial_number), expires_at=cert.not_valid_after_utc)


def crl_next_update(pem: bytes) -> Optional[datetime]:
    try:
        crl = x509.load_pem_x509_crl(pem)
    except ValueError as e:
        raise ToolchainError(f"Toolchain produced an unreadable CRL: {e}") from e
    return crl.next_update_utc


def make_static_key(bits: int = 2048) -> bytes:
    """OpenVPN static key (V1 format) used for tls-crypt."""
    hexdata = secrets.token_hex(bits // 8)
    lines = [hexdata[i:i + 32] for i in range(0, len(hexdata), 32)]
    body = "\n".join(lines)
    return (
        f"#\n# {bits} bit OpenVPN static key\n#\n"
        f"-----BEGIN OpenVPN Static key V1-----\n{body}\n"
        f"-----END OpenVPN Static key V1-----\n"
    ).encode("ascii")


# =========================
# ADAPTER CONTRACT
# =========================
class Toolchain:
    """Operations every crypto toolchain offers to the state machine."""

    name = "toolchain"

    def __init__(self, store):
        self.store = store

    def check_name(self, name: str) -> str:
        # Callers validate too; unsafe names must never reach the toolchain.
        return validate_client_name(name)

    def init_ca(self, subject: str) -> CAHandle:
        raise NotImplementedError

    def issue_client_cert(self, name: str) -> IssuedCertificate:
        raise NotImplementedError

    def revoke_cert(self, serial: str) -> None:
        raise NotImplementedError

    def regenerate_crl(self) -> Optional[datetime]:
        raise NotImplementedError


def easyrsa_settings(config) -> Dict[str, str]:
    """EASYRSA_* variables matching the configuration."""
    return {
        "EASYRSA_ALGO": config.key_algorithm,
        "EASYRSA_KEY_SIZE": str(config.key_size),
        "EASYRSA_CURVE": config.curve,
        "EASYRSA_CA_EXPIRE": str(config.ca_days),
        "EASYRSA_CERT_EXPIRE": str(config.cert_days),
        "EASYRSA_CRL_DAYS": str(config.crl_days),
    }


def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", "replace")
    return data


def _wants_passphrase(output: str) -> bool:
    lowered = output.lower()
    return any(prompt in lowered for prompt in PASSPHRASE_PROMPTS)


# =========================
# EASY-RSA SUBPROCESS ADAPTER
# =========================
class EasyRsaToolchain(Toolchain):
    """Drives an easy-rsa binary working directly on the store's ``pki`` tree."""

    name = "easyrsa"

    def __init__(self, store, binary: str = "easyrsa", timeout: float = 120.0,
                 settings: Optional[Dict[str, str]] = None):
        super().__init__(store)
        self.binary = binary
        self.timeout = timeout
        self.settings = dict(settings or {})

    @property
    def pki_dir(self) -> str:
        return str(self.store.root / "pki")

    def _environment(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = {"EASYRSA_PKI": self.pki_dir, "EASYRSA_BATCH": "1"}
        env.update(self.settings)
        env.update(extra or {})
        return env

    def _argv(self, args: List[str], env: Dict[str, str]) -> List[str]:
        return shlex.split(self.binary) + args

    def _process_env(self, env: Dict[str, str]) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(env)
        return merged

    def _run(self, *args: str, extra_env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
        env = self._environment(extra_env)
        argv = self._argv(list(args), env)
        logger.debug("Running toolchain: %s", shlex.join(argv))
        try:
            result = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=self._process_env(env),
                check=False,
            )
        except FileNotFoundError:
            raise ToolchainNotFound(f"{argv[0]} is not installed or not in PATH") from None
        except subprocess.TimeoutExpired as e:
            output = _text(e.stdout) + _text(e.stderr)
            if _wants_passphrase(output):
                raise PassphraseRequired(
                    f"{args[0]} is waiting for a passphrase; run it interactively or use a key without one",
                    argv=argv, stderr=_text(e.stderr)[-STDERR_EXCERPT:],
                ) from None
            raise Timeout(f"{args[0]} did not finish within {self.timeout:g}s") from None

        if result.returncode != 0:
            excerpt = (result.stderr or "")[-STDERR_EXCERPT:]
            if _wants_passphrase((result.stdout or "") + (result.stderr or "")):
                raise PassphraseRequired(
                    f"{args[0]} needs a passphrase that was not supplied",
                    argv=argv, returncode=result.returncode, stderr=excerpt,
                )
            detail = excerpt.strip().splitlines()[-1] if excerpt.strip() else "no error output"
            raise ToolchainError(
                f"{args[0]} exited with status {result.returncode}: {detail}",
                argv=argv, returncode=result.returncode, stderr=excerpt,
            )
        return result

    def init_ca(self, subject: str) -> CAHandle:
        self._run("init-pki")
        self._run("build-ca", "nopass", extra_env={"EASYRSA_REQ_CN": subject})
        self._run("build-server-full", subject, "nopass")
        self._run("gen-crl")
        self.store.put(TA_KEY, make_static_key(), mode=0o600)
        return ca_handle_from_pem(self.store.get(CA_CERT))

    def issue_client_cert(self, name: str) -> IssuedCertificate:
        self.check_name(name)
        self._run("build-client-full", name, "nopass")
        try:
            return issued_from_pem(self.store.get(f"{ISSUED_DIR}{name}.crt"))
        except NotFound:
            raise ToolchainError(f"build-client-full did not produce a certificate for {name}") from None

    def _name_for_serial(self, serial: str) -> str:
        for path in self.store.list(ISSUED_DIR):
            if not path.endswith(".crt"):
                continue
            cert = load_certificate(self.store.get(path))
            if format_serial(cert.serial_number) == serial:
                return path[len(ISSUED_DIR):-len(".crt")]
        raise NotFound(f"No issued certificate with serial {serial}")

    def revoke_cert(self, serial: str) -> None:
        if not serial or not all(c in "0123456789ABCDEF" for c in serial):
            raise InvalidInput(f"Invalid serial number {serial!r}")
        name = self._name_for_serial(serial)
        self.check_name(name)
        self._run("revoke", name)

    def regenerate_crl(self) -> Optional[datetime]:
        self._run("gen-crl")
        return crl_next_update(self.store.get(CRL_FILE))


class DockerEasyRsaToolchain(EasyRsaToolchain):
    """Runs easy-rsa inside the OpenVPN image with the instance root mounted."""

    name = "docker"
    MOUNT = "/etc/openvpn"

    def __init__(self, store, image: str, docker_binary: str = "docker",
                 timeout: float = 120.0, settings: Optional[Dict[str, str]] = None):
        super().__init__(store, binary="easyrsa", timeout=timeout, settings=settings)
        self.image = image
        self.docker_binary = docker_binary

    @property
    def pki_dir(self) -> str:
        return f"{self.MOUNT}/pki"

    def _argv(self, args: List[str], env: Dict[str, str]) -> List[str]:
        argv = [self.docker_binary, "run", "--rm", "-i",
                "-v", f"{self.store.root.resolve()}:{self.MOUNT}"]
        for key in sorted(env):
            argv += ["-e", f"{key}={env[key]}"]
        return argv + [self.image, self.binary] + args

    def _process_env(self, env: Dict[str, str]) -> Dict[str, str]:
        return dict(os.environ)
