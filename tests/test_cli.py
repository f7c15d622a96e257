import logging

import pytest

from ovpn_pki.cli import main
from ovpn_pki.log import AUDIT_LOGGER, ROOT_LOGGER


@pytest.fixture
def run(tmp_path, monkeypatch):
    for var in ("OVPN_DATA", "OVPN_HOME", "OVPN_TOOLCHAIN", "OVPN_LOCK_TIMEOUT", "DEBUG"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("EASYRSA_ALGO", "ec")
    monkeypatch.setenv("EASYRSA_CURVE", "secp256r1")
    monkeypatch.setenv("DOCKER_BIN", str(tmp_path / "no-docker"))
    monkeypatch.chdir(tmp_path)

    def run(*args):
        return main(["--data-dir", str(tmp_path / "openvpn"), *args])

    yield run
    for name in (ROOT_LOGGER, AUDIT_LOGGER):
        for handler in list(logging.getLogger(name).handlers):
            logging.getLogger(name).removeHandler(handler)
            handler.close()


def test_lifecycle(run, capsys):
    assert run("init", "udp://vpn.example.com") == 0
    assert run("client-add", "alice") == 0
    assert run("client-add", "bob") == 0
    assert run("client-revoke", "alice") == 0
    capsys.readouterr()

    assert run("client-list") == 0
    out = capsys.readouterr().out
    assert "REVOKED  alice" in out
    assert "VALID    bob" in out


def test_failures_exit_nonzero(run, capsys):
    assert run("client-add", "alice") == 1
    assert "NotInitialized" in capsys.readouterr().err
    run("init", "udp://vpn.example.com")
    run("client-add", "alice")
    assert run("client-add", "alice") == 1
    assert run("client-revoke", "nobody") == 1
    assert run("client-get", "nobody") == 1


def test_client_list_before_init_still_succeeds(run, capsys):
    assert run("client-list") == 0
    assert "No clients" in capsys.readouterr().out


def test_client_get_to_file(run, tmp_path):
    run("init", "tcp://vpn.example.com:443")
    run("client-add", "alice")
    target = tmp_path / "alice.ovpn"
    assert run("client-get", "alice", "-o", str(target)) == 0
    assert "remote vpn.example.com 443" in target.read_text()
    assert "proto tcp" in target.read_text()


def test_backup_and_restore(run, tmp_path, capsys):
    run("init", "udp://vpn.example.com")
    run("client-add", "alice")
    archive = tmp_path / "pki.tar.gz"
    assert run("backup", str(archive)) == 0
    run("client-add", "bob")

    # stdin is not a terminal under pytest, so there is nobody to ask
    assert run("restore", str(archive)) == 1
    assert run("restore", str(archive), "--yes") == 0
    assert run("inspect", str(archive)) == 0
    capsys.readouterr()

    run("client-list")
    out = capsys.readouterr().out
    assert "alice" in out
    assert "bob" not in out


def test_status_always_succeeds(run, capsys):
    assert run("status") == 0
    assert "Uninitialized" in capsys.readouterr().out


def test_usage_errors(run):
    assert run() == 2
    assert run("frobnicate") == 2
    assert run("client-add") == 2


def test_bad_environment(run, monkeypatch):
    monkeypatch.setenv("OVPN_PORT", "not-a-port")
    assert run("status") == 2


def test_audit_log(run, tmp_path):
    audit = tmp_path / "audit.log"
    run("--audit-log", str(audit), "init", "udp://vpn.example.com")
    assert run("--audit-log", str(audit), "client-add", "alice") == 0
    text = audit.read_text()
    assert "CA initialized for udp://vpn.example.com:1194" in text
    assert "Client issued: alice" in text
