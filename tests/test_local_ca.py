import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from ovpn_pki.errors import NotFound, StoreUnavailable, ToolchainError
from ovpn_pki.local_ca import IndexEntry, LocalToolchain
from ovpn_pki.toolchain import CA_CERT, CA_KEY, CRL_FILE, INDEX_FILE, TA_KEY, common_name


@pytest.fixture
def ca(toolchain):
    toolchain.init_ca("vpn.example.com")
    return toolchain


def _cert(store, path):
    return x509.load_pem_x509_certificate(store.get(path))


def test_init_builds_ca_server_and_crl(ca, store):
    ca_cert = _cert(store, CA_CERT)
    assert ca_cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    assert store.mode(CA_KEY) == 0o600

    server = _cert(store, "pki/issued/vpn.example.com.crt")
    assert common_name(server) == "vpn.example.com"
    server.verify_directly_issued_by(ca_cert)
    eku = server.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.SERVER_AUTH in eku

    assert store.exists(CRL_FILE)
    assert b"OpenVPN Static key V1" in store.get(TA_KEY)


def test_issue_client(ca, store):
    issued = ca.issue_client_cert("alice")
    cert = _cert(store, "pki/issued/alice.crt")

    assert issued.serial == "02"
    assert cert.serial_number == 2
    assert issued.expires_at == cert.not_valid_after_utc
    assert store.mode("pki/private/alice.key") == 0o600
    cert.verify_directly_issued_by(_cert(store, CA_CERT))
    eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.CLIENT_AUTH in eku


def test_index_tracks_issued_certificates(ca, store):
    ca.issue_client_cert("alice")
    lines = store.get(INDEX_FILE).decode().splitlines()
    entries = [IndexEntry.parse(line) for line in lines]
    assert [(e.status, e.serial, e.name) for e in entries] == [
        ("V", "01", "vpn.example.com"),
        ("V", "02", "alice"),
    ]
    assert entries[1].to_line() == lines[1] + "\n"


def test_duplicate_issue_is_refused(ca):
    ca.issue_client_cert("alice")
    with pytest.raises(ToolchainError):
        ca.issue_client_cert("alice")


def test_revoke_lists_serial_in_crl(ca, store):
    issued = ca.issue_client_cert("alice")
    ca.revoke_cert(issued.serial)
    next_update = ca.regenerate_crl()

    crl = x509.load_pem_x509_crl(store.get(CRL_FILE))
    assert crl.get_revoked_certificate_by_serial_number(int(issued.serial, 16)) is not None
    assert crl.next_update_utc == next_update
    assert not store.exists("pki/issued/alice.crt")
    assert store.exists(f"pki/revoked/certs_by_serial/{issued.serial}.crt")
    assert store.mode(f"pki/revoked/private_by_serial/{issued.serial}.key") == 0o600


def test_name_can_be_reissued_after_revoke(ca):
    first = ca.issue_client_cert("alice")
    ca.revoke_cert(first.serial)
    second = ca.issue_client_cert("alice")
    assert second.serial != first.serial


def test_failed_index_write_keeps_files_in_place(ca, store, monkeypatch):
    issued = ca.issue_client_cert("alice")

    def broken(entries):
        raise StoreUnavailable("disk full")

    monkeypatch.setattr(ca, "_write_index", broken)
    with pytest.raises(StoreUnavailable):
        ca.revoke_cert(issued.serial)
    assert store.exists("pki/issued/alice.crt")
    assert store.exists("pki/private/alice.key")
    assert not store.exists(f"pki/revoked/certs_by_serial/{issued.serial}.crt")
    assert [e.status for e in ca._read_index() if e.name == "alice"] == ["V"]


def test_revoke_unknown_serial(ca):
    with pytest.raises(NotFound):
        ca.revoke_cert("7F")


def test_operations_before_init(toolchain):
    with pytest.raises(ToolchainError):
        toolchain.issue_client_cert("alice")


def test_rsa_keys(store):
    tc = LocalToolchain(store, key_algorithm="rsa", key_size=2048)
    tc.init_ca("vpn.example.com")
    assert _cert(store, CA_CERT).public_key().key_size == 2048
