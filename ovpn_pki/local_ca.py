"""In-process toolchain built on the ``cryptography`` package.

Produces the same ``pki/`` layout easy-rsa does (index.txt, serial,
issued/, private/, revoked/, crl.pem) so the two toolchains are
interchangeable over one store.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import NoEncryption, PrivateFormat
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .errors import InvalidInput, NotFound, ToolchainError
from .log import get_logger
from .models import CAHandle, IssuedCertificate, utcnow
from .toolchain import (
    CA_CERT, CA_KEY, CRL_FILE, INDEX_FILE, ISSUED_DIR, PRIVATE_DIR, SERIAL_FILE,
    TA_KEY, Toolchain, ca_handle_from_pem, format_serial, make_static_key,
)

logger = get_logger(__name__)

INDEX_TIME = "%y%m%d%H%M%SZ"
REVOKED_CERTS_DIR = "pki/revoked/certs_by_serial/"
REVOKED_KEYS_DIR = "pki/revoked/private_by_serial/"
PKI_DIRS = ("pki/issued", "pki/private", "pki/reqs", "pki/revoked/certs_by_serial",
            "pki/revoked/private_by_serial")

CURVES = {
    "prime256v1": ec.SECP256R1,
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}


# =========================
# INDEX.TXT
# =========================
@dataclass(frozen=True)
class IndexEntry:
    status: str
    expires: str
    revoked: str
    serial: str
    filename: str
    subject: str

    @property
    def name(self) -> str:
        return self.subject.split("CN=", 1)[-1]

    def to_line(self) -> str:
        return "\t".join((self.status, self.expires, self.revoked, self.serial, self.filename, self.subject)) + "\n"

    @classmethod
    def parse(cls, line: str) -> "IndexEntry":
        parts = line.rstrip("\n").split("\t")
        if len(parts) != 6:
            raise ToolchainError(f"Malformed index.txt line: {line.strip()!r}")
        return cls(*parts)


def _stamp(value: datetime) -> str:
    return value.strftime(INDEX_TIME)


def _unstamp(value: str) -> datetime:
    return datetime.strptime(value, INDEX_TIME).replace(tzinfo=timezone.utc)


class LocalToolchain(Toolchain):
    name = "local"

    def __init__(self, store, key_algorithm: str = "rsa", key_size: int = 2048,
                 curve: str = "secp384r1", ca_days: int = 3650, cert_days: int = 365,
                 crl_days: int = 3650):
        super().__init__(store)
        if key_algorithm == "ec" and curve not in CURVES:
            raise InvalidInput(f"Unsupported curve {curve!r}")
        self.key_algorithm = key_algorithm
        self.key_size = key_size
        self.curve = curve
        self.ca_days = ca_days
        self.cert_days = cert_days
        self.crl_days = crl_days

    # =========================
    # KEYS AND FILES
    # =========================
    def _generate_key(self):
        if self.key_algorithm == "ec":
            return ec.generate_private_key(CURVES[self.curve]())
        return rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

    def _save_key(self, path: str, key) -> None:
        self.store.put(path, key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=PrivateFormat.PKCS8,
            encryption_algorithm=NoEncryption(),
        ), mode=0o600)

    def _save_cert(self, path: str, cert: x509.Certificate) -> None:
        self.store.put(path, cert.public_bytes(serialization.Encoding.PEM))

    def _load_ca(self):
        try:
            ca_cert = x509.load_pem_x509_certificate(self.store.get(CA_CERT))
            ca_key = serialization.load_pem_private_key(self.store.get(CA_KEY), password=None)
        except NotFound:
            raise ToolchainError("CA certificate or key missing in pki/ directory") from None
        except (ValueError, TypeError) as e:
            raise ToolchainError(f"Cannot load CA material: {e}") from e
        return ca_cert, ca_key

    def _read_index(self) -> List[IndexEntry]:
        try:
            text = self.store.get(INDEX_FILE).decode("utf-8")
        except NotFound:
            raise ToolchainError("pki/index.txt is missing; was the CA initialized?") from None
        return [IndexEntry.parse(line) for line in text.splitlines() if line.strip()]

    def _write_index(self, entries: List[IndexEntry]) -> None:
        self.store.put(INDEX_FILE, "".join(e.to_line() for e in entries).encode("utf-8"))

    def _next_serial(self) -> int:
        try:
            current = int(self.store.get(SERIAL_FILE).decode("ascii").strip(), 16)
        except NotFound:
            raise ToolchainError("pki/serial is missing; was the CA initialized?") from None
        except ValueError as e:
            raise ToolchainError(f"pki/serial is unreadable: {e}") from e
        self.store.put(SERIAL_FILE, (format_serial(current + 1) + "\n").encode("ascii"))
        return current

    # =========================
    # CA GENERATION
    # =========================
    def init_ca(self, subject: str) -> CAHandle:
        """Build the CA, the server certificate, the static key and the first CRL."""
        for directory in PKI_DIRS:
            self.store.makedirs(directory)

        logger.debug("Generating CA private key (%s)", self.key_algorithm)
        ca_key = self._generate_key()
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)])
        now = utcnow()
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=self.ca_days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
            .sign(ca_key, hashes.SHA256())
        )

        self._save_key(CA_KEY, ca_key)
        self._save_cert(CA_CERT, ca_cert)
        self.store.put(INDEX_FILE, b"")
        self.store.put(SERIAL_FILE, b"01\n")

        self._issue(subject, server=True)
        self.store.put(TA_KEY, make_static_key(), mode=0o600)
        self.regenerate_crl()
        return ca_handle_from_pem(self.store.get(CA_CERT))

    # =========================
    # CERTIFICATES
    # =========================
    def _issue(self, name: str, server: bool = False) -> IssuedCertificate:
        cert_path = f"{ISSUED_DIR}{name}.crt"
        if self.store.exists(cert_path):
            raise ToolchainError(f"Certificate already exists at {cert_path}")

        ca_cert, ca_key = self._load_ca()
        serial = self._next_serial()
        key = self._generate_key()
        now = utcnow()
        expires = now + timedelta(days=self.cert_days)
        usage = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH

        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)]))
            .issuer_name(ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(serial)
            .not_valid_before(now)
            .not_valid_after(expires)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=server and self.key_algorithm == "rsa",
                    data_encipherment=False,
                    key_agreement=server and self.key_algorithm == "ec",
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )

        self._save_key(f"{PRIVATE_DIR}{name}.key", key)
        self._save_cert(cert_path, cert)

        entries = self._read_index()
        entries.append(IndexEntry("V", _stamp(expires), "", format_serial(serial), "unknown", f"/CN={name}"))
        self._write_index(entries)
        return IssuedCertificate(serial=format_serial(serial), expires_at=cert.not_valid_after_utc)

    def issue_client_cert(self, name: str) -> IssuedCertificate:
        self.check_name(name)
        return self._issue(name)

    def revoke_cert(self, serial: str) -> None:
        entries = self._read_index()
        for i, entry in enumerate(entries):
            if entry.serial == serial and entry.status == "V":
                break
        else:
            raise NotFound(f"No valid certificate with serial {serial}")

        name = self.check_name(entry.name)
        entries[i] = replace(entry, status="R", revoked=_stamp(utcnow()))
        # Index first: a failure here leaves the certificate valid and in place.
        self._write_index(entries)

        # Park the files by serial so the name can be issued again.
        for src, dst, mode in (
            (f"{ISSUED_DIR}{name}.crt", f"{REVOKED_CERTS_DIR}{serial}.crt", 0o644),
            (f"{PRIVATE_DIR}{name}.key", f"{REVOKED_KEYS_DIR}{serial}.key", 0o600),
        ):
            if self.store.exists(src):
                self.store.put(dst, self.store.get(src), mode=mode)
                self.store.delete(src)

    def regenerate_crl(self) -> Optional[datetime]:
        ca_cert, ca_key = self._load_ca()
        now = utcnow()
        next_update = now + timedelta(days=self.crl_days)

        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(ca_cert.subject)
            .last_update(now)
            .next_update(next_update)
        )
        for entry in self._read_index():
            if entry.status != "R":
                continue
            revoked = (
                x509.RevokedCertificateBuilder()
                .serial_number(int(entry.serial, 16))
                .revocation_date(_unstamp(entry.revoked))
                .build()
            )
            builder = builder.add_revoked_certificate(revoked)

        crl = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
        self.store.put(CRL_FILE, crl.public_bytes(serialization.Encoding.PEM))
        logger.debug("CRL regenerated, next update %s", next_update.isoformat())
        return crl.next_update_utc
