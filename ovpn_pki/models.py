import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidInput

CLIENT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,63}$")
HOSTNAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,62})(\.[A-Za-z0-9]([A-Za-z0-9-]{0,62}))*$")
PROTOCOLS = ("udp", "tcp")
RESERVED_NAMES = ("ca",)
DEFAULT_PORT = 1194


class Phase(str, Enum):
    UNINITIALIZED = "Uninitialized"
    INITIALIZING = "Initializing"
    READY = "Ready"
    CORRUPTED = "Corrupted"


class CertStatus(str, Enum):
    ACTIVE = "Active"
    REVOKED = "Revoked"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def validate_client_name(name) -> str:
    """Reject names that could escape a directory or reach a shell."""
    if not isinstance(name, str) or not name:
        raise InvalidInput("Client name is required")
    if not CLIENT_NAME_RE.match(name):
        raise InvalidInput(
            f"Invalid client name {name!r}: use 1-64 letters, digits, '.', '_', '-' or '@', "
            "starting with a letter or digit"
        )
    if name.lower() in RESERVED_NAMES:
        raise InvalidInput(f"Client name {name!r} is reserved")
    return name


# =========================
# SERVER ENDPOINT
# =========================
@dataclass(frozen=True)
class ServerEndpoint:
    proto: str
    host: str
    port: int = DEFAULT_PORT

    @classmethod
    def parse(cls, url) -> "ServerEndpoint":
        """Parse ``proto://host[:port]`` as accepted by ovpn_genconfig."""
        if not isinstance(url, str) or not url:
            raise InvalidInput("Server URL is required (example: udp://vpn.example.com)")
        proto, sep, rest = url.partition("://")
        if not sep:
            proto, rest = "udp", url
        proto = proto.lower()
        if proto not in PROTOCOLS:
            raise InvalidInput(f"Unsupported protocol {proto!r} in server URL {url!r}")

        host, sep, port_text = rest.partition(":")
        port = DEFAULT_PORT
        if sep:
            if not port_text.isdigit() or not 0 < int(port_text) < 65536:
                raise InvalidInput(f"Invalid port in server URL {url!r}")
            port = int(port_text)
        if not HOSTNAME_RE.match(host) or len(host) > 253:
            raise InvalidInput(f"Invalid host in server URL {url!r}")
        return cls(proto=proto, host=host, port=port)

    @property
    def url(self) -> str:
        return f"{self.proto}://{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {"proto": self.proto, "host": self.host, "port": self.port}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerEndpoint":
        return cls(proto=data["proto"], host=data["host"], port=int(data["port"]))


# =========================
# PKI RECORDS
# =========================
@dataclass(frozen=True)
class CAHandle:
    """Public facts about the CA; the key itself stays in the store."""
    subject: str
    fingerprint: str
    not_before: datetime
    not_after: datetime
    key_ref: str = "pki/private/ca.key"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "fingerprint": self.fingerprint,
            "not_before": to_iso(self.not_before),
            "not_after": to_iso(self.not_after),
            "key_ref": self.key_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CAHandle":
        return cls(
            subject=data["subject"],
            fingerprint=data["fingerprint"],
            not_before=from_iso(data["not_before"]),
            not_after=from_iso(data["not_after"]),
            key_ref=data.get("key_ref", "pki/private/ca.key"),
        )


@dataclass(frozen=True)
class IssuedCertificate:
    serial: str
    expires_at: datetime


@dataclass(frozen=True)
class ClientCertificate:
    name: str
    serial: str
    status: CertStatus
    issued_at: datetime
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self.status == CertStatus.ACTIVE

    def revoke(self, when: datetime) -> "ClientCertificate":
        return replace(self, status=CertStatus.REVOKED, revoked_at=when)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "serial": self.serial,
            "status": self.status.value,
            "issued_at": to_iso(self.issued_at),
            "expires_at": to_iso(self.expires_at),
            "revoked_at": to_iso(self.revoked_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientCertificate":
        return cls(
            name=data["name"],
            serial=data["serial"],
            status=CertStatus(data["status"]),
            issued_at=from_iso(data["issued_at"]),
            expires_at=from_iso(data.get("expires_at")),
            revoked_at=from_iso(data.get("revoked_at")),
        )


@dataclass
class InstanceRecord:
    instance_id: str
    phase: Phase = Phase.UNINITIALIZED
    ca: Optional[CAHandle] = None
    endpoint: Optional[ServerEndpoint] = None
    crl_stale: bool = False
    crl_next_update: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def ca_fingerprint(self) -> Optional[str]:
        return self.ca.fingerprint if self.ca else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "phase": self.phase.value,
            "ca": self.ca.to_dict() if self.ca else None,
            "endpoint": self.endpoint.to_dict() if self.endpoint else None,
            "crl_stale": self.crl_stale,
            "crl_next_update": to_iso(self.crl_next_update),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceRecord":
        return cls(
            instance_id=data["instance_id"],
            phase=Phase(data["phase"]),
            ca=CAHandle.from_dict(data["ca"]) if data.get("ca") else None,
            endpoint=ServerEndpoint.from_dict(data["endpoint"]) if data.get("endpoint") else None,
            crl_stale=bool(data.get("crl_stale", False)),
            crl_next_update=from_iso(data.get("crl_next_update")),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class Snapshot:
    path: str
    instance_id: str
    created_at: datetime
    digest: str
    format_version: int
    file_count: int
