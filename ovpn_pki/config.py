import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import InvalidInput

# =========================
# DEFAULTS
# =========================
DEFAULT_DATA_VOLUME = "ovpn-data"
DEFAULT_IMAGE = "kylemanna/openvpn"
DEFAULT_DATA_DIR = Path("openvpn")
DEFAULT_CA_DAYS = 3650
DEFAULT_CERT_DAYS = 365
DEFAULT_CRL_DAYS = 3650
DEFAULT_TOOLCHAIN_TIMEOUT = 120.0

TOOLCHAINS = ("local", "easyrsa", "docker")
KEY_ALGORITHMS = ("rsa", "ec")


@dataclass(frozen=True)
class Config:
    """Everything an operation needs to know about its environment."""

    data_volume: str = DEFAULT_DATA_VOLUME
    image: str = DEFAULT_IMAGE
    debug: bool = False
    data_dir: Path = DEFAULT_DATA_DIR
    toolchain: str = "local"
    easyrsa_binary: str = "easyrsa"
    docker_binary: str = "docker"
    toolchain_timeout: float = DEFAULT_TOOLCHAIN_TIMEOUT
    lock_timeout: Optional[float] = None
    key_algorithm: str = "rsa"
    key_size: int = 2048
    curve: str = "secp384r1"
    ca_days: int = DEFAULT_CA_DAYS
    cert_days: int = DEFAULT_CERT_DAYS
    crl_days: int = DEFAULT_CRL_DAYS
    crl_refresh_hours: int = 24
    container_name: str = "openvpn"
    port: int = 1194
    audit_log: Optional[Path] = None

    def __post_init__(self):
        if not self.data_volume or "/" in self.data_volume or self.data_volume in (".", ".."):
            raise InvalidInput(f"Invalid data volume name: {self.data_volume!r}")
        if self.toolchain not in TOOLCHAINS:
            raise InvalidInput(f"Unknown toolchain {self.toolchain!r} (expected one of {', '.join(TOOLCHAINS)})")
        if self.key_algorithm not in KEY_ALGORITHMS:
            raise InvalidInput(f"Unknown key algorithm {self.key_algorithm!r}")
        if self.toolchain_timeout <= 0:
            raise InvalidInput("Toolchain timeout must be positive")
        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise InvalidInput("Lock timeout must not be negative")

    @property
    def instance_root(self) -> Path:
        return Path(self.data_dir) / self.data_volume

    @property
    def lock_file(self) -> Path:
        # Beside the instance root, so a restore swapping the root keeps it.
        return Path(self.data_dir) / f".{self.data_volume}.lock"

    def replace(self, **changes) -> "Config":
        """Copy with some fields overridden; ``None`` values are ignored."""
        changes = {k: v for k, v in changes.items() if v is not None}
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a configuration from environment variables."""
        if env is None:
            env = os.environ

        values = {}
        strings = {
            "OVPN_DATA": "data_volume",
            "OPENVPN_IMAGE": "image",
            "OVPN_TOOLCHAIN": "toolchain",
            "EASYRSA_BIN": "easyrsa_binary",
            "DOCKER_BIN": "docker_binary",
            "EASYRSA_ALGO": "key_algorithm",
            "EASYRSA_CURVE": "curve",
            "OVPN_CONTAINER": "container_name",
        }
        for var, field in strings.items():
            if env.get(var):
                values[field] = env[var]

        integers = {
            "EASYRSA_KEY_SIZE": "key_size",
            "EASYRSA_CA_EXPIRE": "ca_days",
            "EASYRSA_CERT_EXPIRE": "cert_days",
            "EASYRSA_CRL_DAYS": "crl_days",
            "OVPN_CRL_REFRESH_HOURS": "crl_refresh_hours",
            "OVPN_PORT": "port",
        }
        for var, field in integers.items():
            if env.get(var):
                values[field] = _parse_number(var, env[var], int)

        if env.get("OVPN_TOOLCHAIN_TIMEOUT"):
            values["toolchain_timeout"] = _parse_number("OVPN_TOOLCHAIN_TIMEOUT", env["OVPN_TOOLCHAIN_TIMEOUT"], float)
        if env.get("OVPN_LOCK_TIMEOUT"):
            values["lock_timeout"] = _parse_number("OVPN_LOCK_TIMEOUT", env["OVPN_LOCK_TIMEOUT"], float)
        if env.get("OVPN_HOME"):
            values["data_dir"] = Path(env["OVPN_HOME"])
        if env.get("OVPN_AUDIT_LOG"):
            values["audit_log"] = Path(env["OVPN_AUDIT_LOG"])
        values["debug"] = env.get("DEBUG", "0") == "1"

        return cls(**values)


def _parse_number(var, raw, kind):
    try:
        return kind(raw)
    except ValueError:
        raise InvalidInput(f"{var} must be a number, got {raw!r}") from None
