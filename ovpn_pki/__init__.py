"""OpenVPN PKI lifecycle: CA, client certificates, CRL, backup and restore."""

__version__ = "0.1.0"

from .config import Config
from .errors import PkiError
from .facade import OperationResult, OpenVpnPki
from .models import CertStatus, ClientCertificate, Phase

__all__ = [
    "CertStatus",
    "ClientCertificate",
    "Config",
    "OpenVpnPki",
    "OperationResult",
    "Phase",
    "PkiError",
    "__version__",
]
