import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "ovpn_pki"
AUDIT_LOGGER = "ovpn_pki.audit"

# Colors for output
COLORS = {
    "DEBUG": "\033[0;34m",
    "INFO": "\033[0;32m",
    "WARN": "\033[1;33m",
    "ERROR": "\033[0;31m",
}
NC = "\033[0m"


class ConsoleFormatter(logging.Formatter):
    """Formats records as ``[LEVEL] message``, colored on a terminal."""

    def __init__(self, color=False):
        super().__init__("%(message)s")
        self.color = color

    def format(self, record):
        level = "WARN" if record.levelname == "WARNING" else record.levelname
        if level == "CRITICAL":
            level = "ERROR"
        message = super().format(record)
        if self.color:
            return f"{COLORS.get(level, '')}[{level}]{NC} {message}"
        return f"[{level}] {message}"


class AuditFormatter(logging.Formatter):
    def format(self, record):
        ts = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        return f"[{ts}] {record.getMessage()}"


def get_logger(name: str) -> logging.Logger:
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def audit(msg: str, *args) -> None:
    """Record a lifecycle event on the audit channel."""
    logging.getLogger(AUDIT_LOGGER).info(msg, *args)


def configure_logging(debug: bool = False, audit_log: Optional[Path] = None, stream=None) -> logging.Logger:
    """Install console (and optionally audit file) handlers once per process."""
    stream = stream or sys.stderr
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    for handler in list(root.handlers):
        if getattr(handler, "_ovpn_pki", False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(stream)
    console.setFormatter(ConsoleFormatter(color=hasattr(stream, "isatty") and stream.isatty()))
    console._ovpn_pki = True
    root.addHandler(console)

    audit_logger = logging.getLogger(AUDIT_LOGGER)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()
    if audit_log:
        audit_log = Path(audit_log)
        audit_log.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(audit_log)
        file_handler.setFormatter(AuditFormatter())
        audit_logger.addHandler(file_handler)

    return root
