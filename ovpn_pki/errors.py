"""Error taxonomy shared by every layer of the PKI core.

Each error carries a stable ``kind`` string so callers (CLI, service API)
can report the failure class without matching on Python types.
"""


class PkiError(Exception):
    kind = "PkiError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def __str__(self):
        return f"{self.kind}: {self.message}"


# =========================
# CALLER ERRORS
# =========================
class InvalidInput(PkiError):
    kind = "InvalidInput"


class ConfirmationRequired(InvalidInput):
    kind = "ConfirmationRequired"


class NotFound(PkiError):
    kind = "NotFound"


class AlreadyExists(PkiError):
    kind = "AlreadyExists"


class NotInitialized(PkiError):
    kind = "NotInitialized"


# =========================
# TOOLCHAIN ERRORS
# =========================
class ToolchainNotFound(PkiError):
    kind = "ToolchainNotFound"


class ToolchainError(PkiError):
    kind = "ToolchainError"

    def __init__(self, message: str = "", argv=None, returncode=None, stderr: str = ""):
        super().__init__(message)
        self.argv = list(argv or [])
        self.returncode = returncode
        self.stderr = stderr


class PassphraseRequired(ToolchainError):
    kind = "PassphraseRequired"


class Timeout(PkiError):
    kind = "Timeout"


class LockTimeout(Timeout):
    kind = "LockTimeout"


class Cancelled(PkiError):
    kind = "Cancelled"


# =========================
# STORAGE ERRORS
# =========================
class StoreUnavailable(PkiError):
    kind = "StoreUnavailable"


class BackupFailed(PkiError):
    kind = "BackupFailed"


class CorruptSnapshot(PkiError):
    kind = "CorruptSnapshot"


class Corrupted(PkiError):
    kind = "Corrupted"


class RuntimeUnavailable(PkiError):
    kind = "RuntimeUnavailable"
