"""Orchestration façade: the public operation surface.

Every operation returns an :class:`OperationResult` instead of raising, so a
CLI or service layer decides how failures surface (exit code, HTTP status).
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

from .backup import BackupManager
from .config import Config
from .errors import PkiError
from .local_ca import LocalToolchain
from .locking import InstanceLock
from .log import get_logger
from .runtime import DockerRuntime
from .scheduler import CrlRefreshScheduler
from .state import PkiStateMachine
from .store import ArtifactStore
from .toolchain import DockerEasyRsaToolchain, EasyRsaToolchain, Toolchain, easyrsa_settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    value: Any = None
    error: Optional[PkiError] = None
    warnings: Tuple[str, ...] = ()

    @property
    def kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    @property
    def message(self) -> str:
        return self.error.message if self.error else ""

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def unwrap(self):
        if self.error is not None:
            raise self.error
        return self.value


def build_toolchain(config: Config, store: ArtifactStore) -> Toolchain:
    if config.toolchain == "easyrsa":
        return EasyRsaToolchain(store, binary=config.easyrsa_binary, timeout=config.toolchain_timeout,
                                settings=easyrsa_settings(config))
    if config.toolchain == "docker":
        return DockerEasyRsaToolchain(store, image=config.image, docker_binary=config.docker_binary,
                                      timeout=config.toolchain_timeout, settings=easyrsa_settings(config))
    return LocalToolchain(
        store,
        key_algorithm=config.key_algorithm,
        key_size=config.key_size,
        curve=config.curve,
        ca_days=config.ca_days,
        cert_days=config.cert_days,
        crl_days=config.crl_days,
    )


class OpenVpnPki:
    """One PKI instance plus the server runtime that consumes it.

    Construction raises ``StoreUnavailable`` when the instance root cannot be
    used; after that, operations report failures through their results.
    """

    def __init__(self, config: Config, toolchain: Optional[Toolchain] = None,
                 runtime: Optional[DockerRuntime] = None):
        self.config = config
        self.store = ArtifactStore(config.instance_root)
        self.lock = InstanceLock(config.data_volume, path=config.lock_file)
        self.toolchain = toolchain or build_toolchain(config, self.store)
        self.state = PkiStateMachine(self.store, self.toolchain, config.data_volume,
                                     lock=self.lock, lock_timeout=config.lock_timeout)
        self.backups = BackupManager(self.store, self.lock, config.data_volume,
                                     lock_timeout=config.lock_timeout,
                                     on_restored=lambda: self.state.reload(restored=True))
        self.runtime = runtime or DockerRuntime(
            config.image, config.instance_root,
            container_name=config.container_name,
            port=config.port,
            binary=config.docker_binary,
        )
        self.crl_scheduler = CrlRefreshScheduler(self.state, config.crl_refresh_hours)

    def __repr__(self):
        return f"OpenVpnPki({self.config.data_volume!r}, phase={self.state.phase.value})"

    def _call(self, what: str, fn, *args, default=None, **kwargs) -> OperationResult:
        try:
            value = fn(*args, **kwargs)
        except PkiError as e:
            logger.debug("%s failed: %s", what, e)
            return OperationResult(ok=False, value=default, error=e)
        return OperationResult(ok=True, value=value)

    # =========================
    # PKI LIFECYCLE
    # =========================
    def init(self, server_url: str, cancel: Optional[threading.Event] = None) -> OperationResult:
        return self._call("init", self.state.init, server_url, cancel=cancel)

    def add_client(self, name: str, cancel: Optional[threading.Event] = None) -> OperationResult:
        return self._call("client-add", self.state.add_client, name, cancel=cancel)

    def revoke_client(self, name: str, cancel: Optional[threading.Event] = None) -> OperationResult:
        result = self._call("client-revoke", self.state.revoke_client, name, cancel=cancel)
        if result.ok and self.state.crl_stale:
            return OperationResult(
                ok=True, value=result.value,
                warnings=("CRLStale: certificate revoked but the CRL could not be regenerated; "
                          "run refresh-crl",),
            )
        return result

    def list_clients(self, cancel: Optional[threading.Event] = None) -> OperationResult:
        return self._call("client-list", self.state.list_clients, cancel=cancel, default=[])

    def get_client(self, name: str, cancel: Optional[threading.Event] = None) -> OperationResult:
        """Client profile with every credential inlined."""
        return self._call("client-get", self.state.client_profile, name, cancel=cancel)

    def refresh_crl(self, cancel: Optional[threading.Event] = None) -> OperationResult:
        return self._call("refresh-crl", self.state.refresh_crl, cancel=cancel)

    def start_crl_refresh(self) -> None:
        self.crl_scheduler.start()

    def close(self) -> None:
        self.crl_scheduler.stop()

    # =========================
    # BACKUP / RESTORE
    # =========================
    def backup(self, destination=None, cancel: Optional[threading.Event] = None) -> OperationResult:
        destination = Path(destination) if destination else Path.cwd()
        return self._call("backup", self.backups.backup, destination, cancel=cancel)

    def restore(self, source, confirm: bool = False, cancel: Optional[threading.Event] = None) -> OperationResult:
        return self._call("restore", self.backups.restore, source, confirm=confirm, cancel=cancel)

    def inspect_backup(self, source) -> OperationResult:
        return self._call("inspect", self.backups.inspect, source)

    # =========================
    # SERVER RUNTIME
    # =========================
    def start(self) -> OperationResult:
        return self._call("start", self.runtime.start)

    def stop(self) -> OperationResult:
        return self._call("stop", self.runtime.stop)

    def logs(self, tail: int = 10) -> OperationResult:
        return self._call("logs", self.runtime.logs, tail)

    def update(self) -> OperationResult:
        return self._call("update", self.runtime.update_image)

    def status(self) -> OperationResult:
        """Instance summary plus server state; never fails."""
        warnings = ()
        try:
            info = self.state.describe()
        except PkiError as e:
            info = self.state.summary()
            warnings += (str(e),)
        try:
            runtime = self.runtime.status()
            info.update(running=runtime.running, container=runtime.container, log_tail=runtime.log_tail)
        except PkiError as e:
            info.update(running=False, container=self.config.container_name, log_tail="")
            warnings += (str(e),)
        return OperationResult(ok=True, value=info, warnings=warnings)
