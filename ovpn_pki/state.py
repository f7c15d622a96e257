"""PKI state machine.

Owns the instance phase and the client certificate records, and is the only
path through which operations reach the store and the toolchain. Every
mutating operation runs the sequence validate-state, invoke-toolchain,
persist-artifact, update-in-memory-record under the instance write lock.
"""

import json
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .errors import AlreadyExists, Corrupted, NotFound, NotInitialized, PkiError, StoreUnavailable
from .locking import InstanceLock
from .log import audit, get_logger
from .models import (
    CertStatus, ClientCertificate, InstanceRecord, Phase, ServerEndpoint, utcnow,
    validate_client_name,
)
from .profile import render_client_profile, render_server_config
from .toolchain import CA_CERT, CRL_FILE, ISSUED_DIR, PRIVATE_DIR, TA_KEY, crl_next_update

logger = get_logger(__name__)

INSTANCE_FILE = "instance.json"
CLIENTS_FILE = "clients.json"
ENV_FILE = "ovpn_env.json"
SERVER_CONFIG = "openvpn.conf"
CLIENTS_FORMAT = 1


def _dump(data) -> bytes:
    return (json.dumps(data, indent=2, sort_keys=True) + "\n").encode("utf-8")


class PkiStateMachine:
    def __init__(self, store, toolchain, instance_id: str, lock: Optional[InstanceLock] = None,
                 lock_timeout: Optional[float] = None):
        self.store = store
        self.toolchain = toolchain
        self.instance_id = instance_id
        self.lock = lock or InstanceLock(instance_id)
        self.lock_timeout = lock_timeout
        self._record = InstanceRecord(instance_id)
        self._clients: Tuple[ClientCertificate, ...] = ()
        self.reload()

    def __repr__(self):
        return f"PkiStateMachine({self.instance_id!r}, phase={self.phase.value})"

    # =========================
    # STATE ACCESS
    # =========================
    @property
    def phase(self) -> Phase:
        return self._record.phase

    @property
    def record(self) -> InstanceRecord:
        return replace(self._record)

    @property
    def crl_stale(self) -> bool:
        return self._record.crl_stale

    def reload(self, restored: bool = False) -> None:
        """Re-read persisted state. Callers hold the lock (or run alone)."""
        try:
            record = InstanceRecord.from_dict(json.loads(self.store.get(INSTANCE_FILE)))
        except NotFound:
            record = InstanceRecord(self.instance_id)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Unreadable %s: %s", INSTANCE_FILE, e)
            record = InstanceRecord(self.instance_id, phase=Phase.CORRUPTED)

        clients = ()
        if record.phase != Phase.UNINITIALIZED:
            clients = self._load_clients(record)

        if record.phase == Phase.INITIALIZING:
            # A process died between genconfig and the end of initpki.
            logger.error("Instance %s was left mid-initialization; marking it corrupted", self.instance_id)
            record.phase = Phase.CORRUPTED

        if restored:
            phase = Phase.READY if record.ca and self.store.exists(CA_CERT) else Phase.UNINITIALIZED
            if phase != record.phase or record.instance_id != self.instance_id:
                record = replace(record, phase=phase, instance_id=self.instance_id, updated_at=utcnow())
                self._persist_record(record)
            if phase == Phase.UNINITIALIZED:
                clients = ()

        self._record = record
        self._clients = clients
        logger.debug("Loaded instance %s: phase %s, %d client records",
                     self.instance_id, record.phase.value, len(clients))

    def _load_clients(self, record: InstanceRecord) -> Tuple[ClientCertificate, ...]:
        try:
            data = json.loads(self.store.get(CLIENTS_FILE))
            return tuple(ClientCertificate.from_dict(c) for c in data.get("clients", []))
        except NotFound:
            return ()
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Unreadable %s: %s", CLIENTS_FILE, e)
            record.phase = Phase.CORRUPTED
            return ()

    def _persist_record(self, record: InstanceRecord) -> None:
        self.store.put(INSTANCE_FILE, _dump(record.to_dict()))

    def _persist_clients(self, clients) -> None:
        self.store.put(CLIENTS_FILE, _dump({
            "version": CLIENTS_FORMAT,
            "clients": [c.to_dict() for c in clients],
        }))

    def _update_record(self, **changes) -> None:
        self._record = replace(self._record, updated_at=utcnow(), **changes)
        self._persist_record(self._record)

    def _mark_corrupted(self, reason: str) -> None:
        logger.error("Instance %s is now corrupted: %s", self.instance_id, reason)
        audit("Instance %s corrupted: %s", self.instance_id, reason)
        self._record = replace(self._record, phase=Phase.CORRUPTED, updated_at=utcnow())
        try:
            self._persist_record(self._record)
        except PkiError:
            logger.exception("Could not persist the corrupted phase of %s", self.instance_id)

    def _require_ready(self) -> None:
        phase = self._record.phase
        if phase == Phase.READY:
            return
        if phase == Phase.CORRUPTED:
            raise Corrupted(
                f"Instance {self.instance_id} is corrupted; restore a backup or repair it manually"
            )
        raise NotInitialized(f"Instance {self.instance_id} is not initialized; run init first")

    # =========================
    # INIT
    # =========================
    def init(self, server_url: str, cancel: Optional[threading.Event] = None) -> InstanceRecord:
        """Write the base configuration, then build the CA and server identity."""
        endpoint = ServerEndpoint.parse(server_url)

        with self.lock.write(self.lock_timeout, cancel):
            self.reload()
            if self._record.phase == Phase.READY:
                raise AlreadyExists(f"Instance {self.instance_id} is already initialized")
            if self._record.phase == Phase.CORRUPTED:
                self._require_ready()

            record = InstanceRecord(self.instance_id, phase=Phase.INITIALIZING, endpoint=endpoint)
            self._persist_record(record)
            self._record = record
            logger.info("Initializing OpenVPN configuration for %s", endpoint.url)

            try:
                self.store.put(ENV_FILE, _dump(endpoint.to_dict()))
                self.store.put(SERVER_CONFIG, render_server_config(endpoint).encode("utf-8"))

                logger.info("Initializing PKI with %s toolchain", self.toolchain.name)
                ca = self.toolchain.init_ca(endpoint.host)
                next_update = crl_next_update(self.store.get(CRL_FILE)) if self.store.exists(CRL_FILE) else None

                self._persist_clients(())
                record = replace(record, phase=Phase.READY, ca=ca, crl_next_update=next_update,
                                 updated_at=utcnow())
                self._persist_record(record)
            except Exception as e:
                cause = str(e) if isinstance(e, PkiError) else f"{type(e).__name__}: {e}"
                self._mark_corrupted(f"initialization failed: {cause}")
                raise Corrupted(
                    f"Initialization of {self.instance_id} failed after partial changes ({cause}); "
                    "restore a backup or recreate the volume"
                ) from e

            self._record = record
            self._clients = ()

        audit("CA initialized for %s (fingerprint %s)", endpoint.url, record.ca_fingerprint)
        return replace(record)

    # =========================
    # CLIENTS
    # =========================
    def add_client(self, name: str, cancel: Optional[threading.Event] = None) -> ClientCertificate:
        validate_client_name(name)

        with self.lock.write(self.lock_timeout, cancel):
            self.reload()
            self._require_ready()
            if any(c.name == name and c.active for c in self._clients):
                raise AlreadyExists(f"Client {name!r} already has an active certificate")
            endpoint = self._record.endpoint
            if endpoint and name == endpoint.host:
                raise AlreadyExists(f"{name!r} is the server certificate name")

            logger.info("Adding client certificate for: %s", name)
            issued = self.toolchain.issue_client_cert(name)

            if any(c.serial == issued.serial for c in self._clients):
                self._mark_corrupted(f"toolchain reused serial {issued.serial}")
                raise Corrupted(f"Toolchain reused serial {issued.serial} for {name!r}")

            cert = ClientCertificate(
                name=name,
                serial=issued.serial,
                status=CertStatus.ACTIVE,
                issued_at=utcnow(),
                expires_at=issued.expires_at,
            )
            clients = self._clients + (cert,)
            self._commit_clients(clients, f"recording certificate {issued.serial} for {name!r}")

        audit("Client issued: %s (serial %s)", name, cert.serial)
        return cert

    def revoke_client(self, name: str, cancel: Optional[threading.Event] = None) -> ClientCertificate:
        """Revoke the active certificate for ``name`` and regenerate the CRL."""
        validate_client_name(name)

        with self.lock.write(self.lock_timeout, cancel):
            self.reload()
            self._require_ready()
            for index, cert in enumerate(self._clients):
                if cert.name == name and cert.active:
                    break
            else:
                raise NotFound(f"No active certificate for client {name!r}")

            logger.info("Revoking client certificate for: %s", name)
            self.toolchain.revoke_cert(cert.serial)

            revoked = cert.revoke(utcnow())
            clients = list(self._clients)
            clients[index] = revoked
            self._commit_clients(tuple(clients), f"recording revocation of {cert.serial}")
            audit("Client revoked: %s (serial %s)", name, cert.serial)

            self._regenerate_crl()

        return revoked

    def _commit_clients(self, clients, what: str) -> None:
        # The toolchain has already changed the PKI; a lost record means drift.
        try:
            self._persist_clients(clients)
        except StoreUnavailable as e:
            self._mark_corrupted(f"{what} failed: {e}")
            raise Corrupted(f"{what} failed after the toolchain succeeded: {e}") from e
        self._clients = clients

    def _regenerate_crl(self) -> bool:
        try:
            next_update = self.toolchain.regenerate_crl()
        except PkiError as e:
            logger.warning("CRL regeneration failed (%s); CRL is stale until the next successful refresh", e)
            audit("CRL stale: %s", e)
            self._update_record(crl_stale=True)
            return False
        self._update_record(crl_stale=False, crl_next_update=next_update)
        audit("CRL regenerated (next update %s)", next_update.isoformat() if next_update else "unknown")
        return True

    def refresh_crl(self, cancel: Optional[threading.Event] = None) -> InstanceRecord:
        """Regenerate the CRL outside of a revocation (scheduled or manual)."""
        with self.lock.write(self.lock_timeout, cancel):
            self.reload()
            self._require_ready()
            next_update = self.toolchain.regenerate_crl()
            self._update_record(crl_stale=False, crl_next_update=next_update)
            record = replace(self._record)
        audit("CRL refreshed (next update %s)", next_update.isoformat() if next_update else "unknown")
        return record

    # =========================
    # READS
    # =========================
    def list_clients(self, cancel: Optional[threading.Event] = None) -> List[ClientCertificate]:
        """All certificate records, oldest issuance first."""
        with self.lock.read(self.lock_timeout, cancel):
            self.reload()
            self._require_ready()
            clients = self._clients
        return sorted(clients, key=lambda c: c.issued_at)

    def get_client(self, name: str, cancel: Optional[threading.Event] = None) -> ClientCertificate:
        validate_client_name(name)
        with self.lock.read(self.lock_timeout, cancel):
            self.reload()
            self._require_ready()
            return self._find_active(name)

    def _find_active(self, name: str) -> ClientCertificate:
        for cert in self._clients:
            if cert.name == name and cert.active:
                return cert
        raise NotFound(f"No active certificate for client {name!r}")

    def client_profile(self, name: str, cancel: Optional[threading.Event] = None) -> str:
        """Inline client configuration for an active client."""
        validate_client_name(name)
        with self.lock.read(self.lock_timeout, cancel):
            self.reload()
            self._require_ready()
            self._find_active(name)
            return render_client_profile(
                name,
                self._record.endpoint,
                self.store.get(CA_CERT),
                self.store.get(f"{ISSUED_DIR}{name}.crt"),
                self.store.get(f"{PRIVATE_DIR}{name}.key"),
                self.store.get(TA_KEY),
            )

    def describe(self, cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Summary of the persisted instance, read under the read lock."""
        with self.lock.read(self.lock_timeout, cancel):
            self.reload()
            return self.summary()

    def summary(self) -> Dict[str, Any]:
        """Summary of what this object last loaded; takes no lock."""
        record, clients = self._record, self._clients
        return {
            "instance": record.instance_id,
            "phase": record.phase.value,
            "server": record.endpoint.url if record.endpoint else None,
            "ca_fingerprint": record.ca_fingerprint,
            "crl_stale": record.crl_stale,
            "crl_next_update": record.crl_next_update.isoformat() if record.crl_next_update else None,
            "active_clients": sum(1 for c in clients if c.active),
            "revoked_clients": sum(1 for c in clients if not c.active),
        }
