"""Backup and restore of a whole instance store.

A snapshot is a gzip tarball: ``manifest.json`` first, then every artifact
under ``data/``. The manifest records each file's SHA-256 and mode, the
directory list, and an aggregate digest over all of it; restore verifies
everything before touching the live store.
"""

import hashlib
import io
import json
import os
import tarfile
import tempfile
import threading
import zlib
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

from .errors import BackupFailed, ConfirmationRequired, CorruptSnapshot, InvalidInput, NotFound, PkiError
from .log import audit, get_logger
from .models import Snapshot, from_iso, utcnow

logger = get_logger(__name__)

FORMAT_VERSION = 1
MANIFEST = "manifest.json"
DATA_PREFIX = "data/"


def tree_digest(files: Dict[str, Dict], dirs: List[str]) -> str:
    """Digest over paths, content hashes, modes and directories."""
    h = hashlib.sha256()
    for path in sorted(files):
        h.update(f"f\0{path}\0{files[path]['sha256']}\0{files[path]['mode']:o}\n".encode("utf-8"))
    for path in sorted(dirs):
        h.update(f"d\0{path}\n".encode("utf-8"))
    return "sha256:" + h.hexdigest()


def default_backup_name(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"openvpn-backup-{now.strftime('%Y%m%d-%H%M%S')}.tar.gz"


def _safe_member(path: str) -> bool:
    rel = PurePosixPath(path)
    return bool(path) and not rel.is_absolute() and ".." not in rel.parts


class BackupManager:
    def __init__(self, store, lock, instance_id: str, lock_timeout: Optional[float] = None,
                 on_restored: Optional[Callable[[], None]] = None):
        self.store = store
        self.lock = lock
        self.instance_id = instance_id
        self.lock_timeout = lock_timeout
        self.on_restored = on_restored

    # =========================
    # BACKUP
    # =========================
    def backup(self, destination, cancel: Optional[threading.Event] = None) -> Snapshot:
        """Archive the whole store while no mutation is in flight."""
        destination = Path(destination)
        if destination.is_dir():
            destination = destination / default_backup_name()
        if not destination.parent.is_dir():
            raise BackupFailed(f"Backup directory {destination.parent} does not exist")

        with self.lock.write(self.lock_timeout, cancel):
            logger.info("Creating backup at: %s", destination)
            files, blobs = {}, {}
            for path in self.store.list():
                data = self.store.get(path)
                blobs[path] = data
                files[path] = {"sha256": hashlib.sha256(data).hexdigest(), "mode": self.store.mode(path)}
            dirs = self.store.directories()

        created_at = utcnow()
        manifest = {
            "format": FORMAT_VERSION,
            "instance": self.instance_id,
            "created_at": created_at.isoformat(),
            "files": files,
            "dirs": dirs,
            "digest": tree_digest(files, dirs),
        }
        self._write_archive(destination, manifest, blobs)

        snapshot = Snapshot(
            path=str(destination),
            instance_id=self.instance_id,
            created_at=created_at,
            digest=manifest["digest"],
            format_version=FORMAT_VERSION,
            file_count=len(files),
        )
        audit("Backup written to %s (%s, %d files)", destination, snapshot.digest, snapshot.file_count)
        return snapshot

    def _write_archive(self, destination: Path, manifest: Dict, blobs: Dict[str, bytes]) -> None:
        # Archive lands under a hidden name and is renamed only when complete.
        tmp = None
        try:
            fd, tmp = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.", suffix=".partial")
            with os.fdopen(fd, "wb") as raw:
                with tarfile.open(fileobj=raw, mode="w:gz") as tar:
                    self._add_member(tar, MANIFEST, json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8"), 0o644)
                    for directory in manifest["dirs"]:
                        info = tarfile.TarInfo(DATA_PREFIX + directory)
                        info.type = tarfile.DIRTYPE
                        info.mode = 0o755
                        tar.addfile(info)
                    for path in sorted(blobs):
                        self._add_member(tar, DATA_PREFIX + path, blobs[path], manifest["files"][path]["mode"])
                raw.flush()
                os.fsync(raw.fileno())
            os.replace(tmp, destination)
            tmp = None
        except (OSError, tarfile.TarError) as e:
            raise BackupFailed(f"Cannot write backup {destination}: {e}") from e
        finally:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)

    @staticmethod
    def _add_member(tar, name: str, data: bytes, mode: int) -> None:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        info.mode = mode
        info.mtime = int(utcnow().timestamp())
        tar.addfile(info, io.BytesIO(data))

    # =========================
    # VERIFY
    # =========================
    def _read_snapshot(self, source: Path):
        try:
            with tarfile.open(source, mode="r:gz") as tar:
                members = {}
                dirs = []
                manifest = None
                for member in tar:
                    if not _safe_member(member.name):
                        raise CorruptSnapshot(f"Unsafe path {member.name!r} in {source}")
                    if member.name == MANIFEST:
                        manifest = json.loads(tar.extractfile(member).read())
                    elif member.name.startswith(DATA_PREFIX) and member.isdir():
                        dirs.append(member.name[len(DATA_PREFIX):])
                    elif member.name.startswith(DATA_PREFIX) and member.isfile():
                        members[member.name[len(DATA_PREFIX):]] = tar.extractfile(member).read()
                    else:
                        raise CorruptSnapshot(f"Unexpected member {member.name!r} in {source}")
        except FileNotFoundError:
            raise NotFound(f"Backup file not found: {source}") from None
        except (OSError, EOFError, zlib.error, tarfile.TarError, ValueError) as e:
            raise CorruptSnapshot(f"Cannot read snapshot {source}: {e}") from e

        if manifest is None:
            raise CorruptSnapshot(f"{source} has no manifest")
        return manifest, members, dirs

    def _verify(self, source: Path, manifest: Dict, members: Dict[str, bytes], dirs: List[str]) -> Snapshot:
        if not isinstance(manifest, dict) or manifest.get("format") != FORMAT_VERSION:
            version = manifest.get("format") if isinstance(manifest, dict) else None
            raise CorruptSnapshot(f"Unsupported snapshot format {version!r}")
        try:
            files = manifest["files"]
            expected = manifest["digest"]
            listed_dirs = manifest["dirs"]
            created_at = from_iso(manifest["created_at"])
            actual = tree_digest(files, listed_dirs)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptSnapshot(f"Malformed manifest in {source}: {e}") from e

        if set(files) != set(members):
            raise CorruptSnapshot(f"{source} does not contain exactly the files its manifest lists")
        if sorted(listed_dirs) != sorted(dirs):
            raise CorruptSnapshot(f"{source} does not contain exactly the directories its manifest lists")
        for path, data in members.items():
            if hashlib.sha256(data).hexdigest() != files[path]["sha256"]:
                raise CorruptSnapshot(f"Content digest mismatch for {path} in {source}")
        if actual != expected:
            raise CorruptSnapshot(f"Snapshot digest mismatch in {source}")

        return Snapshot(
            path=str(source),
            instance_id=manifest.get("instance", ""),
            created_at=created_at,
            digest=expected,
            format_version=FORMAT_VERSION,
            file_count=len(files),
        )

    def inspect(self, source) -> Snapshot:
        """Read and verify a snapshot without restoring it."""
        source = Path(source)
        return self._verify(source, *self._read_snapshot(source))

    # =========================
    # RESTORE
    # =========================
    def restore(self, source, confirm: bool = False, cancel: Optional[threading.Event] = None) -> Snapshot:
        """Replace the whole store with a verified snapshot."""
        if not source:
            raise InvalidInput("Backup file path is required")
        if not confirm:
            raise ConfirmationRequired("Restore overwrites the existing PKI; explicit confirmation is required")

        source = Path(source)
        manifest, members, dirs = self._read_snapshot(source)
        snapshot = self._verify(source, manifest, members, dirs)
        if snapshot.instance_id and snapshot.instance_id != self.instance_id:
            logger.warning("Snapshot was taken from instance %s, restoring into %s",
                           snapshot.instance_id, self.instance_id)

        with self.lock.write(self.lock_timeout, cancel):
            logger.info("Restoring from backup: %s", source)
            staged = self.store.stage()
            try:
                for directory in sorted(dirs):
                    staged.makedirs(directory)
                for path in sorted(members):
                    staged.put(path, members[path], mode=manifest["files"][path]["mode"])
                self.store.swap_in(staged)
            except PkiError:
                self.store.discard(staged)
                raise
            if self.on_restored is not None:
                self.on_restored()

        audit("Restore applied from %s (%s)", source, snapshot.digest)
        return snapshot
