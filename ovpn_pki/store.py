"""Artifact Store: the durable directory tree behind one PKI instance.

Every write goes to a temporary file in the target directory, is fsynced,
then renamed over the target, so readers see either the old content or the
new content and never a partial file.
"""

import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import List

from .errors import InvalidInput, NotFound, StoreUnavailable
from .log import get_logger

logger = get_logger(__name__)

TMP_SUFFIX = ".tmp"


def _is_temp(name: str) -> bool:
    return name.startswith(".") and name.endswith(TMP_SUFFIX)


class ArtifactStore:
    def __init__(self, root, create: bool = True):
        self.root = Path(root)
        try:
            if create:
                self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create store at {self.root}: {e}") from e
        if not self.root.is_dir():
            raise StoreUnavailable(f"Store root {self.root} is not a directory")
        if not os.access(self.root, os.R_OK | os.W_OK | os.X_OK):
            raise StoreUnavailable(f"Store root {self.root} is not readable and writable")

    def __repr__(self):
        return f"ArtifactStore({str(self.root)!r})"

    def _resolve(self, path) -> Path:
        rel = PurePosixPath(str(path))
        if not str(path) or rel.is_absolute() or ".." in rel.parts or str(rel) == ".":
            raise InvalidInput(f"Invalid artifact path: {path!r}")
        return self.root.joinpath(*rel.parts)

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    # =========================
    # READ / WRITE
    # =========================
    def put(self, path, data: bytes, mode: int = 0o644) -> None:
        """Durably replace ``path`` with ``data``."""
        target = self._resolve(path)
        tmp = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=TMP_SUFFIX)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, mode)
            os.replace(tmp, target)
            tmp = None
            self._fsync_dir(target.parent)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write {path}: {e}") from e
        finally:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
        logger.debug("Stored %s (%d bytes)", path, len(data))

    def get(self, path) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound(f"Artifact not found: {path}") from None
        except OSError as e:
            raise StoreUnavailable(f"Cannot read {path}: {e}") from e

    def exists(self, path) -> bool:
        return self._resolve(path).is_file()

    def mode(self, path) -> int:
        try:
            return self._resolve(path).stat().st_mode & 0o777
        except FileNotFoundError:
            raise NotFound(f"Artifact not found: {path}") from None
        except OSError as e:
            raise StoreUnavailable(f"Cannot stat {path}: {e}") from e

    def delete(self, path) -> None:
        target = self._resolve(path)
        try:
            target.unlink()
            self._fsync_dir(target.parent)
        except FileNotFoundError:
            raise NotFound(f"Artifact not found: {path}") from None
        except OSError as e:
            raise StoreUnavailable(f"Cannot delete {path}: {e}") from e

    def makedirs(self, path, mode: int = 0o755) -> None:
        try:
            self._resolve(path).mkdir(mode=mode, parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create directory {path}: {e}") from e

    # =========================
    # LISTING
    # =========================
    def _walk(self):
        try:
            for dirpath, dirnames, filenames in os.walk(self.root, onerror=self._raise):
                dirnames.sort()
                rel_dir = Path(dirpath).relative_to(self.root)
                yield rel_dir, dirnames, sorted(f for f in filenames if not _is_temp(f))
        except OSError as e:
            raise StoreUnavailable(f"Cannot list {self.root}: {e}") from e

    @staticmethod
    def _raise(error):
        raise error

    def list(self, prefix: str = "") -> List[str]:
        """Relative POSIX paths of every artifact starting with ``prefix``, sorted."""
        paths = []
        for rel_dir, _, filenames in self._walk():
            for name in filenames:
                rel = (rel_dir / name).as_posix()
                if rel.startswith(prefix):
                    paths.append(rel)
        return sorted(paths)

    def directories(self, prefix: str = "") -> List[str]:
        dirs = []
        for rel_dir, dirnames, _ in self._walk():
            for name in dirnames:
                rel = (rel_dir / name).as_posix()
                if rel.startswith(prefix):
                    dirs.append(rel)
        return sorted(dirs)

    # =========================
    # WHOLE-TREE REPLACEMENT
    # =========================
    def stage(self) -> "ArtifactStore":
        """Empty sibling store that can later replace this one wholesale."""
        try:
            staging = tempfile.mkdtemp(prefix=f".{self.root.name}.stage-", dir=self.root.parent)
            os.chmod(staging, 0o755)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create staging area next to {self.root}: {e}") from e
        return ArtifactStore(staging, create=False)

    def discard(self, staged: "ArtifactStore") -> None:
        shutil.rmtree(staged.root, ignore_errors=True)

    def swap_in(self, staged: "ArtifactStore") -> None:
        """Replace this store's whole tree with the staged tree."""
        try:
            retired = Path(tempfile.mkdtemp(prefix=f".{self.root.name}.old-", dir=self.root.parent))
            retired.rmdir()
            os.rename(self.root, retired)
        except OSError as e:
            raise StoreUnavailable(f"Cannot retire {self.root}: {e}") from e
        try:
            os.rename(staged.root, self.root)
        except OSError as e:
            os.rename(retired, self.root)
            raise StoreUnavailable(f"Cannot move staged tree into {self.root}: {e}") from e
        self._fsync_dir(self.root.parent)
        shutil.rmtree(retired, ignore_errors=True)
        logger.debug("Swapped %s into %s", staged.root, self.root)
