"""Per-instance read/write lock.

Writers queue in arrival order and exclude everyone; readers share the lock
but wait behind any queued writer. A waiter may give up after a timeout or
when its cancel event is set. Once acquired, the lock is held until the
operation finishes: only the wait is cancellable.

With a lock file, the same exclusion holds across processes: after the
in-process queue grants access, the holder takes ``flock`` on the file
(LOCK_EX for writers, LOCK_SH for readers).
"""

import errno
import fcntl
import itertools
import os
import threading
import time
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from .errors import Cancelled, LockTimeout, StoreUnavailable

POLL_INTERVAL = 0.05


class InstanceLock:
    def __init__(self, name: str = "pki", path=None):
        self.name = name
        self.path = Path(path) if path is not None else None
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = None
        self._queue = deque()
        self._tickets = itertools.count()

    def __repr__(self):
        return f"InstanceLock({self.name!r}, path={str(self.path) if self.path else None!r})"

    @property
    def locked(self) -> bool:
        with self._cond:
            return self._writer is not None

    def _check(self, deadline, timeout, cancel, what):
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"Gave up waiting for {what} on {self.name}")
        if deadline is not None and time.monotonic() >= deadline:
            raise LockTimeout(f"Timed out after {timeout:g}s waiting for {what} on {self.name}")

    def _wait(self, ready, deadline, timeout, cancel, what):
        while not ready():
            self._check(deadline, timeout, cancel, what)
            slice_ = None
            if deadline is not None:
                slice_ = deadline - time.monotonic()
            if cancel is not None:
                slice_ = POLL_INTERVAL if slice_ is None else min(slice_, POLL_INTERVAL)
            self._cond.wait(slice_)

    @contextmanager
    def _file_lock(self, operation, deadline, timeout, cancel, what):
        if self.path is None:
            yield
            return
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StoreUnavailable(f"Cannot open lock file {self.path}: {e}") from e
        try:
            while True:
                try:
                    fcntl.flock(fd, operation | fcntl.LOCK_NB)
                    break
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES):
                        raise StoreUnavailable(f"Cannot lock {self.path}: {e}") from e
                # Held by another process.
                self._check(deadline, timeout, cancel, what)
                time.sleep(POLL_INTERVAL)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _deadline(timeout):
        return None if timeout is None else time.monotonic() + timeout

    @contextmanager
    def write(self, timeout: Optional[float] = None, cancel: Optional[threading.Event] = None):
        """Exclusive access for one mutating operation."""
        deadline = self._deadline(timeout)
        with self._cond:
            ticket = next(self._tickets)
            self._queue.append(ticket)
            try:
                self._wait(
                    lambda: self._writer is None and self._readers == 0 and self._queue[0] == ticket,
                    deadline, timeout, cancel, "the write lock",
                )
            except BaseException:
                self._queue.remove(ticket)
                self._cond.notify_all()
                raise
            self._queue.popleft()
            self._writer = ticket
        try:
            with self._file_lock(fcntl.LOCK_EX, deadline, timeout, cancel, "the write lock"):
                yield
        finally:
            with self._cond:
                self._writer = None
                self._cond.notify_all()

    @contextmanager
    def read(self, timeout: Optional[float] = None, cancel: Optional[threading.Event] = None):
        """Shared access; excludes in-flight and queued writers."""
        deadline = self._deadline(timeout)
        with self._cond:
            self._wait(
                lambda: self._writer is None and not self._queue,
                deadline, timeout, cancel, "the read lock",
            )
            self._readers += 1
        try:
            with self._file_lock(fcntl.LOCK_SH, deadline, timeout, cancel, "the read lock"):
                yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()
