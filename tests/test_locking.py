import threading

import pytest

from conftest import wait_until
from ovpn_pki.errors import Cancelled, LockTimeout, StoreUnavailable, Timeout
from ovpn_pki.locking import InstanceLock


def test_writers_exclude_each_other():
    lock = InstanceLock("t")
    with lock.write():
        assert lock.locked
        with pytest.raises(LockTimeout):
            with lock.write(timeout=0.1):
                pass
    assert not lock.locked


def test_lock_timeout_is_a_timeout():
    assert issubclass(LockTimeout, Timeout)


def test_readers_share():
    lock = InstanceLock("t")
    with lock.read():
        with lock.read(timeout=0.1):
            pass


def test_reader_blocks_writer():
    lock = InstanceLock("t")
    with lock.read():
        with pytest.raises(LockTimeout):
            with lock.write(timeout=0.1):
                pass


def test_reader_waits_behind_queued_writer():
    lock = InstanceLock("t")
    entered = threading.Event()

    def writer():
        with lock.write():
            entered.set()

    with lock.read():
        t = threading.Thread(target=writer)
        t.start()
        wait_until(lambda: len(lock._queue) == 1)
        with pytest.raises(LockTimeout):
            with lock.read(timeout=0.1):
                pass
        assert not entered.is_set()
    t.join(2)
    assert entered.is_set()


def test_cancel_gives_up_the_wait_and_the_queue_slot():
    lock = InstanceLock("t")
    cancel = threading.Event()
    outcome = []

    def waiter():
        try:
            with lock.write(cancel=cancel):
                outcome.append("acquired")
        except Cancelled:
            outcome.append("cancelled")

    with lock.write():
        t = threading.Thread(target=waiter)
        t.start()
        wait_until(lambda: len(lock._queue) == 1)
        cancel.set()
        t.join(2)

    assert outcome == ["cancelled"]
    with lock.write(timeout=0.1):
        pass


def test_writers_are_served_in_arrival_order():
    lock = InstanceLock("t")
    order = []

    def writer(n):
        with lock.write():
            order.append(n)

    threads = []
    with lock.write():
        for n in range(5):
            t = threading.Thread(target=writer, args=(n,))
            t.start()
            threads.append(t)
            wait_until(lambda: len(lock._queue) == n + 1)
    for t in threads:
        t.join(2)

    assert order == [0, 1, 2, 3, 4]


def test_released_after_exception():
    lock = InstanceLock("t")
    with pytest.raises(RuntimeError):
        with lock.write():
            raise RuntimeError("boom")
    with lock.write(timeout=0.1):
        pass


def test_lock_file_excludes_other_holders(tmp_path):
    # Each object opens the file separately, like another process would.
    path = tmp_path / "ovpn-data.lock"
    first, second = InstanceLock("a", path=path), InstanceLock("b", path=path)
    with first.write():
        with pytest.raises(LockTimeout):
            with second.write(timeout=0.1):
                pass
        with pytest.raises(LockTimeout):
            with second.read(timeout=0.1):
                pass
    with second.write(timeout=0.1):
        pass
    assert path.exists()


def test_lock_file_readers_share(tmp_path):
    path = tmp_path / "ovpn-data.lock"
    first, second = InstanceLock("a", path=path), InstanceLock("b", path=path)
    with first.read():
        with second.read(timeout=0.1):
            pass
        with pytest.raises(LockTimeout):
            with second.write(timeout=0.1):
                pass


def test_lock_file_wait_can_be_cancelled(tmp_path):
    path = tmp_path / "ovpn-data.lock"
    first, second = InstanceLock("a", path=path), InstanceLock("b", path=path)
    cancel = threading.Event()
    errors = []

    def waiter():
        try:
            with second.write(cancel=cancel):
                pass
        except Cancelled as e:
            errors.append(e)

    with first.write():
        t = threading.Thread(target=waiter)
        t.start()
        cancel.set()
        t.join(2)
    assert len(errors) == 1
    assert not second.locked


def test_unusable_lock_file(tmp_path):
    lock = InstanceLock("t", path=tmp_path / "missing" / "x.lock")
    with pytest.raises(StoreUnavailable):
        with lock.write():
            pass
