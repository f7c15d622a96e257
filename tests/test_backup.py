import io
import re
import tarfile

import pytest

from conftest import INSTANCE, SERVER_URL
from ovpn_pki.backup import MANIFEST, BackupManager, default_backup_name
from ovpn_pki.errors import BackupFailed, ConfirmationRequired, CorruptSnapshot, InvalidInput, NotFound
from ovpn_pki.local_ca import LocalToolchain
from ovpn_pki.models import CertStatus, Phase
from ovpn_pki.state import PkiStateMachine
from ovpn_pki.store import ArtifactStore


def manager_for(state):
    return BackupManager(state.store, state.lock, state.instance_id,
                         on_restored=lambda: state.reload(restored=True))


@pytest.fixture
def backups(ready):
    return manager_for(ready)


def _files(store):
    return {path: store.get(path) for path in store.list()}


def test_round_trip(ready, backups, tmp_path):
    ready.add_client("alice")
    ready.add_client("bob")
    ready.revoke_client("alice")
    before = ready.list_clients()
    files = _files(ready.store)
    archive = tmp_path / "pki.tar.gz"

    snapshot = backups.backup(archive)
    assert snapshot.file_count == len(files)
    assert snapshot.digest.startswith("sha256:")

    ready.add_client("carol")
    ready.revoke_client("bob")

    backups.restore(archive, confirm=True)

    assert ready.phase == Phase.READY
    assert ready.list_clients() == before
    assert _files(ready.store) == files
    assert ready.store.mode("pki/private/ca.key") == 0o600


def test_restore_leaves_no_staging_behind(ready, backups, tmp_path):
    archive = backups.backup(tmp_path / "pki.tar.gz").path
    backups.restore(archive, confirm=True)
    assert sorted(p.name for p in tmp_path.iterdir()) == sorted([INSTANCE, "pki.tar.gz"])


def test_restore_requires_confirmation(ready, backups, tmp_path):
    archive = backups.backup(tmp_path / "pki.tar.gz").path
    ready.add_client("alice")

    with pytest.raises(ConfirmationRequired):
        backups.restore(archive)
    assert [c.name for c in ready.list_clients()] == ["alice"]


def test_restore_requires_a_source(backups):
    with pytest.raises(InvalidInput):
        backups.restore("", confirm=True)


def test_restore_missing_file(backups, tmp_path):
    with pytest.raises(NotFound):
        backups.restore(tmp_path / "missing.tar.gz", confirm=True)


def _rewrite(archive, change):
    with tarfile.open(archive, "r:gz") as tar:
        members = [(m, tar.extractfile(m).read() if m.isfile() else None) for m in tar]
    with tarfile.open(archive, "w:gz") as tar:
        for member, data in members:
            if data is not None:
                data = change(member.name, data)
                member.size = len(data)
                tar.addfile(member, io.BytesIO(data))
            else:
                tar.addfile(member)


def test_tampered_snapshot_is_rejected_without_changes(ready, backups, tmp_path):
    ready.add_client("alice")
    archive = tmp_path / "pki.tar.gz"
    backups.backup(archive)
    _rewrite(archive, lambda name, data: b"tampered" if name == "data/clients.json" else data)

    ready.add_client("bob")
    files = _files(ready.store)
    with pytest.raises(CorruptSnapshot):
        backups.restore(archive, confirm=True)
    assert _files(ready.store) == files
    assert [c.name for c in ready.list_clients()] == ["alice", "bob"]


def test_missing_member_is_rejected(ready, backups, tmp_path):
    archive = tmp_path / "pki.tar.gz"
    backups.backup(archive)
    with tarfile.open(archive, "r:gz") as tar:
        members = [(m, tar.extractfile(m).read() if m.isfile() else None) for m in tar]
    with tarfile.open(archive, "w:gz") as tar:
        for member, data in members:
            if member.name == "data/pki/ca.crt":
                continue
            tar.addfile(member, io.BytesIO(data) if data is not None else None)

    with pytest.raises(CorruptSnapshot):
        backups.inspect(archive)


def test_garbage_is_rejected(backups, tmp_path):
    archive = tmp_path / "junk.tar.gz"
    archive.write_bytes(b"this is not a tarball")
    with pytest.raises(CorruptSnapshot):
        backups.restore(archive, confirm=True)


def test_unsafe_member_is_rejected(backups, tmp_path):
    archive = tmp_path / "evil.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        info = tarfile.TarInfo("../escape")
        info.size = 1
        tar.addfile(info, io.BytesIO(b"x"))
    with pytest.raises(CorruptSnapshot):
        backups.inspect(archive)


def test_inspect(ready, backups, tmp_path):
    snapshot = backups.backup(tmp_path / "pki.tar.gz")
    seen = backups.inspect(snapshot.path)
    assert seen.digest == snapshot.digest
    assert seen.instance_id == INSTANCE
    assert seen.file_count == snapshot.file_count
    with tarfile.open(snapshot.path, "r:gz") as tar:
        assert tar.getnames()[0] == MANIFEST


def test_default_name_in_directory(backups, tmp_path):
    snapshot = backups.backup(tmp_path)
    assert re.fullmatch(r"openvpn-backup-\d{8}-\d{6}\.tar\.gz", default_backup_name())
    assert re.fullmatch(r".*/openvpn-backup-\d{8}-\d{6}\.tar\.gz", snapshot.path)


def test_backup_into_missing_directory(backups, tmp_path):
    with pytest.raises(BackupFailed):
        backups.backup(tmp_path / "nowhere" / "pki.tar.gz")


def test_restore_into_uninitialized_instance(ready, backups, tmp_path):
    ready.add_client("alice")
    archive = backups.backup(tmp_path / "pki.tar.gz").path

    store = ArtifactStore(tmp_path / "fresh")
    fresh = PkiStateMachine(store, LocalToolchain(store, key_algorithm="ec", curve="secp256r1"), "fresh")
    assert fresh.phase == Phase.UNINITIALIZED

    manager_for(fresh).restore(archive, confirm=True)

    assert fresh.phase == Phase.READY
    assert fresh.record.instance_id == "fresh"
    assert [(c.name, c.status) for c in fresh.list_clients()] == [("alice", CertStatus.ACTIVE)]
    assert fresh.add_client("bob").serial not in {c.serial for c in ready.list_clients()}


def test_restoring_an_empty_snapshot_uninitializes(ready, tmp_path):
    store = ArtifactStore(tmp_path / "empty")
    empty = PkiStateMachine(store, LocalToolchain(store), "empty")
    archive = manager_for(empty).backup(tmp_path / "empty.tar.gz").path

    manager_for(ready).restore(archive, confirm=True)

    assert ready.phase == Phase.UNINITIALIZED
    assert ready.store.list() == []
    ready.init(SERVER_URL)
    assert ready.phase == Phase.READY
