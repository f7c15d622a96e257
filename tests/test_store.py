import pytest

from ovpn_pki.errors import InvalidInput, NotFound, StoreUnavailable
from ovpn_pki.store import ArtifactStore


def test_put_get(store):
    store.put("pki/issued/alice.crt", b"cert")
    assert store.get("pki/issued/alice.crt") == b"cert"
    assert store.exists("pki/issued/alice.crt")
    assert store.mode("pki/issued/alice.crt") == 0o644


def test_put_replaces_and_keeps_mode(store):
    store.put("pki/private/ca.key", b"one", mode=0o600)
    store.put("pki/private/ca.key", b"two", mode=0o600)
    assert store.get("pki/private/ca.key") == b"two"
    assert store.mode("pki/private/ca.key") == 0o600


def test_no_temp_files_left_behind(store):
    store.put("instance.json", b"{}")
    names = [p.name for p in store.root.iterdir()]
    assert names == ["instance.json"]


def test_missing_artifact(store):
    with pytest.raises(NotFound):
        store.get("nope")
    with pytest.raises(NotFound):
        store.delete("nope")
    assert not store.exists("nope")


@pytest.mark.parametrize("path", ["/etc/passwd", "../escape", "pki/../../escape", ""])
def test_rejects_paths_outside_root(store, path):
    with pytest.raises(InvalidInput):
        store.put(path, b"x")


def test_list_and_directories(store):
    store.put("b.txt", b"")
    store.put("pki/issued/a.crt", b"")
    store.makedirs("pki/reqs")
    (store.root / "pki" / ".a.crt.xyz.tmp").write_bytes(b"partial")

    assert store.list() == ["b.txt", "pki/issued/a.crt"]
    assert store.list("pki/") == ["pki/issued/a.crt"]
    assert store.directories() == ["pki", "pki/issued", "pki/reqs"]


def test_delete(store):
    store.put("x", b"1")
    store.delete("x")
    assert not store.exists("x")


def test_swap_in_replaces_whole_tree(store, tmp_path):
    store.put("old.txt", b"old")
    staged = store.stage()
    staged.put("new.txt", b"new")

    store.swap_in(staged)

    assert store.list() == ["new.txt"]
    assert sorted(p.name for p in tmp_path.iterdir()) == [store.root.name]


def test_discard_leaves_live_tree(store, tmp_path):
    store.put("old.txt", b"old")
    staged = store.stage()
    staged.put("new.txt", b"new")
    store.discard(staged)

    assert store.list() == ["old.txt"]
    assert sorted(p.name for p in tmp_path.iterdir()) == [store.root.name]


def test_unusable_root(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    with pytest.raises(StoreUnavailable):
        ArtifactStore(blocker)
    with pytest.raises(StoreUnavailable):
        ArtifactStore(blocker / "child")
