import json

import pytest

from widgetbridge.host import persistence
from widgetbridge.host.config import configure_bridge_runtime, reset_bridge_runtime
from widgetbridge.host.persistence import (
    FileSnapshotStore,
    MemorySnapshotStore,
    get_snapshot_store,
    set_snapshot_store,
)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemorySnapshotStore()
    return FileSnapshotStore(tmp_path / "snapshots")


def test_save_then_load(store):
    store.save("app-a", {"count": 3, "items": ["x"]})
    assert store.load("app-a") == {"count": 3, "items": ["x"]}


def test_absent_app_id_is_none(store):
    assert store.load("never-saved") is None


def test_save_overwrites_without_merge(store):
    store.save("app-a", {"count": 3, "theme": "dark"})
    store.save("app-a", {"count": 4})
    assert store.load("app-a") == {"count": 4}


def test_keys_are_partitioned(store):
    store.save("app-a", {"count": 1})
    store.save("app-b", {"count": 2})
    assert store.load("app-a") == {"count": 1}
    assert store.load("app-b") == {"count": 2}


def test_loaded_state_is_a_copy(store):
    store.save("app-a", {"items": [1]})
    loaded = store.load("app-a")
    loaded["items"].append(2)
    assert store.load("app-a") == {"items": [1]}


def test_subscribers_see_writes_of_their_key(store):
    seen = []
    unsubscribe = store.subscribe("app-a", lambda app_id, state: seen.append((app_id, state)))
    store.save("app-a", {"count": 1})
    store.save("app-b", {"count": 9})
    unsubscribe()
    store.save("app-a", {"count": 2})
    assert seen == [("app-a", {"count": 1})]


def test_failing_subscriber_does_not_block_save(store):
    def broken(app_id, state):
        raise RuntimeError("listener bug")

    store.subscribe("app-a", broken)
    store.save("app-a", {"count": 1})
    assert store.load("app-a") == {"count": 1}


def test_delete(store):
    store.save("app-a", {"count": 1})
    assert store.delete("app-a") is True
    assert store.delete("app-a") is False
    assert store.load("app-a") is None


def test_non_dict_state_rejected(store):
    with pytest.raises(TypeError):
        store.save("app-a", ["not", "a", "dict"])


def test_file_store_layout(tmp_path):
    store = FileSnapshotStore(tmp_path)
    store.save("app/../odd id", {"count": 7})
    path = store.path_for("app/../odd id")
    assert path.parent == tmp_path
    assert json.loads(path.read_text(encoding="utf-8")) == {"app_id": "app/../odd id", "state": {"count": 7}}
    assert [p.name for p in tmp_path.iterdir()] == [path.name]

    reopened = FileSnapshotStore(tmp_path)
    assert reopened.load("app/../odd id") == {"count": 7}


def test_process_wide_store_follows_settings(tmp_path):
    set_snapshot_store(None)
    try:
        configure_bridge_runtime(
            {"bridge_config": {"persistence_backend": "file", "persistence_dir": str(tmp_path / "s")}}
        )
        store = get_snapshot_store()
        assert isinstance(store, FileSnapshotStore)
        assert get_snapshot_store() is store
    finally:
        reset_bridge_runtime()
        set_snapshot_store(None)
    assert isinstance(persistence.get_snapshot_store(), MemorySnapshotStore)
    set_snapshot_store(None)
