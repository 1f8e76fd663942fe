"""Tests for snapshot persistence."""

from unittest.mock import patch

import pytest
from components.persistence import (
    FileSnapshotStore,
    InMemorySnapshotStore,
    SnapshotError,
)


def test_load_missing_returns_none(tmp_path):
    store = FileSnapshotStore(str(tmp_path / "data" / "index_snapshot.json"))
    assert store.load() is None


def test_save_then_load(tmp_path):
    path = tmp_path / "data" / "index_snapshot.json"
    store = FileSnapshotStore(str(path))
    store.save(b'{"version": 1}')
    assert path.exists()
    assert store.load() == b'{"version": 1}'
    # No temporary files left behind
    assert [p.name for p in path.parent.iterdir()] == ["index_snapshot.json"]


def test_save_replaces_previous_blob(tmp_path):
    store = FileSnapshotStore(str(tmp_path / "snap.json"))
    store.save(b"first")
    store.save(b"second")
    assert store.load() == b"second"


def test_failed_write_keeps_previous_snapshot(tmp_path):
    path = tmp_path / "snap.json"
    store = FileSnapshotStore(str(path))
    store.save(b"good")
    with patch(
        "components.persistence.snapshot_store.os.replace",
        side_effect=OSError("disk full"),
    ):
        with pytest.raises(SnapshotError, match="disk full"):
            store.save(b"bad")
    assert store.load() == b"good"
    assert [p.name for p in tmp_path.iterdir()] == ["snap.json"]


def test_in_memory_store():
    store = InMemorySnapshotStore()
    assert store.load() is None
    store.save(b"blob")
    assert store.load() == b"blob"
    assert store.saves == 1
