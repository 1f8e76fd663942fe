"""Persistence component: snapshot storage for the document index."""

from .snapshot_store import (
    FileSnapshotStore,
    InMemorySnapshotStore,
    SnapshotCorruptError,
    SnapshotError,
    SnapshotStore,
)

__all__ = [
    "FileSnapshotStore",
    "InMemorySnapshotStore",
    "SnapshotCorruptError",
    "SnapshotError",
    "SnapshotStore",
]
