"""Snapshot persistence port.

The index is snapshotted as one opaque blob. The store does not interpret it.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """Raised when a snapshot cannot be written or read."""


class SnapshotCorruptError(SnapshotError):
    """Raised when a stored snapshot cannot be decoded or fails verification."""


class SnapshotStore(Protocol):
    def save(self, blob: bytes) -> None:
        ...

    def load(self) -> Optional[bytes]:
        """Return the stored blob, or None when nothing was saved yet."""
        ...


class FileSnapshotStore:
    """Stores the snapshot blob in a single file, replaced atomically."""

    def __init__(self, snapshot_path: str):
        self.snapshot_path = Path(snapshot_path)

    def save(self, blob: bytes) -> None:
        """
        Writes the blob to a temporary file and renames it into place.

        Raises:
            SnapshotError: If the file cannot be written.
        """
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.snapshot_path.parent, prefix=".snapshot-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                os.replace(tmp_path, self.snapshot_path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise SnapshotError(f"Could not write snapshot {self.snapshot_path}: {e}") from e
        logger.info(f"Saved index snapshot ({len(blob)} bytes) to {self.snapshot_path}")

    def load(self) -> Optional[bytes]:
        if not self.snapshot_path.exists():
            logger.warning(f"Snapshot not found at {self.snapshot_path}. Assuming first run.")
            return None
        try:
            return self.snapshot_path.read_bytes()
        except OSError as e:
            raise SnapshotError(f"Could not read snapshot {self.snapshot_path}: {e}") from e


class InMemorySnapshotStore:
    """Keeps the snapshot blob in memory; used when no data directory is set."""

    def __init__(self, blob: Optional[bytes] = None):
        self.blob = blob
        self.saves = 0

    def save(self, blob: bytes) -> None:
        self.blob = blob
        self.saves += 1

    def load(self) -> Optional[bytes]:
        return self.blob
