"""File store port and its filesystem implementation.

The file store is the sole source of truth for which notes exist. Notes are
identified by their vault-relative POSIX path.
"""

import logging
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class FileInfo(BaseModel):
    """Stat-level description of one note in the store."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Vault-relative POSIX path")
    size: int
    created: datetime
    modified: datetime


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class ChangeEvent(BaseModel):
    """A change notification emitted by the file store."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    path: str
    old_path: Optional[str] = None


class FileStore(Protocol):
    """Port through which the index reads notes."""

    def list_documents(self) -> List[FileInfo]:
        """List every note currently in the store."""
        ...

    def read_document(self, path: str) -> bytes:
        """Return the raw bytes of a note; raises FileNotFoundError if missing."""
        ...


def timestamp_to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _is_hardlink(path: Path) -> bool:
    return path.stat().st_nlink > 1


class VaultFileStore:
    """Reads notes from a vault directory on disk."""

    def __init__(self, vault_path: str):
        self.vault_path = Path(vault_path).expanduser().resolve()

    def list_documents(self) -> List[FileInfo]:
        """
        Walks the vault and returns stat information for every regular file.

        Hidden directories are skipped, as are hardlinks and files that resolve
        outside the vault.

        Returns:
            FileInfo records sorted by path.
        """
        if not self.vault_path.exists():
            logger.warning(f"Vault directory does not exist: {self.vault_path}")
            return []

        files: List[FileInfo] = []
        for dirpath, dirnames, filenames in os.walk(self.vault_path, followlinks=False):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for filename in filenames:
                if filename.startswith("."):
                    continue
                file_path = Path(dirpath) / filename
                try:
                    resolved = file_path.resolve()
                    if not resolved.is_relative_to(self.vault_path):
                        logger.warning(f"Skipping file outside the vault: {file_path}")
                        continue
                    if _is_hardlink(resolved):
                        logger.warning(f"Skipping hardlinked file: {file_path}")
                        continue
                    stat = resolved.stat()
                except OSError as e:
                    logger.warning(f"Could not stat {file_path}: {e}")
                    continue

                created = getattr(stat, "st_birthtime", stat.st_ctime)
                files.append(
                    FileInfo(
                        path=file_path.relative_to(self.vault_path).as_posix(),
                        size=stat.st_size,
                        created=timestamp_to_datetime(created),
                        modified=timestamp_to_datetime(stat.st_mtime),
                    )
                )

        files.sort(key=lambda info: info.path)
        logger.debug(f"Listed {len(files)} files under {self.vault_path}")
        return files

    def read_document(self, path: str) -> bytes:
        """Reads the raw bytes of a note by its vault-relative path."""
        full_path = self.resolve(path)
        with open(full_path, "rb") as f:
            return f.read()

    def resolve(self, path: str) -> Path:
        """Maps a vault-relative path to an absolute path inside the vault."""
        full_path = (self.vault_path / path).resolve()
        if not full_path.is_relative_to(self.vault_path):
            raise FileNotFoundError(f"Path is outside the vault: {path}")
        return full_path

    def relative_path(self, absolute_path: str) -> Optional[str]:
        """Maps an absolute path to a vault-relative one, or None if outside."""
        try:
            return (
                Path(absolute_path).resolve().relative_to(self.vault_path).as_posix()
            )
        except ValueError:
            return None
