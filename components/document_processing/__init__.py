"""Document processing component.

This component reads notes from the vault and turns them into plain text plus
the structured metadata (tags, references, frontmatter) the index is built on.
"""

from .file_store import ChangeEvent, ChangeKind, FileInfo, FileStore, VaultFileStore
from .note_parser import NoteParser, ParsedNote, normalize_reference, normalize_tag

__all__ = [
    # File store
    "ChangeEvent",
    "ChangeKind",
    "FileInfo",
    "FileStore",
    "VaultFileStore",
    # Parsing
    "NoteParser",
    "ParsedNote",
    "normalize_reference",
    "normalize_tag",
]
