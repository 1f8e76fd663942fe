"""Document index component.

Owns the indexed notes, their embedding records and the derived connection
graph, keeps them in sync with the file store and answers search primitives.
"""

from .connections import ConnectionBuilder, ReferenceResolver, tag_strength
from .document_index import DocumentIndex
from .models import (
    Connection,
    ConnectionKind,
    Document,
    EmbeddingRecord,
    IndexReport,
    IndexSnapshot,
    IndexStats,
    SearchHit,
    SearchOutcome,
)
from .store import ChangeSet, IndexStore, StoreView

__all__ = [
    "ChangeSet",
    "Connection",
    "ConnectionBuilder",
    "ConnectionKind",
    "Document",
    "DocumentIndex",
    "EmbeddingRecord",
    "IndexReport",
    "IndexSnapshot",
    "IndexStats",
    "IndexStore",
    "ReferenceResolver",
    "SearchHit",
    "SearchOutcome",
    "StoreView",
    "tag_strength",
]
