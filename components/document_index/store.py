"""The single owned store behind the document index.

All notes, embedding records and connections live here. Writers commit whole
records under one lock; readers take a view, which is a consistent copy of
the maps as of the last commit.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import Connection, ConnectionKind, Document, EmbeddingRecord

logger = logging.getLogger(__name__)

ConnectionMap = Dict[str, Tuple[Connection, ...]]


@dataclass(frozen=True)
class StoreView:
    """Read-only, point-in-time view of the store."""

    documents: Mapping[str, Document]
    embeddings: Mapping[str, EmbeddingRecord]
    connections: Mapping[str, Tuple[Connection, ...]]
    last_updated: Optional[datetime] = None

    def outgoing(
        self, path: str, kind: Optional[ConnectionKind] = None
    ) -> List[Connection]:
        return [
            c for c in self.connections.get(path, ()) if kind is None or c.kind == kind
        ]

    def incoming(
        self, path: str, kind: Optional[ConnectionKind] = None
    ) -> List[Connection]:
        return [
            c
            for edges in self.connections.values()
            for c in edges
            if c.target == path and (kind is None or c.kind == kind)
        ]

    def all_connections(self) -> List[Connection]:
        return [c for edges in self.connections.values() for c in edges]


@dataclass
class ChangeSet:
    """A batch of record-level writes applied atomically."""

    upsert_documents: Dict[str, Document] = field(default_factory=dict)
    upsert_embeddings: Dict[str, EmbeddingRecord] = field(default_factory=dict)
    drop_embeddings: List[str] = field(default_factory=list)
    remove: List[str] = field(default_factory=list)
    connections: Optional[ConnectionMap] = None


class IndexStore:
    """Owns the document, embedding and connection maps."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: Dict[str, Document] = {}
        self._embeddings: Dict[str, EmbeddingRecord] = {}
        self._connections: ConnectionMap = {}
        self._last_updated: Optional[datetime] = None

    def view(self) -> StoreView:
        with self._lock:
            return StoreView(
                documents=MappingProxyType(dict(self._documents)),
                embeddings=MappingProxyType(dict(self._embeddings)),
                connections=MappingProxyType(dict(self._connections)),
                last_updated=self._last_updated,
            )

    def apply(self, changes: ChangeSet) -> None:
        """
        Applies a change set.

        Removing a note also drops its embedding record and every connection
        touching it, even when the change set carries no new connection map.
        """
        with self._lock:
            for path in changes.remove:
                self._documents.pop(path, None)
                self._embeddings.pop(path, None)
            for path in changes.drop_embeddings:
                self._embeddings.pop(path, None)
            self._documents.update(changes.upsert_documents)
            self._embeddings.update(changes.upsert_embeddings)

            if changes.connections is not None:
                self._connections = dict(changes.connections)
            elif changes.remove:
                removed = set(changes.remove)
                self._connections = {
                    source: tuple(c for c in edges if c.target not in removed)
                    for source, edges in self._connections.items()
                    if source not in removed
                }
            self._last_updated = datetime.now(timezone.utc)

    def replace_all(
        self,
        documents: Iterable[Document],
        embeddings: Iterable[EmbeddingRecord],
        connections: Iterable[Connection],
    ) -> None:
        by_source: Dict[str, List[Connection]] = {}
        for connection in connections:
            by_source.setdefault(connection.source, []).append(connection)
        with self._lock:
            self._documents = {d.path: d for d in documents}
            self._embeddings = {e.path: e for e in embeddings}
            self._connections = {k: tuple(v) for k, v in by_source.items()}
            self._last_updated = datetime.now(timezone.utc)

    def clear(self) -> None:
        with self._lock:
            self._documents = {}
            self._embeddings = {}
            self._connections = {}
            self._last_updated = datetime.now(timezone.utc)
        logger.debug("Index store cleared")
