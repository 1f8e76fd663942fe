"""Derivation of the link / tag / semantic connection graph.

Connections and inbound links are a derived view of the notes. A full build
recomputes everything; an update recomputes only the edges that can have
changed because of the touched and removed notes.
"""

import logging
from collections import defaultdict
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from vault_agent.config import IndexingConfig

from .models import Connection, ConnectionKind, Document, EmbeddingRecord
from .store import ConnectionMap
from .vector_math import VectorMatrix

logger = logging.getLogger(__name__)


def reference_key(reference: str) -> str:
    key = reference.strip().lower()
    return key[:-3] if key.endswith(".md") else key


def path_keys(path: str) -> Set[str]:
    """Every reference key that resolves to ``path``."""
    lower = path.lower()
    keys = {lower, reference_key(lower)}
    keys.add(PurePosixPath(lower).stem)
    return keys


class ReferenceResolver:
    """Maps authored link targets to note paths."""

    def __init__(self, paths: Iterable[str]):
        self._exact: Dict[str, str] = {}
        self._stem: Dict[str, str] = {}
        for path in sorted(paths):
            lower = path.lower()
            self._exact.setdefault(lower, path)
            self._exact.setdefault(reference_key(lower), path)
            self._stem.setdefault(PurePosixPath(lower).stem, path)

    def resolve(self, reference: str) -> Optional[str]:
        lower = reference.strip().lower()
        key = reference_key(lower)
        path = self._exact.get(lower) or self._exact.get(key)
        if path is None and "/" not in key:
            path = self._stem.get(key)
        return path

    def resolve_all(self, references: Iterable[str]) -> List[str]:
        """Resolved paths where possible, the authored target otherwise."""
        outlinks: List[str] = []
        for reference in references:
            target = self.resolve(reference) or reference
            if target not in outlinks:
                outlinks.append(target)
        return outlinks


def tag_strength(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
    """``|shared| / max(|A|, |B|)`` over case-insensitive tag sets."""
    set_a = {t.lower() for t in tags_a}
    set_b = {t.lower() for t in tags_b}
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / max(len(set_a), len(set_b))


def with_inlinks(documents: Dict[str, Document]) -> Dict[str, Document]:
    """Recomputes every note's inbound links from all outlinks."""
    inbound: Dict[str, Set[str]] = defaultdict(set)
    for path, document in documents.items():
        for target in document.outlinks:
            if target in documents:
                inbound[target].add(path)

    result = {}
    for path, document in documents.items():
        inlinks = sorted(inbound.get(path, ()))
        if inlinks != document.inlinks:
            document = document.model_copy(update={"inlinks": inlinks})
        result[path] = document
    return result


class ConnectionBuilder:
    """Builds and incrementally updates the connection graph."""

    def __init__(self, config: IndexingConfig):
        self.config = config

    def build_all(
        self,
        documents: Mapping[str, Document],
        embeddings: Mapping[str, EmbeddingRecord],
    ) -> Tuple[Dict[str, Document], ConnectionMap]:
        """
        Rebuilds outlinks, inlinks and all connections from scratch.

        Returns:
            The updated notes and the connection map keyed by source path.
        """
        resolver = ReferenceResolver(documents.keys())
        docs = {
            path: self._relinked(document, resolver)
            for path, document in documents.items()
        }
        docs = with_inlinks(docs)

        tag_index = self._tag_index(docs)
        matrix = self._matrix(embeddings)
        connections: ConnectionMap = {}
        for path in docs:
            edges = self._link_edges(docs[path], docs)
            edges += self._tag_edges(docs[path], docs, tag_index)
            edges += self._semantic_edges(path, matrix)
            connections[path] = _ordered(edges)

        logger.info(
            f"Built connection graph: {sum(len(e) for e in connections.values())} "
            f"edges across {len(docs)} notes"
        )
        return docs, connections

    def update(
        self,
        documents: Mapping[str, Document],
        embeddings: Mapping[str, EmbeddingRecord],
        previous: Mapping[str, Tuple[Connection, ...]],
        touched: Set[str],
        removed: Set[str],
    ) -> Tuple[Dict[str, Document], ConnectionMap]:
        """
        Recomputes the graph after some notes changed.

        Only edges leaving a touched note, edges pointing at a touched or
        removed note, link edges of notes whose references name one of them,
        and semantic edges of their close neighbours are recomputed. Every
        other edge is carried over.

        Args:
            documents: All notes after the change, touched ones included.
            embeddings: All embedding records after the change.
            previous: The connection map before the change.
            touched: Paths of notes that were added or edited.
            removed: Paths of notes that no longer exist.

        Returns:
            The updated notes and the new connection map.
        """
        changed = touched | removed
        stale_keys: Set[str] = set()
        for path in changed:
            stale_keys |= path_keys(path)

        resolver = ReferenceResolver(documents.keys())
        docs = dict(documents)
        relinked = {
            path
            for path, document in docs.items()
            if path in touched
            or any(reference_key(r) in stale_keys for r in document.references)
        }
        for path in relinked:
            docs[path] = self._relinked(docs[path], resolver)

        matrix = self._matrix(embeddings)
        semantic_rows = self._semantic_neighbours(matrix, previous, touched, removed)

        connections: ConnectionMap = {}
        for source, edges in previous.items():
            if source in changed or source not in docs:
                continue
            connections[source] = tuple(
                edge
                for edge in edges
                if edge.target not in changed
                and not (edge.kind == ConnectionKind.LINK and source in relinked)
                and not (edge.kind == ConnectionKind.SEMANTIC and source in semantic_rows)
            )

        tag_index = self._tag_index(docs)
        for path in touched:
            if path not in docs:
                continue
            edges = self._link_edges(docs[path], docs)
            edges += self._tag_edges(docs[path], docs, tag_index)
            edges += self._semantic_edges(path, matrix)
            connections[path] = _ordered(edges)

        additions: Dict[str, List[Connection]] = defaultdict(list)
        for path in relinked - touched:
            additions[path] += self._link_edges(docs[path], docs)
        for path in touched:
            if path not in docs:
                continue
            for other in self._tag_neighbours(docs[path], tag_index):
                if other in touched:
                    continue
                strength = tag_strength(docs[other].tags, docs[path].tags)
                additions[other].append(
                    Connection(
                        source=other, target=path, kind=ConnectionKind.TAG, strength=strength
                    )
                )
        for path in semantic_rows - touched:
            if path in docs:
                additions[path] += self._semantic_edges(path, matrix)
        for path, extra in additions.items():
            connections[path] = _ordered(list(connections.get(path, ())) + extra)

        docs = with_inlinks(docs)
        logger.debug(
            f"Updated connections for {len(touched)} touched, {len(removed)} removed, "
            f"{len(relinked - touched)} relinked and "
            f"{len(semantic_rows - touched)} semantic neighbour notes"
        )
        return docs, connections

    def _relinked(self, document: Document, resolver: ReferenceResolver) -> Document:
        outlinks = resolver.resolve_all(document.references)
        if outlinks == document.outlinks:
            return document
        return document.model_copy(update={"outlinks": outlinks})

    def _link_edges(
        self, document: Document, documents: Mapping[str, Document]
    ) -> List[Connection]:
        return [
            Connection(
                source=document.path, target=target, kind=ConnectionKind.LINK, strength=1.0
            )
            for target in document.outlinks
            if target in documents and target != document.path
        ]

    def _tag_index(self, documents: Mapping[str, Document]) -> Dict[str, Set[str]]:
        index: Dict[str, Set[str]] = defaultdict(set)
        for path, document in documents.items():
            for tag in document.tags:
                index[tag.lower()].add(path)
        return index

    def _tag_neighbours(
        self, document: Document, tag_index: Mapping[str, Set[str]]
    ) -> Set[str]:
        neighbours: Set[str] = set()
        for tag in document.tags:
            neighbours |= tag_index.get(tag.lower(), set())
        neighbours.discard(document.path)
        return neighbours

    def _tag_edges(
        self,
        document: Document,
        documents: Mapping[str, Document],
        tag_index: Mapping[str, Set[str]],
    ) -> List[Connection]:
        return [
            Connection(
                source=document.path,
                target=other,
                kind=ConnectionKind.TAG,
                strength=tag_strength(document.tags, documents[other].tags),
            )
            for other in sorted(self._tag_neighbours(document, tag_index))
        ]

    def _matrix(self, embeddings: Mapping[str, EmbeddingRecord]) -> Optional[VectorMatrix]:
        if not self.config.semantic_connections or not embeddings:
            return None
        matrix = VectorMatrix.from_records(embeddings.values())
        return matrix if len(matrix) else None

    def _semantic_edges(
        self, path: str, matrix: Optional[VectorMatrix]
    ) -> List[Connection]:
        if matrix is None or path not in matrix:
            return []
        matches = matrix.top_matches(
            matrix.scores_for(path),
            self.config.semantic_max_per_document,
            self.config.semantic_threshold,
            exclude=path,
        )
        return [
            Connection(
                source=path, target=target, kind=ConnectionKind.SEMANTIC, strength=score
            )
            for target, score in matches
        ]

    def _semantic_neighbours(
        self,
        matrix: Optional[VectorMatrix],
        previous: Mapping[str, Tuple[Connection, ...]],
        touched: Set[str],
        removed: Set[str],
    ) -> Set[str]:
        """Notes whose semantic top-k may have changed."""
        if matrix is None:
            return set()
        changed = touched | removed
        rows: Set[str] = set()
        for source, edges in previous.items():
            if any(e.kind == ConnectionKind.SEMANTIC and e.target in changed for e in edges):
                rows.add(source)
        for path in touched:
            if path not in matrix:
                continue
            scores = matrix.scores_for(path)
            for i, score in enumerate(scores):
                if score >= self.config.semantic_threshold:
                    rows.add(matrix.paths[i])
        return rows - removed


def _ordered(edges: List[Connection]) -> Tuple[Connection, ...]:
    """Deduplicates by (target, kind) and sorts for stable output."""
    unique: Dict[Tuple[str, ConnectionKind], Connection] = {}
    for edge in edges:
        unique.setdefault((edge.target, edge.kind), edge)
    return tuple(
        sorted(unique.values(), key=lambda e: (e.kind.value, -e.strength, e.target))
    )
