"""
The document index: ingestion, change detection, embeddings and search.

Responsibilities:
- Full builds with a re-entrancy guard, committed batch by batch.
- Incremental reconciles against the file store: a cheap stat diff first,
  then a content fingerprint check before anything is re-embedded.
- Vector search with a transparent fallback to substring search.
- Snapshot save and restore through the persistence port.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from components.document_processing import FileInfo, FileStore, NoteParser
from components.embedding_system import (
    EmbeddingError,
    EmbeddingService,
    EmbeddingUnavailableError,
)
from components.persistence import SnapshotCorruptError, SnapshotError, SnapshotStore
from pydantic import ValidationError
from shared.state_tracker import (
    compare_states,
    fingerprint_content,
    manifest_root_hash,
    stat_signature,
)
from vault_agent.config import IndexingConfig, SearchConfig, is_eligible

from .connections import ConnectionBuilder
from .models import (
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
from .vector_math import VectorMatrix

logger = logging.getLogger(__name__)

SNAPSHOT_CONTENT_CHARS = 1000


class DocumentIndex:
    """Owns the indexed notes and answers the search primitives."""

    def __init__(
        self,
        file_store: FileStore,
        embedding_service: EmbeddingService,
        indexing_config: Optional[IndexingConfig] = None,
        search_config: Optional[SearchConfig] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        store: Optional[IndexStore] = None,
    ):
        """
        Initializes the index.

        Args:
            file_store: Source of truth for which notes exist.
            embedding_service: Embedding port; may be unavailable.
            indexing_config: Eligibility, batching and connection settings.
            search_config: Defaults for substring search.
            snapshot_store: Optional persistence port for snapshots.
            store: The store object to own; a fresh one by default.
        """
        self.file_store = file_store
        self.embedding_service = embedding_service
        self.config = indexing_config or IndexingConfig()
        self.search_config = search_config or SearchConfig()
        self.snapshot_store = snapshot_store
        self.store = store or IndexStore()
        self.parser = NoteParser()
        self.connections = ConnectionBuilder(self.config)

        self._write_lock = asyncio.Lock()
        self._building = False
        self._reconcile_running = False
        self._reconcile_pending = False

    @property
    def is_indexing(self) -> bool:
        return self._building or self._reconcile_running

    def view(self) -> StoreView:
        return self.store.view()

    # ------------------------------------------------------------------
    # Building and reconciling
    # ------------------------------------------------------------------

    async def build_full(self) -> Optional[IndexReport]:
        """
        Clears the index and re-ingests every eligible note.

        A call made while another build is running returns None without doing
        any work. Notes are committed batch by batch; if the task is cancelled
        between batches, the notes committed so far stay in a valid index with
        their connections rebuilt.

        Returns:
            An IndexReport, or None when a build was already running.
        """
        if self._building:
            logger.info("Full build already in progress; ignoring request")
            return None
        self._building = True
        try:
            async with self._write_lock:
                return await self._build_full_locked()
        finally:
            self._building = False

    async def _build_full_locked(self) -> IndexReport:
        started = time.monotonic()
        report = IndexReport(mode="full")
        files = await asyncio.to_thread(self._eligible_files)
        logger.info(f"Starting full index build over {len(files)} notes")
        self.store.clear()

        try:
            for start in range(0, len(files), self.config.batch_size):
                batch = files[start : start + self.config.batch_size]
                documents = await asyncio.to_thread(self._load_documents, batch, report)
                records, failures = await self._embed_documents(documents)
                report.added.extend(d.path for d in documents)
                report.embedded += len(records)
                report.embedding_failures += failures
                self.store.apply(
                    ChangeSet(
                        upsert_documents={d.path: d for d in documents},
                        upsert_embeddings=records,
                    )
                )
                logger.debug(
                    f"Committed batch {start // self.config.batch_size + 1}: "
                    f"{len(documents)} notes, {len(records)} embeddings"
                )
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            report.cancelled = True
            logger.warning(
                f"Full build cancelled after {len(report.added)} notes; "
                f"keeping the partial index"
            )
            self._rebuild_connections()
            raise

        await asyncio.to_thread(self._rebuild_connections)
        report.duration_seconds = time.monotonic() - started
        await asyncio.to_thread(self._persist)
        logger.info(
            f"Full build finished: {len(report.added)} notes, {report.embedded} "
            f"embeddings, {len(report.skipped)} skipped in "
            f"{report.duration_seconds:.2f}s"
        )
        return report

    async def reconcile(self) -> Optional[IndexReport]:
        """
        Brings the index in line with the file store.

        Only one reconcile runs at a time. A call arriving while one is in
        flight marks a single follow-up pass and returns None immediately;
        any number of such calls collapse into that one pass.

        Returns:
            The report of the last pass run by this call, or None if the
            call was coalesced into a running reconcile.
        """
        if self._reconcile_running:
            self._reconcile_pending = True
            logger.debug("Reconcile already running; coalescing trigger")
            return None

        self._reconcile_running = True
        try:
            report = await self._reconcile_once()
            while self._reconcile_pending:
                self._reconcile_pending = False
                logger.debug("Running coalesced follow-up reconcile")
                report = await self._reconcile_once()
            return report
        finally:
            self._reconcile_pending = False
            self._reconcile_running = False

    async def _reconcile_once(self) -> IndexReport:
        async with self._write_lock:
            started = time.monotonic()
            report = IndexReport(mode="incremental")
            view = self.store.view()

            files = {
                info.path: info
                for info in await asyncio.to_thread(self._eligible_files)
            }
            stored_manifest = {
                path: stat_signature(doc.modified.timestamp(), doc.size)
                for path, doc in view.documents.items()
            }
            live_manifest = {
                path: stat_signature(info.modified.timestamp(), info.size)
                for path, info in files.items()
            }
            diff = compare_states(stored_manifest, live_manifest)
            report.unchanged = len(files) - len(diff["added"]) - len(diff["updated"])

            removed: Set[str] = set(diff["removed"])
            upserts, to_embed = await asyncio.to_thread(
                self._scan_changes,
                view,
                files,
                diff["added"] + diff["updated"],
                removed,
                report,
            )

            records: Dict[str, EmbeddingRecord] = {}
            failures = 0
            for start in range(0, len(to_embed), self.config.batch_size):
                batch_records, batch_failures = await self._embed_documents(
                    to_embed[start : start + self.config.batch_size]
                )
                records.update(batch_records)
                failures += batch_failures
            report.embedded = len(records)
            report.embedding_failures = failures

            touched = {d.path for d in to_embed}
            # Timestamp-only refreshes keep their vector but update its metadata
            for path, document in upserts.items():
                if path not in touched and path in view.embeddings:
                    records[path] = view.embeddings[path].model_copy(
                        update={"modified": document.modified}
                    )

            report.removed = sorted(removed)
            if upserts or removed:
                documents = {
                    path: doc
                    for path, doc in view.documents.items()
                    if path not in removed
                }
                documents.update(upserts)
                embeddings = {
                    path: rec
                    for path, rec in view.embeddings.items()
                    if path not in removed and path not in touched
                }
                embeddings.update(records)

                if touched or removed:
                    documents, connections = await asyncio.to_thread(
                        self.connections.update,
                        documents,
                        embeddings,
                        view.connections,
                        touched,
                        removed,
                    )
                else:
                    connections = dict(view.connections)

                self.store.apply(
                    ChangeSet(
                        upsert_documents=documents,
                        upsert_embeddings=records,
                        drop_embeddings=[p for p in touched if p not in records],
                        remove=sorted(removed),
                        connections=connections,
                    )
                )
                await asyncio.to_thread(self._persist)

            report.duration_seconds = time.monotonic() - started
            if report.changed:
                logger.info(
                    f"Reconcile: {len(report.added)} added, {len(report.updated)} "
                    f"updated, {len(report.removed)} removed, {report.embedded} embedded"
                )
            else:
                logger.debug("Reconcile found no changes")
            return report

    def _scan_changes(
        self,
        view: StoreView,
        files: Dict[str, FileInfo],
        paths: Sequence[str],
        removed: Set[str],
        report: IndexReport,
    ) -> Tuple[Dict[str, Document], List[Document]]:
        """
        Reads and fingerprints new or stat-changed notes.

        A note whose fingerprint is unchanged only gets its stat metadata
        refreshed. Notes that became too short are added to ``removed``.

        Returns:
            The documents to upsert, and the subset that needs embedding.
        """
        upserts: Dict[str, Document] = {}
        to_embed: List[Document] = []
        for path in paths:
            info = files[path]
            existing = view.documents.get(path)
            try:
                raw = self.file_store.read_document(path)
            except OSError as e:
                logger.warning(f"Could not read {path}: {e}")
                report.skipped.append(path)
                continue

            fingerprint = fingerprint_content(raw)
            if existing is not None and existing.fingerprint == fingerprint:
                logger.debug(f"{path} touched without content change; not re-embedding")
                upserts[path] = existing.model_copy(
                    update={"modified": info.modified, "size": info.size}
                )
                report.unchanged += 1
                continue

            document = self._make_document(info, raw, fingerprint)
            if document is None:
                report.skipped.append(path)
                if existing is not None:
                    removed.add(path)
                continue
            upserts[path] = document
            to_embed.append(document)
            (report.updated if existing else report.added).append(path)
        return upserts, to_embed

    def _eligible_files(self) -> List[FileInfo]:
        files = [
            info
            for info in self.file_store.list_documents()
            if is_eligible(info.path, self.config)
        ]
        if len(files) > self.config.max_documents:
            logger.warning(
                f"{len(files)} eligible notes exceed max_documents="
                f"{self.config.max_documents}; indexing the first "
                f"{self.config.max_documents}"
            )
            files = files[: self.config.max_documents]
        return files

    def _load_documents(
        self, batch: Sequence[FileInfo], report: IndexReport
    ) -> List[Document]:
        documents = []
        for info in batch:
            try:
                raw = self.file_store.read_document(info.path)
            except OSError as e:
                logger.warning(f"Could not read {info.path}: {e}")
                report.skipped.append(info.path)
                continue
            document = self._make_document(info, raw, fingerprint_content(raw))
            if document is None:
                report.skipped.append(info.path)
            else:
                documents.append(document)
        return documents

    def _make_document(
        self, info: FileInfo, raw: bytes, fingerprint: str
    ) -> Optional[Document]:
        """Parses raw bytes into a Document, or None if it is too short."""
        raw_text = raw.decode("utf-8", errors="replace")
        parsed = self.parser.parse(raw_text)
        if len(parsed.content) < self.config.min_content_length:
            logger.debug(
                f"Excluding {info.path}: {len(parsed.content)} chars of content "
                f"< {self.config.min_content_length}"
            )
            return None
        title = info.path.rsplit("/", 1)[-1]
        if "." in title:
            title = title.rsplit(".", 1)[0]
        return Document(
            path=info.path,
            title=title,
            raw_text=raw_text,
            content=parsed.content,
            references=parsed.references,
            outlinks=list(parsed.references),
            tags=parsed.tags,
            created=info.created,
            modified=info.modified,
            size=info.size,
            fingerprint=fingerprint,
        )

    async def _embed_documents(
        self, documents: Sequence[Document]
    ) -> Tuple[Dict[str, EmbeddingRecord], int]:
        """
        Embeds a batch of notes.

        The batch goes to the backend in one call. If that call fails, each
        note is retried on its own, concurrently, so that one bad note only
        costs its own embedding record.

        Returns:
            The new records by path, and the number of notes that failed.
        """
        if not documents:
            return {}, 0
        if not await asyncio.to_thread(self.embedding_service.is_available):
            return {}, 0

        texts = [d.content for d in documents]
        try:
            vectors: List[Optional[List[float]]] = list(
                await asyncio.to_thread(self.embedding_service.embed_batch, texts)
            )
        except EmbeddingUnavailableError as e:
            logger.warning(f"Embedding backend unavailable: {e}")
            return {}, 0
        except EmbeddingError as e:
            logger.warning(f"Batch embedding failed ({e}); embedding notes one by one")
            results = await asyncio.gather(
                *(asyncio.to_thread(self.embedding_service.embed, t) for t in texts),
                return_exceptions=True,
            )
            vectors = []
            for document, result in zip(documents, results):
                if isinstance(result, Exception):
                    logger.warning(f"Failed to embed {document.path}: {result}")
                    vectors.append(None)
                else:
                    vectors.append(result)

        records: Dict[str, EmbeddingRecord] = {}
        for document, vector in zip(documents, vectors):
            if vector is None:
                continue
            records[document.path] = EmbeddingRecord(
                path=document.path,
                vector=vector,
                content=document.content[:SNAPSHOT_CONTENT_CHARS],
                title=document.title,
                tags=document.tags,
                links=document.outlinks,
                created=document.created,
                modified=document.modified,
            )
        return records, len(documents) - len(records)

    def _rebuild_connections(self) -> None:
        view = self.store.view()
        documents, connections = self.connections.build_all(
            view.documents, view.embeddings
        )
        self.store.apply(ChangeSet(upsert_documents=documents, connections=connections))

    # ------------------------------------------------------------------
    # Search primitives
    # ------------------------------------------------------------------

    async def vector_search(
        self, query: str, top_k: int = 5, threshold: float = 0.3
    ) -> SearchOutcome:
        """
        Ranks notes by cosine similarity to the query.

        Returns at most ``top_k`` hits, each with similarity >= ``threshold``.
        Notes that have no embedding record are matched by substring instead,
        reported separately in ``fallback_hits`` so the two never mix. When
        the embedding backend is unavailable or fails, the whole search is a
        substring search.

        Returns:
            A SearchOutcome whose ``strategy`` names the primitive that ran.
        """
        view = self.store.view()
        if top_k <= 0:
            return SearchOutcome(strategy="semantic", hits=[])

        if view.embeddings and await asyncio.to_thread(
            self.embedding_service.is_available
        ):
            try:
                query_vector = await asyncio.to_thread(
                    self.embedding_service.embed, query
                )
            except EmbeddingError as e:
                logger.warning(f"Query embedding failed, using substring search: {e}")
            else:
                matrix = VectorMatrix.from_records(view.embeddings.values())
                matches = matrix.top_matches(matrix.scores(query_vector), top_k, threshold)
                hits = [
                    SearchHit(document=view.documents[path], similarity=score)
                    for path, score in matches
                    if path in view.documents
                ]
                fallback: List[SearchHit] = []
                missing = [p for p in view.documents if p not in matrix]
                if missing and len(hits) < top_k:
                    fallback = self.substring_search(
                        query, top_k - len(hits), paths=missing, view=view
                    )
                return SearchOutcome(
                    strategy="semantic", hits=hits, fallback_hits=fallback
                )

        return SearchOutcome(
            strategy="substring",
            hits=self.substring_search(query, top_k, view=view),
        )

    def substring_search(
        self,
        query: str,
        max_results: int = 10,
        case_sensitive: bool = False,
        paths: Optional[Iterable[str]] = None,
        view: Optional[StoreView] = None,
    ) -> List[SearchHit]:
        """
        Finds notes whose plain text contains the query.

        Args:
            query: The literal text to find.
            max_results: Maximum number of notes returned.
            case_sensitive: Match case exactly when True.
            paths: Restrict the search to these notes.
            view: Store view to search; a fresh one by default.

        Returns:
            Hits ranked by match count then recency, each with up to
            ``max_matches_per_document`` context windows.
        """
        needle = query if case_sensitive else query.lower()
        if not needle.strip() or max_results <= 0:
            return []
        view = view or self.store.view()
        window = self.search_config.context_chars
        per_document = self.search_config.max_matches_per_document

        candidates = (
            [view.documents[p] for p in paths if p in view.documents]
            if paths is not None
            else list(view.documents.values())
        )
        hits: List[SearchHit] = []
        for document in candidates:
            haystack = document.content if case_sensitive else document.content.lower()
            contexts: List[str] = []
            position = haystack.find(needle)
            while position != -1 and len(contexts) < per_document:
                start = max(0, position - window)
                end = min(len(document.content), position + len(needle) + window)
                snippet = document.content[start:end].strip()
                prefix = "..." if start > 0 else ""
                suffix = "..." if end < len(document.content) else ""
                contexts.append(f"{prefix}{snippet}{suffix}")
                position = haystack.find(needle, position + 1)
            if contexts:
                hits.append(
                    SearchHit(
                        document=document, match_count=len(contexts), contexts=contexts
                    )
                )

        hits.sort(
            key=lambda h: (
                -h.match_count,
                -h.document.modified.timestamp(),
                h.document.path,
            )
        )
        return hits[:max_results]

    # ------------------------------------------------------------------
    # Persistence and stats
    # ------------------------------------------------------------------

    async def load(self) -> IndexReport:
        """
        Restores the index from its snapshot, then catches up with the store.

        A missing snapshot triggers a full build. A corrupt one is logged,
        the index starts empty and a full build is forced.
        """
        if self.snapshot_store is None:
            return await self.build_full() or IndexReport(mode="full")
        try:
            blob = await asyncio.to_thread(self.snapshot_store.load)
            if blob is None:
                return await self.build_full() or IndexReport(mode="full")
            await asyncio.to_thread(self.restore_snapshot, blob)
        except SnapshotCorruptError as e:
            logger.error(f"Index snapshot is corrupt, rebuilding from scratch: {e}")
            self.store.clear()
            return await self.build_full() or IndexReport(mode="full")
        except SnapshotError as e:
            logger.error(f"Could not read index snapshot, rebuilding: {e}")
            self.store.clear()
            return await self.build_full() or IndexReport(mode="full")

        logger.info(
            f"Restored {len(self.store.view().documents)} notes from snapshot"
        )
        return await self.reconcile() or IndexReport(mode="incremental")

    def snapshot(self) -> bytes:
        """Serializes the whole index into an opaque blob."""
        view = self.store.view()
        documents = sorted(view.documents.values(), key=lambda d: d.path)
        snapshot = IndexSnapshot(
            saved_at=datetime.now(timezone.utc),
            root_hash=manifest_root_hash({d.path: d.fingerprint for d in documents}),
            documents=documents,
            embeddings=sorted(view.embeddings.values(), key=lambda e: e.path),
            connections=view.all_connections(),
        )
        return snapshot.model_dump_json().encode("utf-8")

    def restore_snapshot(self, blob: bytes) -> None:
        """
        Replaces the index contents with a decoded snapshot.

        Raises:
            SnapshotCorruptError: If the blob does not decode, validate, or
                match its recorded Merkle root.
        """
        try:
            snapshot = IndexSnapshot.model_validate_json(blob)
        except (ValidationError, ValueError) as e:
            raise SnapshotCorruptError(f"Snapshot does not decode: {e}") from e

        root = manifest_root_hash({d.path: d.fingerprint for d in snapshot.documents})
        if root != snapshot.root_hash:
            raise SnapshotCorruptError(
                f"Snapshot root hash {snapshot.root_hash} does not match contents {root}"
            )
        self.store.replace_all(
            snapshot.documents, snapshot.embeddings, snapshot.connections
        )

    def _persist(self) -> None:
        if self.snapshot_store is None:
            return
        try:
            self.snapshot_store.save(self.snapshot())
        except SnapshotError as e:
            logger.error(f"Failed to persist index snapshot: {e}")

    def stats(self) -> IndexStats:
        view = self.store.view()
        by_kind = {kind.value: 0 for kind in ConnectionKind}
        for connection in view.all_connections():
            by_kind[connection.kind.value] += 1
        return IndexStats(
            documents=len(view.documents),
            embeddings=len(view.embeddings),
            connections=sum(by_kind.values()),
            connections_by_kind=by_kind,
            is_indexing=self.is_indexing,
            last_updated=view.last_updated,
            embeddings_available=self.embedding_service.unavailable_reason is None,
        )
