"""Tests for the document index: builds, reconciles, search and snapshots."""

import asyncio
import json
import threading

import pytest
from components.document_index import ConnectionKind, DocumentIndex
from components.embedding_system import EmbeddingService
from components.persistence import InMemorySnapshotStore, SnapshotCorruptError
from shared.testing import HashingEmbeddingModel, InMemoryFileStore
from vault_agent.config import EmbeddingModelConfig, IndexingConfig, SearchConfig

NOTES = {
    "Projects/Car.md": (
        "---\ntags: [vehicles]\n---\n# Car\n\n"
        "Bought the blue hatchback from the dealer downtown. "
        "The VIN is 1HGCM82633A004352. See [[Insurance]] for the policy."
    ),
    "Insurance.md": (
        "# Insurance\n\nPolicy number and contacts for the car insurance. "
        "Renewal happens every March. #finance #vehicles"
    ),
    "Journal/Valentine.md": (
        "# Valentine\n\nDinner with Sam tonight. I love how the evening went. "
        "[[Travel Plans]] #personal"
    ),
    "Travel Plans.md": (
        "# Travel Plans\n\nLisbon in spring, then a train to Porto. "
        "Book the flights and a small hotel. #personal"
    ),
}


def make_index(store, model=None, snapshots=None, **indexing):
    settings = {"min_content_length": 20, "batch_size": 2, "semantic_threshold": 0.5}
    settings.update(indexing)
    service = EmbeddingService(
        EmbeddingModelConfig(), model=model or HashingEmbeddingModel()
    )
    return DocumentIndex(
        file_store=store,
        embedding_service=service,
        indexing_config=IndexingConfig(**settings),
        search_config=SearchConfig(context_chars=20),
        snapshot_store=snapshots if snapshots is not None else InMemorySnapshotStore(),
    )


def edge_set(index):
    return {
        (c.source, c.target, c.kind.value, round(c.strength, 4))
        for c in index.view().all_connections()
    }


def assert_inlinks_consistent(view):
    for path, document in view.documents.items():
        for target in document.outlinks:
            if target in view.documents:
                assert path in view.documents[target].inlinks
        for source in document.inlinks:
            assert path in view.documents[source].outlinks


def assert_no_dangling_edges(view):
    for connection in view.all_connections():
        assert connection.source in view.documents
        assert connection.target in view.documents
        assert connection.source != connection.target


@pytest.fixture
def store():
    return InMemoryFileStore(NOTES)


@pytest.fixture
def model():
    return HashingEmbeddingModel()


@pytest.fixture
def index(store, model):
    return make_index(store, model)


class TestBuild:
    @pytest.mark.asyncio
    async def test_full_build_indexes_every_note(self, index, model):
        report = await index.build_full()

        view = index.view()
        assert sorted(view.documents) == sorted(NOTES)
        assert sorted(report.added) == sorted(NOTES)
        assert report.embedded == 4
        assert len(view.embeddings) == 4
        assert len(model.encoded) == 4

    @pytest.mark.asyncio
    async def test_outlinks_resolve_and_inlinks_mirror_them(self, index):
        await index.build_full()
        view = index.view()

        assert view.documents["Projects/Car.md"].outlinks == ["Insurance.md"]
        assert view.documents["Insurance.md"].inlinks == ["Projects/Car.md"]
        assert view.documents["Travel Plans.md"].inlinks == ["Journal/Valentine.md"]
        assert_inlinks_consistent(view)
        assert_no_dangling_edges(view)

    @pytest.mark.asyncio
    async def test_link_and_tag_connections(self, index):
        await index.build_full()
        view = index.view()

        links = view.outgoing("Projects/Car.md", ConnectionKind.LINK)
        assert [(c.target, c.strength) for c in links] == [("Insurance.md", 1.0)]

        tags = {c.target: c.strength for c in view.outgoing("Projects/Car.md", ConnectionKind.TAG)}
        # {vehicles} vs {finance, vehicles}: one shared of max two
        assert tags == {"Insurance.md": 0.5}
        personal = view.outgoing("Journal/Valentine.md", ConnectionKind.TAG)
        assert [(c.target, c.strength) for c in personal] == [("Travel Plans.md", 1.0)]

    @pytest.mark.asyncio
    async def test_semantic_edges_respect_threshold(self, store, model):
        store.write("Travel Copy.md", NOTES["Travel Plans.md"])
        index = make_index(store, model, semantic_threshold=0.9)
        await index.build_full()

        semantic = index.view().outgoing("Travel Plans.md", ConnectionKind.SEMANTIC)
        assert [c.target for c in semantic] == ["Travel Copy.md"]
        assert semantic[0].strength == pytest.approx(1.0, abs=1e-4)
        for connection in index.view().all_connections():
            if connection.kind == ConnectionKind.SEMANTIC:
                assert connection.strength >= 0.9

    @pytest.mark.asyncio
    async def test_semantic_edges_can_be_disabled(self, store, model):
        store.write("Travel Copy.md", NOTES["Travel Plans.md"])
        index = make_index(store, model, semantic_connections=False)
        await index.build_full()
        kinds = {c.kind for c in index.view().all_connections()}
        assert ConnectionKind.SEMANTIC not in kinds

    @pytest.mark.asyncio
    async def test_short_notes_are_excluded(self, store, index):
        store.write("Tiny.md", "# Hi\n\nok")
        report = await index.build_full()
        assert "Tiny.md" not in index.view().documents
        assert "Tiny.md" in report.skipped

    @pytest.mark.asyncio
    async def test_ineligible_files_are_ignored(self, store, model):
        store.write("image.png", "binary-ish content that is long enough to count")
        store.write("templates/Daily.md", "A template note that is long enough to count.")
        index = make_index(store, model, exclude_folders=["templates"])
        await index.build_full()
        assert sorted(index.view().documents) == sorted(NOTES)

    @pytest.mark.asyncio
    async def test_one_embedding_failure_keeps_the_note(self, store):
        store.write("Broken.md", "This note contains FAILME and plenty of other words.")
        index = make_index(store, HashingEmbeddingModel(fail_on=["FAILME"]))
        report = await index.build_full()

        view = index.view()
        assert "Broken.md" in view.documents
        assert "Broken.md" not in view.embeddings
        assert len(view.embeddings) == 4
        assert report.embedding_failures == 1

    @pytest.mark.asyncio
    async def test_concurrent_full_build_is_a_no_op(self, index):
        first, second = await asyncio.gather(index.build_full(), index.build_full())
        assert first is not None
        assert second is None
        assert len(index.view().documents) == 4

    @pytest.mark.asyncio
    async def test_cancelled_build_keeps_committed_batches(self, store):
        release = threading.Event()

        class GatedModel(HashingEmbeddingModel):
            def encode(self, texts):
                if self.batches >= 1:
                    release.wait(timeout=5)
                return super().encode(texts)

        index = make_index(store, GatedModel(), batch_size=1)
        task = asyncio.create_task(index.build_full())
        try:
            async def first_commit():
                while not index.view().documents:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(first_commit(), timeout=5)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            release.set()

        view = index.view()
        assert 1 <= len(view.documents) < 4
        assert not index.is_indexing
        assert_inlinks_consistent(view)
        assert_no_dangling_edges(view)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_unchanged_vault_embeds_nothing(self, index, model):
        await index.build_full()
        encoded = len(model.encoded)

        first = await index.reconcile()
        second = await index.reconcile()

        assert not first.changed and not second.changed
        assert first.embedded == second.embedded == 0
        assert len(model.encoded) == encoded

    @pytest.mark.asyncio
    async def test_touch_without_edit_is_not_reembedded(self, store, index, model):
        await index.build_full()
        encoded = len(model.encoded)
        store.touch("Insurance.md")

        report = await index.reconcile()

        assert report.updated == []
        assert report.embedded == 0
        assert len(model.encoded) == encoded
        view = index.view()
        assert view.documents["Insurance.md"].modified == store.info["Insurance.md"].modified
        assert view.embeddings["Insurance.md"].modified == store.info["Insurance.md"].modified
        # The refreshed timestamp is remembered
        assert (await index.reconcile()).unchanged == 4

    @pytest.mark.asyncio
    async def test_edit_reembeds_only_the_edited_note(self, store, index, model):
        await index.build_full()
        encoded = len(model.encoded)
        store.write("Insurance.md", NOTES["Insurance.md"] + " Premium went up this year.")

        report = await index.reconcile()

        assert report.updated == ["Insurance.md"]
        assert report.embedded == 1
        assert model.encoded[encoded:] == [index.view().documents["Insurance.md"].content]

    @pytest.mark.asyncio
    async def test_added_note_is_linked(self, store, index):
        await index.build_full()
        store.write("Porto.md", "Porto notes: river walk, port tasting. Back to [[Travel Plans]].")

        report = await index.reconcile()

        assert report.added == ["Porto.md"]
        view = index.view()
        assert view.documents["Travel Plans.md"].inlinks == [
            "Journal/Valentine.md",
            "Porto.md",
        ]
        assert_inlinks_consistent(view)

    @pytest.mark.asyncio
    async def test_removed_note_leaves_no_dangling_edges(self, store, index):
        await index.build_full()
        store.delete("Insurance.md")

        report = await index.reconcile()

        assert report.removed == ["Insurance.md"]
        view = index.view()
        assert "Insurance.md" not in view.documents
        assert "Insurance.md" not in view.embeddings
        assert_no_dangling_edges(view)
        # The reference survives as an unresolved outlink
        assert view.documents["Projects/Car.md"].outlinks == ["Insurance"]

    @pytest.mark.asyncio
    async def test_rename_relinks_referrers(self, store, index):
        await index.build_full()
        store.rename("Travel Plans.md", "Trips/Travel Plans.md")

        report = await index.reconcile()

        assert report.added == ["Trips/Travel Plans.md"]
        assert report.removed == ["Travel Plans.md"]
        view = index.view()
        assert view.documents["Journal/Valentine.md"].outlinks == ["Trips/Travel Plans.md"]
        assert view.documents["Trips/Travel Plans.md"].inlinks == ["Journal/Valentine.md"]
        assert_no_dangling_edges(view)

    @pytest.mark.asyncio
    async def test_note_shrunk_below_minimum_is_removed(self, store, index):
        await index.build_full()
        store.write("Insurance.md", "# Insurance\n\ntbd")

        report = await index.reconcile()

        assert "Insurance.md" in report.removed
        assert "Insurance.md" not in index.view().documents
        assert_no_dangling_edges(index.view())

    @pytest.mark.asyncio
    async def test_incremental_graph_matches_full_rebuild(self, store, index):
        await index.build_full()
        store.write("Travel Copy.md", NOTES["Travel Plans.md"] + " #vehicles")
        store.write("Insurance.md", "Insurance moved to [[Travel Plans]] budget. #personal")
        store.delete("Projects/Car.md")
        await index.reconcile()

        fresh = make_index(store)
        await fresh.build_full()

        assert edge_set(index) == edge_set(fresh)
        for path, document in fresh.view().documents.items():
            current = index.view().documents[path]
            assert current.outlinks == document.outlinks
            assert current.inlinks == document.inlinks

    @pytest.mark.asyncio
    async def test_unreadable_note_is_skipped(self, store, index):
        await index.build_full()
        store.write("Secret.md", "A perfectly ordinary note with enough content.")
        store.unreadable.add("Secret.md")

        report = await index.reconcile()

        assert report.skipped == ["Secret.md"]
        assert "Secret.md" not in index.view().documents

    @pytest.mark.asyncio
    async def test_concurrent_reconciles_coalesce(self, index):
        await index.build_full()
        original = index._reconcile_once
        runs = []

        async def slow_once():
            runs.append(1)
            await asyncio.sleep(0.01)
            return await original()

        index._reconcile_once = slow_once
        results = await asyncio.gather(
            index.reconcile(), index.reconcile(), index.reconcile()
        )

        assert results[0] is not None
        assert results[1] is None and results[2] is None
        assert len(runs) == 2

    @pytest.mark.asyncio
    async def test_failed_reconcile_drops_its_pending_follow_up(self, index):
        await index.build_full()
        original = index._reconcile_once
        runs = []

        async def failing_once():
            runs.append(1)
            # A trigger arrives while this pass is running
            assert await index.reconcile() is None
            raise RuntimeError("disk went away")

        index._reconcile_once = failing_once
        with pytest.raises(RuntimeError):
            await index.reconcile()
        assert len(runs) == 1

        async def counting_once():
            runs.append(1)
            return await original()

        index._reconcile_once = counting_once
        assert await index.reconcile() is not None
        assert len(runs) == 2


class ThreadRecordingStore(InMemoryFileStore):
    def __init__(self, notes):
        super().__init__(notes)
        self.threads = set()

    def read_document(self, path):
        self.threads.add(threading.current_thread().name)
        return super().read_document(path)


class ThreadRecordingSnapshots(InMemorySnapshotStore):
    def __init__(self):
        super().__init__()
        self.threads = set()

    def save(self, blob):
        self.threads.add(threading.current_thread().name)
        super().save(blob)


class TestEventLoopIsNotBlocked:
    @pytest.mark.asyncio
    async def test_build_reads_and_persists_off_the_loop_thread(self):
        store = ThreadRecordingStore(NOTES)
        snapshots = ThreadRecordingSnapshots()
        index = make_index(store, snapshots=snapshots)
        loop_thread = threading.current_thread().name

        await index.build_full()

        assert store.threads and loop_thread not in store.threads
        assert snapshots.threads and loop_thread not in snapshots.threads

    @pytest.mark.asyncio
    async def test_reconcile_reads_and_persists_off_the_loop_thread(self):
        store = ThreadRecordingStore(NOTES)
        snapshots = ThreadRecordingSnapshots()
        index = make_index(store, snapshots=snapshots)
        await index.build_full()
        store.threads.clear()
        snapshots.threads.clear()
        loop_thread = threading.current_thread().name

        store.write("Insurance.md", NOTES["Insurance.md"] + " Updated premium.")
        report = await index.reconcile()

        assert report.updated == ["Insurance.md"]
        assert store.threads and loop_thread not in store.threads
        assert snapshots.threads and loop_thread not in snapshots.threads


class TestSearch:
    @pytest.mark.asyncio
    async def test_vector_search_respects_top_k_and_threshold(self, index):
        await index.build_full()
        for top_k, threshold in [(1, 0.0), (3, 0.0), (10, 0.2), (5, 0.99)]:
            outcome = await index.vector_search("car insurance policy", top_k, threshold)
            assert outcome.strategy == "semantic"
            assert len(outcome.hits) <= top_k
            scores = [h.similarity for h in outcome.hits]
            assert all(s is not None and threshold <= s <= 1.0 for s in scores)
            assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_vector_search_finds_the_closest_note(self, index):
        await index.build_full()
        outcome = await index.vector_search("Lisbon spring train Porto", 1, 0.1)
        assert [h.document.path for h in outcome.hits] == ["Travel Plans.md"]

    @pytest.mark.asyncio
    async def test_falls_back_to_substring_without_embeddings(self, store):
        service = EmbeddingService(EmbeddingModelConfig(provider="none"))
        index = DocumentIndex(
            store, service, IndexingConfig(min_content_length=20), SearchConfig()
        )
        await index.build_full()

        assert index.view().embeddings == {}
        outcome = await index.vector_search("hatchback", 5, 0.3)
        assert outcome.strategy == "substring"
        assert [h.document.path for h in outcome.hits] == ["Projects/Car.md"]
        assert outcome.hits[0].similarity is None

    @pytest.mark.asyncio
    async def test_notes_without_embeddings_are_still_searchable(self, store):
        store.write("Broken.md", "FAILME note about a unicorn sighting in the garden.")
        index = make_index(store, HashingEmbeddingModel(fail_on=["FAILME"]))
        await index.build_full()

        outcome = await index.vector_search("unicorn", 5, 0.99)
        assert outcome.strategy == "semantic"
        assert outcome.hits == []
        assert [h.document.path for h in outcome.fallback_hits] == ["Broken.md"]
        assert outcome.fallback_hits[0].similarity is None

    @pytest.mark.asyncio
    async def test_threshold_holds_for_every_hit_with_a_failed_embedding(self, store):
        store.write("Broken.md", "FAILME sardines packed in olive oil for the trip.")
        store.write("Pantry.md", "A tin of sardines and crackers sits on the shelf.")
        index = make_index(store, HashingEmbeddingModel(fail_on=["FAILME"]))
        await index.build_full()
        assert "Broken.md" not in index.view().embeddings

        for threshold in (0.0, 0.3, 0.9):
            outcome = await index.vector_search("sardines", 5, threshold)
            assert outcome.strategy == "semantic"
            for hit in outcome.hits:
                assert hit.similarity is not None
                assert hit.similarity >= threshold
            assert "Broken.md" not in [h.document.path for h in outcome.hits]
            assert len(outcome.hits) + len(outcome.fallback_hits) <= 5

    @pytest.mark.asyncio
    async def test_substring_search_context_and_ranking(self, store, index):
        store.write("March.md", "March plans: March budget, March travel, nothing else.")
        await index.build_full()

        hits = index.substring_search("march", max_results=10)
        assert hits[0].document.path == "March.md"
        assert hits[0].match_count == 3
        assert all("march" in c.lower() for c in hits[0].contexts)
        assert [h.document.path for h in hits[1:]] == ["Insurance.md"]

        long_hit = index.substring_search("Renewal")[0]
        assert long_hit.contexts[0].startswith("...")

    @pytest.mark.asyncio
    async def test_substring_search_case_sensitive(self, index):
        await index.build_full()
        assert index.substring_search("lisbon", case_sensitive=True) == []
        assert len(index.substring_search("Lisbon", case_sensitive=True)) == 1


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, store, index):
        await index.build_full()
        snapshots = index.snapshot_store
        assert snapshots.blob is not None

        restored_model = HashingEmbeddingModel()
        restored = make_index(store, restored_model, snapshots=snapshots)
        report = await restored.load()

        assert report.mode == "incremental"
        assert not report.changed
        assert restored_model.encoded == []
        assert restored.view().documents == index.view().documents
        assert edge_set(restored) == edge_set(index)

    @pytest.mark.asyncio
    async def test_load_without_snapshot_builds(self, store, model):
        index = make_index(store, model)
        report = await index.load()
        assert report.mode == "full"
        assert len(index.view().documents) == 4

    @pytest.mark.asyncio
    async def test_garbage_snapshot_forces_rebuild(self, store, model):
        index = make_index(store, model, snapshots=InMemorySnapshotStore(b"not json"))
        report = await index.load()
        assert report.mode == "full"
        assert len(index.view().documents) == 4

    @pytest.mark.asyncio
    async def test_tampered_snapshot_fails_root_check(self, store, index):
        await index.build_full()
        data = json.loads(index.snapshot())
        data["documents"][0]["fingerprint"] = "0" * 16

        with pytest.raises(SnapshotCorruptError, match="root hash"):
            index.restore_snapshot(json.dumps(data).encode())

        rebuilt = make_index(
            store, snapshots=InMemorySnapshotStore(json.dumps(data).encode())
        )
        report = await rebuilt.load()
        assert report.mode == "full"
        assert len(rebuilt.view().documents) == 4

    @pytest.mark.asyncio
    async def test_reconcile_after_restore_picks_up_changes(self, store, index):
        await index.build_full()
        store.write("New.md", "A note written while the service was down.")

        restored = make_index(store, snapshots=index.snapshot_store)
        report = await restored.load()

        assert report.added == ["New.md"]

    @pytest.mark.asyncio
    async def test_stats(self, index):
        await index.build_full()
        stats = index.stats()
        assert stats.documents == 4
        assert stats.embeddings == 4
        assert stats.connections == sum(stats.connections_by_kind.values())
        assert stats.connections_by_kind["link"] == 2
        assert stats.embeddings_available
        assert not stats.is_indexing
