"""Test fixtures and configuration."""

import logging
import sys
from datetime import datetime, timezone

import pytest
from components.document_index import DocumentIndex
from components.embedding_system import EmbeddingService
from components.persistence import InMemorySnapshotStore
from components.search_tools import SearchToolSet
from shared.testing import HashingEmbeddingModel, InMemoryFileStore
from vault_agent.config import (
    AgentConfig,
    Config,
    EmbeddingModelConfig,
    IndexingConfig,
    PathsConfig,
    SearchConfig,
    WatcherConfig,
)


# --- This function enables logging visibility during tests ---
def pytest_configure(config):
    """Configure logging to be visible for all tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(levelname)s:%(name)s:%(message)s",
        stream=sys.stdout,
    )


# -----------------------------------------------------------

SAMPLE_NOTES = {
    "Projects/Car.md": (
        "---\ntags: [vehicles]\n---\n# Car\n\n"
        "Bought the blue hatchback from the dealer downtown. "
        "The VIN is 1HGCM82633A004352 and the insurance renews in March. "
        "See [[Insurance]] for the policy details."
    ),
    "Insurance.md": (
        "# Insurance\n\nPolicy number and contacts for the car insurance. "
        "Call 555-123-4567 to reach the agent, or email agent@example.com. "
        "Renewal happens every March. #finance #vehicles"
    ),
    "Journal/Valentine.md": (
        "# Valentine\n\nDinner with Sam tonight. I love how the evening went, "
        "we talked about travelling to Lisbon next spring. [[Travel Plans]] #personal"
    ),
    "Travel Plans.md": (
        "# Travel Plans\n\nLisbon in spring, then a train to Porto. "
        "Need to book the flights and a small hotel near the river. #personal"
    ),
}


@pytest.fixture
def sample_notes():
    return dict(SAMPLE_NOTES)


@pytest.fixture
def file_store(sample_notes) -> InMemoryFileStore:
    return InMemoryFileStore(sample_notes)


@pytest.fixture
def embedding_model() -> HashingEmbeddingModel:
    return HashingEmbeddingModel()


@pytest.fixture
def indexing_config() -> IndexingConfig:
    return IndexingConfig(min_content_length=20, batch_size=2, semantic_threshold=0.5)


@pytest.fixture
def snapshot_store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def index(file_store, embedding_model, indexing_config, snapshot_store) -> DocumentIndex:
    service = EmbeddingService(EmbeddingModelConfig(), model=embedding_model)
    return DocumentIndex(
        file_store=file_store,
        embedding_service=service,
        indexing_config=indexing_config,
        search_config=SearchConfig(),
        snapshot_store=snapshot_store,
    )


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def tools(index, fixed_now) -> SearchToolSet:
    return SearchToolSet(index, SearchConfig(), clock=lambda: fixed_now)


@pytest.fixture
def agent_config() -> AgentConfig:
    return AgentConfig(max_iterations=3, completion_timeout_seconds=2)


@pytest.fixture
def test_config(tmp_path) -> Config:
    """Create a test configuration."""
    return Config(
        paths=PathsConfig(vault_dir=str(tmp_path), data_dir=str(tmp_path / "data")),
        indexing=IndexingConfig(min_content_length=20),
        watcher=WatcherConfig(enabled=False, reconcile_interval_minutes=0),
    )
