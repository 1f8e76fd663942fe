"""Embedding system component: model factory and the embedding port."""

from .embedding_factory import EmbeddingModel, create_embedding_model
from .embedding_service import (
    EmbeddingError,
    EmbeddingService,
    EmbeddingUnavailableError,
    truncate_for_embedding,
)

__all__ = [
    "EmbeddingError",
    "EmbeddingModel",
    "EmbeddingService",
    "EmbeddingUnavailableError",
    "create_embedding_model",
    "truncate_for_embedding",
]
