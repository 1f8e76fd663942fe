"""Embedding port used by the document index.

The service loads the configured model lazily. A model that cannot be
created (disabled provider, missing library, bad configuration) makes the
service *unavailable*, which the index treats as substring-only mode. A model
that loads but fails on a call raises a transient ``EmbeddingError``.
"""

import logging
import threading
from typing import List, Optional

from vault_agent.config import EmbeddingModelConfig

from .embedding_factory import EmbeddingModel, create_embedding_model

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class EmbeddingError(Exception):
    """Raised when an embedding call fails on an otherwise working backend."""


class EmbeddingUnavailableError(EmbeddingError):
    """Raised when no embedding backend can be used at all."""


def truncate_for_embedding(text: str, max_tokens: int) -> str:
    """
    Truncates text to roughly ``max_tokens`` tokens.

    Uses a four-characters-per-token estimate and prefers to cut at a word
    boundary when one falls in the last fifth of the allowed length.
    """
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        return truncated[:last_space]
    return truncated


class EmbeddingService:
    """Text-to-vector port with explicit unavailability."""

    def __init__(
        self,
        config: EmbeddingModelConfig,
        max_tokens: int = 512,
        model: Optional[EmbeddingModel] = None,
    ):
        self.config = config
        self.max_tokens = max_tokens
        self._model = model
        self._unavailable_reason: Optional[str] = None
        self._load_lock = threading.Lock()

    @property
    def unavailable_reason(self) -> Optional[str]:
        return self._unavailable_reason

    def is_available(self) -> bool:
        """Returns True when a model is loaded or can be loaded."""
        return self._get_model() is not None

    def _get_model(self) -> Optional[EmbeddingModel]:
        if self._model is not None or self._unavailable_reason is not None:
            return self._model
        with self._load_lock:
            if self._model is None and self._unavailable_reason is None:
                try:
                    self._model = create_embedding_model(self.config)
                    logger.info(
                        f"Embedding model ready: {self.config.provider}/"
                        f"{self.config.model_name}"
                    )
                except Exception as e:
                    self._unavailable_reason = str(e)
                    logger.warning(
                        f"Embedding backend unavailable, using substring search only: {e}"
                    )
        return self._model

    def embed(self, text: str) -> List[float]:
        """Embeds a single text."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embeds a batch of texts.

        Args:
            texts: Texts to embed; each is truncated to the token limit.

        Returns:
            One vector per input text, in order.

        Raises:
            EmbeddingUnavailableError: If no backend can be used.
            EmbeddingError: If the backend call fails.
        """
        model = self._get_model()
        if model is None:
            raise EmbeddingUnavailableError(
                self._unavailable_reason or "No embedding model configured"
            )
        prepared = [truncate_for_embedding(t, self.max_tokens) for t in texts]
        try:
            vectors = model.encode(prepared)
        except Exception as e:
            raise EmbeddingError(f"Embedding call failed: {e}") from e
        if len(vectors) != len(prepared):
            raise EmbeddingError(
                f"Embedding backend returned {len(vectors)} vectors for "
                f"{len(prepared)} texts"
            )
        return [list(map(float, v)) for v in vectors]
