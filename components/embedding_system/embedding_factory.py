import logging
from abc import abstractmethod
from typing import Any, Callable, Dict, List, Protocol, cast

from llama_index.core.embeddings import BaseEmbedding
from pydantic import Field
from vault_agent.config import EmbeddingModelConfig

logger = logging.getLogger(__name__)


class EmbeddingModel(Protocol):
    """Anything that turns a batch of texts into vectors."""

    def encode(self, texts: List[str]) -> List[List[float]]: ...


class BatchEmbedding(BaseEmbedding):
    """
    llama-index embedding whose single-text hooks all route through
    `encode`, so subclasses only implement the batch call.
    """

    model_config = {"arbitrary_types_allowed": True}

    @abstractmethod
    def encode(self, texts: List[str]) -> List[List[float]]:
        """Embeds a batch of texts, one vector per text, in order."""

    def _get_query_embedding(self, query: str) -> List[float]:
        return self.encode([query])[0]

    def _get_text_embedding(self, text: str) -> List[float]:
        return self.encode([text])[0]

    def _get_text_embeddings(self, texts: List[str]) -> List[List[float]]:
        return self.encode(texts)

    async def _aget_query_embedding(self, query: str) -> List[float]:
        return self._get_query_embedding(query)


class SentenceTransformersEmbedding(BatchEmbedding):
    """Local sentence-transformers model."""

    def __init__(self, model_name: str, **kwargs: Any):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "sentence-transformers is required for this provider. "
                "Install with: pip install sentence-transformers"
            ) from e

        model = SentenceTransformer(model_name)
        logger.info(f"Loaded SentenceTransformers model: {model_name}")
        super().__init__(model_name=model_name, **kwargs)
        # Kept outside pydantic validation
        object.__setattr__(self, "_sentence_model", model)

    def encode(self, texts: List[str]) -> List[List[float]]:
        vectors = self._sentence_model.encode(texts, show_progress_bar=False)
        return cast(List[List[float]], vectors.tolist())


class OpenAIEndpointEmbedding(BatchEmbedding):
    """Any server speaking the OpenAI embeddings API."""

    client: Any = Field(default=None, exclude=True)
    api_model_name: str = Field(default="", exclude=True)

    def __init__(self, model_name: str, endpoint_url: str, api_key: str, **kwargs: Any):
        try:
            from openai import OpenAI
        except ImportError as e:
            raise ImportError(
                "openai is required for this provider. Install with: pip install openai"
            ) from e

        super().__init__(model_name=model_name, **kwargs)
        object.__setattr__(self, "client", OpenAI(api_key=api_key, base_url=endpoint_url))
        object.__setattr__(self, "api_model_name", model_name)
        logger.info(f"Using OpenAI-compatible embeddings {model_name} at {endpoint_url}")

    def encode(self, texts: List[str]) -> List[List[float]]:
        response = self.client.embeddings.create(model=self.api_model_name, input=texts)
        return [item.embedding for item in response.data]


def _sentence_transformers(config: EmbeddingModelConfig) -> BatchEmbedding:
    return SentenceTransformersEmbedding(config.model_name)


def _openai_endpoint(config: EmbeddingModelConfig) -> BatchEmbedding:
    if not config.endpoint_url or not config.api_key:
        raise ValueError(
            "endpoint_url and api_key are required for openai_endpoint provider"
        )
    return OpenAIEndpointEmbedding(config.model_name, config.endpoint_url, config.api_key)


def _disabled(config: EmbeddingModelConfig) -> BatchEmbedding:
    raise ValueError("Embeddings are disabled (provider = 'none')")


PROVIDERS: Dict[str, Callable[[EmbeddingModelConfig], BatchEmbedding]] = {
    "sentence_transformers": _sentence_transformers,
    "openai_endpoint": _openai_endpoint,
    "none": _disabled,
}
SUPPORTED_PROVIDERS = tuple(PROVIDERS)


def create_embedding_model(config: EmbeddingModelConfig) -> BatchEmbedding:
    """Builds the embedding model selected by `config.provider`.

    Raises:
        ValueError: If the provider is unknown, disabled, or misconfigured.
        ImportError: If the provider's client library is not installed.
    """
    provider = config.provider.lower()
    try:
        builder = PROVIDERS[provider]
    except KeyError:
        raise ValueError(
            f"Unsupported embedding provider: {provider}. "
            f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
        ) from None
    return builder(config)
