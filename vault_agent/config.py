"""Configuration management for the vault agent."""

import logging
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Literal, Optional

import toml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PathsConfig(BaseModel):
    """Configuration for file paths."""

    vault_dir: str = Field(..., description="Absolute path to the notes vault")
    data_dir: str = Field(
        default="./data",
        description="Directory holding the index snapshot",
    )


class IndexingConfig(BaseModel):
    """Configuration for document indexing."""

    file_types: List[str] = Field(
        default_factory=lambda: ["md"], description="Indexed file extensions"
    )
    include_folders: List[str] = Field(
        default_factory=list,
        description="Vault-relative folder prefixes to index (empty means all)",
    )
    exclude_folders: List[str] = Field(
        default_factory=list, description="Vault-relative folder prefixes to skip"
    )
    min_content_length: int = Field(
        default=50, ge=0, description="Minimum plain-text length of an indexed note"
    )
    max_documents: int = Field(
        default=10000, gt=0, description="Upper bound on indexed notes"
    )
    batch_size: int = Field(
        default=10, gt=0, description="Notes embedded per batch"
    )
    embedding_max_tokens: int = Field(
        default=512, gt=0, description="Approximate token limit for embedded text"
    )
    semantic_connections: bool = Field(
        default=True, description="Derive semantic edges from embeddings"
    )
    semantic_threshold: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Similarity floor for semantic edges"
    )
    semantic_max_per_document: int = Field(
        default=5, ge=0, description="Semantic edges kept per note"
    )


class WatcherConfig(BaseModel):
    """Configuration for file watching."""

    enabled: bool = Field(default=True, description="Enable file watching")
    debounce_seconds: int = Field(
        default=2, description="Debounce time for file changes"
    )
    reconcile_interval_minutes: float = Field(
        default=60, ge=0, description="Periodic reconcile interval (0 disables)"
    )


class ServerConfig(BaseModel):
    """Configuration for the server."""

    host: str = Field(default="127.0.0.1", description="Server host")
    api_port: int = Field(default=8000, description="Standard API port")
    mcp_port: int = Field(default=8001, description="MCP server port")


class EmbeddingModelConfig(BaseModel):
    """Configuration for embedding models."""

    provider: str = Field(
        default="sentence_transformers",
        description="Embedding provider: sentence_transformers, openai_endpoint or none",
    )
    model_name: str = Field(
        default="all-MiniLM-L6-v2", description="Model name or identifier"
    )
    endpoint_url: Optional[str] = Field(
        default=None, description="API endpoint URL for openai_endpoint provider"
    )
    api_key: Optional[str] = Field(
        default=None, description="API key for openai_endpoint provider"
    )


class GenerationModelConfig(BaseModel):
    """Configuration for text generation models."""

    model_name: str = Field(
        default="ollama/llama3", description="LiteLLM model identifier"
    )
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"temperature": 0.3, "max_tokens": 2048},
        description="Parameters passed to litellm.completion()",
    )


def _default_tool_priorities() -> Dict[str, float]:
    return {
        "get_note_details": 0.9,
        "find_specific_info": 0.85,
        "text_search": 0.7,
        "search_by_links": 0.6,
        "search_by_tags": 0.6,
        "semantic_search": 0.5,
        "search_by_date": 0.5,
        "search_recent_notes": 0.5,
        "explore_connections": 0.4,
    }


class AgentConfig(BaseModel):
    """Configuration for the agent loop."""

    max_iterations: int = Field(default=5, gt=0, description="Planning rounds per turn")
    tool_mode: Literal["text", "native"] = Field(
        default="text",
        description="text: TOOL_CALL/FINAL_ANSWER line protocol; native: tool calls",
    )
    context_budget_chars: int = Field(
        default=12000, ge=200, description="Size ceiling of the merged tool context"
    )
    completion_timeout_seconds: float = Field(
        default=120.0, gt=0, description="Timeout for a single completion call"
    )
    enable_query_refinement: bool = Field(
        default=True,
        description="Retry an empty semantic search once as a literal text search",
    )
    tool_priorities: Dict[str, float] = Field(
        default_factory=_default_tool_priorities,
        description="Base priority per tool when merging results into context",
    )
    default_tool_priority: float = Field(default=0.3)
    similarity_boost: float = Field(
        default=0.5, ge=0.0, description="Weight of result similarity in priority"
    )


class SearchConfig(BaseModel):
    """Configuration for search tools."""

    preview_chars: int = Field(default=200, gt=0)
    context_chars: int = Field(
        default=100, gt=0, description="Context window around substring matches"
    )
    max_matches_per_document: int = Field(default=3, gt=0)
    max_pattern_matches_per_document: int = Field(default=10, gt=0)
    max_pattern_matches_per_query: int = Field(default=50, gt=0)


class Config(BaseModel):
    """Main configuration model."""

    paths: PathsConfig
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    embedding_model: EmbeddingModelConfig = Field(default_factory=EmbeddingModelConfig)
    generation_model: GenerationModelConfig = Field(
        default_factory=GenerationModelConfig
    )
    agent: AgentConfig = Field(default_factory=AgentConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    prompts: Dict[str, Any] = Field(
        default_factory=dict, description="Loaded prompts from prompts.toml"
    )

    @classmethod
    def load_from_file(cls, config_path: str) -> "Config":
        """Load configuration from a TOML file."""
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_file, "r") as f:
            config_data = toml.load(f)

        return cls(**config_data)

    def get_vault_path(self) -> Path:
        """Get the vault directory as a Path object."""
        return Path(self.paths.vault_dir).expanduser().resolve()

    def get_snapshot_path(self) -> Path:
        """Location of the persisted index snapshot."""
        return Path(self.paths.data_dir).expanduser() / "index_snapshot.json"

    def should_include_file(self, relative_path: str) -> bool:
        """Check if a vault-relative path is eligible for indexing."""
        return is_eligible(relative_path, self.indexing)


def _under(path: str, folder: str) -> bool:
    folder = folder.strip("/")
    return not folder or path == folder or path.startswith(folder + "/")


def is_eligible(relative_path: str, indexing: IndexingConfig) -> bool:
    """Apply the extension and folder-prefix filters to a vault-relative path."""
    suffix = PurePosixPath(relative_path).suffix.lstrip(".").lower()
    if suffix not in {t.lstrip(".").lower() for t in indexing.file_types}:
        return False
    if indexing.include_folders and not any(
        _under(relative_path, folder) for folder in indexing.include_folders
    ):
        return False
    return not any(_under(relative_path, folder) for folder in indexing.exclude_folders)


def load_config(
    config_dir: Optional[str] = None,
    app_config_path: Optional[str] = None,
    prompts_config_path: Optional[str] = None,
) -> Config:
    """Load all configurations, handling CLI overrides."""
    base_dir = Path(config_dir) if config_dir else Path("config")

    app_path = Path(app_config_path) if app_config_path else base_dir / "app.toml"
    prompts_path = (
        Path(prompts_config_path) if prompts_config_path else base_dir / "prompts.toml"
    )

    try:
        logger.info(f"Loading app config from: {app_path}")
        with open(app_path, "r") as f:
            app_data = toml.load(f)
    except FileNotFoundError:
        logger.error(f"Application config file not found at {app_path}. Aborting.")
        raise

    try:
        logger.info(f"Loading prompts from: {prompts_path}")
        with open(prompts_path, "r") as f:
            prompts_data = toml.load(f)
    except FileNotFoundError:
        logger.warning(
            f"Prompts config file not found at {prompts_path}. Using built-in prompts."
        )
        prompts_data = {}

    config = Config(**app_data)
    config.prompts = prompts_data

    return config
