"""
Centralized application initializer.

This component is responsible for parsing command-line arguments, loading
configurations, and initializing all the core backend services (file store,
embedding service, document index, search tools, agent and VaultService).
It provides a single, reliable entry point for building the application's core,
which can then be used by any number of independent server applications.
"""

import argparse
import logging
import os
from typing import Optional, Tuple

from components.agent_orchestrator import (
    CompletionClient,
    KnowledgeAgent,
    LiteLLMCompletionClient,
)
from components.document_index import DocumentIndex
from components.document_processing import VaultFileStore
from components.embedding_system import EmbeddingService
from components.persistence import FileSnapshotStore
from components.search_tools import SearchToolSet
from components.vault_service.main import VaultService
from vault_agent.config import Config, load_config

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    """Configures root logging from an explicit level or LOG_LEVEL."""
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_arg_parser() -> argparse.ArgumentParser:
    """
    Creates and returns the command-line argument parser with shared arguments
    for both the API and MCP servers.

    Returns:
        An ArgumentParser instance with all common arguments defined.
    """
    parser = argparse.ArgumentParser(description="Vault Agent Server.")
    parser.add_argument(
        "--data-dir",
        help="Override the directory holding the index snapshot.",
    )
    parser.add_argument(
        "--vault-dir",
        help="Override the vault directory to index.",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="Path to the config folder to use for all config files.",
    )
    parser.add_argument(
        "-a",
        "--app-config",
        help="Path to the app.toml file to use.",
    )
    parser.add_argument(
        "-p",
        "--prompts-config",
        help="Path to the prompts.toml file to use.",
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Host to run the server on.",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (defaults to the LOG_LEVEL environment variable).",
    )
    return parser


def build_service(
    config: Config, client: Optional[CompletionClient] = None
) -> VaultService:
    """
    Builds every core component from a loaded configuration.

    Args:
        config: The application configuration.
        client: Completion client for the agent; a LiteLLM client is created
            when omitted.

    Returns:
        A VaultService whose index has not been loaded yet.
    """
    file_store = VaultFileStore(config.paths.vault_dir)
    embedding_service = EmbeddingService(
        config.embedding_model, max_tokens=config.indexing.embedding_max_tokens
    )
    index = DocumentIndex(
        file_store=file_store,
        embedding_service=embedding_service,
        indexing_config=config.indexing,
        search_config=config.search,
        snapshot_store=FileSnapshotStore(config.get_snapshot_path()),
    )
    tools = SearchToolSet(index, config.search)

    if client is None:
        logger.info("Initializing completion client...")
        client = LiteLLMCompletionClient(config.generation_model)
    agent = KnowledgeAgent(tools, client, config.agent, prompts=config.prompts)

    return VaultService(config=config, index=index, tools=tools, agent=agent)


def initialize_service_from_args(
    args: argparse.Namespace,
) -> Tuple[Config, VaultService]:
    """
    Loads configuration and initializes all core components based on command-line
    arguments.

    Args:
        args: Parsed command-line arguments from an ArgumentParser.

    Returns:
        A tuple containing the loaded Config object and the VaultService
        instance. The index is loaded when the service starts.
    """
    logger.info("Initializing application core services...")

    config = load_config(
        config_dir=args.config,
        app_config_path=args.app_config,
        prompts_config_path=args.prompts_config,
    )

    if getattr(args, "vault_dir", None):
        logger.info(f"Overriding vault directory with: {args.vault_dir}")
        config.paths.vault_dir = args.vault_dir
    if getattr(args, "data_dir", None):
        logger.info(f"Overriding data directory with: {args.data_dir}")
        config.paths.data_dir = args.data_dir
    if getattr(args, "host", None):
        logger.info(f"Overriding server host with: {args.host}")
        config.server.host = args.host
    if getattr(args, "api_port", None):
        config.server.api_port = args.api_port
    if getattr(args, "mcp_port", None):
        config.server.mcp_port = args.mcp_port

    service = build_service(config)
    logger.info("Core services initialized successfully.")
    return config, service
