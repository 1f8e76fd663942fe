from components.api_app.main import create_app as create_source_app
from components.vault_service.main import VaultService
from fastapi import FastAPI
from fastapi_mcp import FastApiMCP  # type: ignore
from mcp.server.lowlevel.server import Server

# Routes exposed to MCP clients; admin and streaming routes stay HTTP-only
MCP_TAGS = ["search", "documents", "agent"]


def _wrap(service: VaultService) -> FastApiMCP:
    source_app = create_source_app(service)
    return FastApiMCP(
        source_app,
        name="Vault Agent",
        description="Search, browse and ask questions about a personal notes vault.",
        include_tags=MCP_TAGS,
    )


def create_mcp_app(service: VaultService) -> FastAPI:
    """
    Creates and configures the MCP-compliant FastAPI application.

    Args:
        service: The fully initialized VaultService instance.

    Returns:
        The configured MCP FastAPI app instance.
    """
    mcp = _wrap(service)
    mcp_app = FastAPI(title="Vault Agent MCP Server")
    mcp.mount_http(mcp_app)
    return mcp_app


def create_mcp_server(service: VaultService) -> Server:
    """Creates an MCP server instance for stdio transport."""
    return _wrap(service).server
