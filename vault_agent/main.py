# vault_agent/main.py

import asyncio
import logging

import uvicorn
from components.api_app.main import create_app
from components.mcp_app.main import create_mcp_app
from shared.initializer import (
    configure_logging,
    create_arg_parser,
    initialize_service_from_args,
)

logger = logging.getLogger(__name__)


async def main() -> None:
    """
    Initializes the service and runs the selected servers concurrently.
    """
    parser = create_arg_parser()
    parser.description = "Run the Vault Agent server."
    parser.add_argument(
        "--serve-api", action="store_true", help="Run the standard API server."
    )
    parser.add_argument(
        "--serve-mcp", action="store_true", help="Run the MCP-compliant server."
    )
    parser.add_argument(
        "--api-port", type=int, default=None, help="Port for the standard API."
    )
    parser.add_argument(
        "--mcp-port", type=int, default=None, help="Port for the MCP server."
    )

    args = parser.parse_args()
    configure_logging(args.log_level)

    if not args.serve_api and not args.serve_mcp:
        print(
            "No servers specified, running both --serve-api and --serve-mcp by default."
        )
        args.serve_api = True
        args.serve_mcp = True

    config, service = initialize_service_from_args(args)
    await service.start()
    logger.info(f"Serving vault at {config.get_vault_path()}")

    server_tasks = []
    if args.serve_api:
        api_app = create_app(service)
        port = config.server.api_port
        api_config = uvicorn.Config(api_app, host=config.server.host, port=port)
        server_tasks.append(uvicorn.Server(api_config).serve())
        print(f"Standard API will be served on http://{config.server.host}:{port}")

    if args.serve_mcp:
        mcp_app = create_mcp_app(service)
        port = config.server.mcp_port
        mcp_config = uvicorn.Config(mcp_app, host=config.server.host, port=port)
        server_tasks.append(uvicorn.Server(mcp_config).serve())
        print(f"MCP Server will be served on http://{config.server.host}:{port}")

    try:
        await asyncio.gather(*server_tasks)
    finally:
        logger.info("Stopping vault service...")
        await service.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("Servers shut down gracefully.")


if __name__ == "__main__":
    run()
