# ruff: noqa: B008

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from components.document_index import IndexStats
from components.search_tools import ToolParameterError, UnknownToolError
from components.vault_service.main import VaultService
from components.vault_service.models import (
    AskRequest,
    AskResponse,
    DocumentContent,
    ReindexRequest,
    ReindexResponse,
)
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .models import DocumentListResponse, ToolListResponse, ToolRunResponse

logger = logging.getLogger(__name__)


def create_app(service: VaultService) -> FastAPI:
    """
    Creates and configures the FastAPI application, registering all routes.
    This function returns the app object but does not run it.

    Args:
        service: The fully initialized VaultService instance.

    Returns:
        The configured FastAPI app instance.
    """
    app = FastAPI(title="Vault Agent API")

    # Dependency provider to make the service available to endpoints
    def get_service() -> VaultService:
        return service

    @app.get(
        "/documents",
        response_model=DocumentListResponse,
        tags=["documents"],
        operation_id="list_documents",
    )
    def list_documents(
        svc: VaultService = Depends(get_service),
    ) -> DocumentListResponse:
        documents = svc.list_documents()
        return DocumentListResponse(documents=documents, total_count=len(documents))

    @app.get(
        "/document",
        response_model=DocumentContent,
        tags=["documents"],
        operation_id="get_document",
    )
    def get_document(
        path: str, svc: VaultService = Depends(get_service)
    ) -> DocumentContent:
        try:
            return svc.get_document(path)
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail="Document not found") from e

    @app.post(
        "/ask",
        response_model=AskResponse,
        tags=["agent"],
        operation_id="ask_question",
    )
    async def ask(
        request: AskRequest, svc: VaultService = Depends(get_service)
    ) -> AskResponse:
        try:
            return await svc.ask(request.question)
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e

    @app.post("/ask/stream", tags=["streaming"], operation_id="ask_question_stream")
    async def ask_stream(
        body: AskRequest, request: Request, svc: VaultService = Depends(get_service)
    ) -> StreamingResponse:
        if svc.agent is None:
            raise HTTPException(
                status_code=503, detail="No generation model is configured"
            )
        abort = asyncio.Event()

        async def events() -> AsyncIterator[str]:
            try:
                async for payload in svc.ask_stream(body.question, abort=abort):
                    if await request.is_disconnected():
                        logger.info("Client disconnected; aborting agent turn")
                        abort.set()
                    yield json.dumps(payload, default=str) + "\n"
            finally:
                abort.set()

        return StreamingResponse(events(), media_type="application/x-ndjson")

    @app.post(
        "/reindex",
        response_model=ReindexResponse,
        tags=["admin"],
        operation_id="reindex_vault",
    )
    async def reindex(
        request: Optional[ReindexRequest] = None,
        svc: VaultService = Depends(get_service),
    ) -> ReindexResponse:
        return await svc.reindex(full=bool(request and request.full))

    @app.get(
        "/stats",
        response_model=IndexStats,
        tags=["documents"],
        operation_id="index_stats",
    )
    def stats(svc: VaultService = Depends(get_service)) -> IndexStats:
        return svc.stats()

    @app.get(
        "/tools",
        response_model=ToolListResponse,
        tags=["search"],
        operation_id="list_tools",
    )
    def list_tools(svc: VaultService = Depends(get_service)) -> ToolListResponse:
        return ToolListResponse(tools=svc.list_tools())

    @app.post(
        "/tools/{tool_name}",
        response_model=ToolRunResponse,
        tags=["search"],
        operation_id="run_tool",
    )
    async def run_tool(
        tool_name: str,
        parameters: Optional[Dict[str, Any]] = Body(default=None),
        svc: VaultService = Depends(get_service),
    ) -> ToolRunResponse:
        try:
            result = await svc.run_tool(tool_name, parameters or {})
        except UnknownToolError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except ToolParameterError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return ToolRunResponse(tool_name=tool_name, result=result)

    return app
