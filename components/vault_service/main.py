"""
This service encapsulates all the business logic for interacting with the vault.
It is completely decoupled from any web framework (like FastAPI) and serves as the
single source of truth for vault operations.

Responsibilities:
- Answering questions through the knowledge agent.
- Running individual search tools.
- Listing notes and retrieving their content.
- Keeping the index in sync: snapshot load, file watching, periodic reconcile.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from components.agent_orchestrator import (
    AgentEvent,
    AgentEventType,
    KnowledgeAgent,
    ToolCall,
)
from components.document_index import DocumentIndex, IndexReport, IndexStats
from components.document_processing import ChangeEvent
from components.file_watcher.file_watcher import VaultWatcher
from components.search_tools import SearchToolSet
from vault_agent.config import Config

from .models import (
    AskResponse,
    DocumentContent,
    DocumentSummary,
    ReindexResponse,
    ToolCallSummary,
)

logger = logging.getLogger(__name__)


def summarize_call(call: ToolCall) -> ToolCallSummary:
    return ToolCallSummary(
        tool_name=call.tool_name,
        parameters=call.parameters,
        result=call.result,
        refined_from=call.refined_from,
    )


def event_payload(event: AgentEvent) -> Dict[str, Any]:
    """JSON-ready form of an agent event."""
    data = dict(event.data)
    if "tool_call" in data:
        data["tool_call"] = summarize_call(data["tool_call"]).model_dump()
    if "tool_calls" in data:
        data["tool_calls"] = [summarize_call(c).model_dump() for c in data["tool_calls"]]
    return {"type": event.type.value, "data": data}


class VaultService:
    """The central service for all vault-related business logic."""

    def __init__(
        self,
        config: Config,
        index: DocumentIndex,
        tools: SearchToolSet,
        agent: Optional[KnowledgeAgent] = None,
        watcher: Optional[VaultWatcher] = None,
    ):
        """
        Initializes the VaultService with its required dependencies.

        Args:
            config: The application's configuration object.
            index: The document index.
            tools: The search tool set over the index.
            agent: The knowledge agent; ask endpoints fail without one.
            watcher: Optional file watcher, created from config on start.
        """
        self.config = config
        self.index = index
        self.tools = tools
        self.agent = agent
        self.watcher = watcher
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        # Reconciles scheduled from the watcher thread
        self._triggered: Set[Future] = set()
        self._triggered_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> IndexReport:
        """Loads the index, then starts the watcher and the periodic reconcile."""
        self._loop = asyncio.get_running_loop()
        report = await self.index.load()
        changed = len(report.added) + len(report.updated) + len(report.removed)
        logger.info(
            f"Index ready: {len(self.index.view().documents)} notes "
            f"({report.mode}, {changed} changed)"
        )

        if self.watcher is None and self.config.watcher.enabled:
            self.watcher = VaultWatcher(self.config, self.handle_file_changes)
        if self.watcher is not None:
            self.watcher.start()

        interval = self.config.watcher.reconcile_interval_minutes
        if interval > 0:
            self._reconcile_task = asyncio.create_task(
                self._periodic_reconcile(interval * 60)
            )
        return report

    async def stop(self) -> None:
        """Stops the watcher and waits for any reconcile it triggered."""
        if self.watcher is not None:
            self.watcher.stop()
        self._loop = None
        with self._triggered_lock:
            triggered = list(self._triggered)
        if triggered:
            logger.info(f"Waiting for {len(triggered)} watcher-triggered reconcile(s)")
            await asyncio.gather(
                *(asyncio.wrap_future(f) for f in triggered), return_exceptions=True
            )
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None
        logger.info("Vault service stopped")

    async def _periodic_reconcile(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            logger.debug("Running periodic reconcile")
            try:
                await self.index.reconcile()
            except Exception as e:
                logger.error(f"Periodic reconcile failed: {e}", exc_info=True)

    def handle_file_changes(self, changes: List[ChangeEvent]) -> None:
        """
        Watcher callback. Runs on the watcher thread.

        The events only trigger a reconcile; the stat diff decides what
        actually changed, so renames and missed events come out right.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Ignoring file changes; service is not running")
            return
        logger.info(
            "File changes detected: "
            + ", ".join(f"{c.kind.value} {c.path}" for c in changes[:10])
        )
        future = asyncio.run_coroutine_threadsafe(self._reconcile_safely(), loop)
        with self._triggered_lock:
            self._triggered.add(future)
        future.add_done_callback(self._forget_trigger)

    def _forget_trigger(self, future: Future) -> None:
        with self._triggered_lock:
            self._triggered.discard(future)

    async def _reconcile_safely(self) -> Optional[IndexReport]:
        try:
            return await self.index.reconcile()
        except Exception as e:
            logger.error(f"Reconcile after file change failed: {e}", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Index operations
    # ------------------------------------------------------------------

    async def reindex(self, full: bool = False) -> ReindexResponse:
        """
        Rebuilds the index from scratch or reconciles it with the vault.

        Returns:
            A summary of what changed; ``success`` is False when a full build
            was already in progress.
        """
        if full:
            report = await self.index.build_full()
            if report is None:
                return ReindexResponse(
                    success=False, message="A full rebuild is already in progress."
                )
        else:
            report = await self.index.reconcile()
            if report is None:
                return ReindexResponse(
                    success=True,
                    message="A reconcile is already running; a follow-up pass was queued.",
                )

        message = (
            "No changes detected."
            if report.mode == "incremental" and not report.changed
            else f"Indexed {len(report.added) + len(report.updated)} notes, removed {len(report.removed)}."
        )
        return ReindexResponse(
            success=True,
            message=message,
            mode=report.mode,
            added=len(report.added),
            updated=len(report.updated),
            removed=len(report.removed),
            embedded=report.embedded,
            embedding_failures=report.embedding_failures,
            duration_seconds=report.duration_seconds,
        )

    def list_documents(self) -> List[DocumentSummary]:
        view = self.index.view()
        return [
            DocumentSummary(
                path=document.path,
                title=document.title,
                tags=document.tags,
                modified=document.modified,
                size=document.size,
                has_embedding=document.path in view.embeddings,
            )
            for document in sorted(view.documents.values(), key=lambda d: d.path)
        ]

    def get_document(self, path: str) -> DocumentContent:
        """
        Retrieves one indexed note.

        Raises:
            FileNotFoundError: If the note is not in the index.
        """
        document = self.index.view().documents.get(path)
        if document is None:
            logger.warning(f"Attempted to access non-indexed note: {path}")
            raise FileNotFoundError(f"Document not found in index: {path}")
        return DocumentContent(
            path=document.path,
            title=document.title,
            content=document.raw_text,
            tags=document.tags,
            outlinks=document.outlinks,
            inlinks=document.inlinks,
            created=document.created,
            modified=document.modified,
        )

    def stats(self) -> IndexStats:
        return self.index.stats()

    # ------------------------------------------------------------------
    # Tools and the agent
    # ------------------------------------------------------------------

    def list_tools(self) -> List[Dict[str, Any]]:
        return self.tools.schemas()

    async def run_tool(self, name: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Runs one search tool; raises UnknownToolError or ToolParameterError."""
        logger.info(f"Running tool {name} with {parameters}")
        return await self.tools.execute(name, parameters)

    def _require_agent(self) -> KnowledgeAgent:
        if self.agent is None:
            raise RuntimeError("No generation model is configured for the agent")
        return self.agent

    async def ask(
        self, question: str, abort: Optional[asyncio.Event] = None
    ) -> AskResponse:
        response = await self._require_agent().answer(question, abort=abort)
        return AskResponse(
            answer=response.content,
            tool_calls=[summarize_call(c) for c in response.tool_calls],
            iterations=response.iterations,
            aborted=response.aborted,
            reason=response.reason,
        )

    async def ask_stream(
        self, question: str, abort: Optional[asyncio.Event] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yields JSON-ready agent events for one question."""
        agent = self._require_agent()
        async for event in agent.stream(question, abort=abort):
            if event.type == AgentEventType.TOOL_START:
                logger.debug(f"Agent calling {event.data.get('tool_name')}")
            yield event_payload(event)
