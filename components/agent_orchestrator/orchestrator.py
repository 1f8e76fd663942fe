"""
The knowledge agent: an iterative plan, act, observe loop over the search tools.

One turn moves through PLANNING -> (TOOL_EXECUTING -> CONTEXT_MERGE ->
PLANNING)* -> DONE. The loop is written once, as an async generator of
events; ``stream`` hands those events to the caller and ``answer`` folds them
into a single response.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Tuple

from components.search_tools import (
    SearchToolSet,
    ToolName,
    ToolParameterError,
    UnknownToolError,
)
from vault_agent.config import AgentConfig

from .completion_client import CompletionClient
from .context_builder import ContextBuilder
from .models import (
    AgentEvent,
    AgentEventType,
    AgentResponse,
    AgentTurn,
    Completion,
    ToolCall,
    ToolInvocation,
    TurnState,
)
from .prompts import AgentPrompts, describe_parameters
from .protocol import parse_agent_response

logger = logging.getLogger(__name__)


class TurnAborted(Exception):
    """Raised inside a turn when a completion is cancelled, times out or fails."""

    def __init__(self, reason: str, kind: str = "aborted"):
        super().__init__(reason)
        self.reason = reason
        self.kind = kind


async def _next_chunk(stream: AsyncIterator[str]) -> Optional[str]:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


class KnowledgeAgent:
    """Answers questions by letting a language model drive the search tools."""

    def __init__(
        self,
        tools: SearchToolSet,
        client: CompletionClient,
        config: Optional[AgentConfig] = None,
        prompts: Optional[Dict[str, Any]] = None,
    ):
        """
        Initializes the agent.

        Args:
            tools: The search tool set the model may call.
            client: The completion port.
            config: Loop, context and timeout settings.
            prompts: The loaded ``prompts.toml`` contents.
        """
        self.tools = tools
        self.client = client
        self.config = config or AgentConfig()
        self.prompts = AgentPrompts(prompts or {})
        self.context_builder = ContextBuilder(
            budget_chars=self.config.context_budget_chars,
            tool_priorities=self.config.tool_priorities,
            default_priority=self.config.default_tool_priority,
            similarity_boost=self.config.similarity_boost,
        )

    @property
    def native(self) -> bool:
        return self.config.tool_mode == "native"

    def tool_catalog(self) -> str:
        lines = []
        for spec in self.tools.specs():
            schema = spec.schema()
            lines.append(f"- {schema['name']}: {schema['description']}")
            lines.append(f"  parameters: {describe_parameters(schema['parameters'])}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def answer(
        self, question: str, abort: Optional[asyncio.Event] = None
    ) -> AgentResponse:
        """
        Runs one turn to completion.

        Args:
            question: The user's question.
            abort: Set this event to stop the turn early.

        Returns:
            The final answer with the call log. The content is never empty.
        """
        chunks: List[str] = []
        end: Dict[str, Any] = {}
        async for event in self._run(question, abort, stream_final=False):
            if event.type == AgentEventType.RESPONSE_CHUNK:
                chunks.append(event.data["chunk"])
            elif event.type == AgentEventType.RESPONSE_END:
                end = event.data
        return AgentResponse(
            content="".join(chunks),
            tool_calls=end.get("tool_calls", []),
            iterations=end.get("iterations", 0),
            finished=True,
            aborted=end.get("aborted", False),
            reason=end.get("reason"),
        )

    def stream(
        self, question: str, abort: Optional[asyncio.Event] = None
    ) -> AsyncIterator[AgentEvent]:
        """Runs one turn, yielding progress events as they happen."""
        return self._run(question, abort, stream_final=True)

    # ------------------------------------------------------------------
    # The loop
    # ------------------------------------------------------------------

    async def _run(
        self, question: str, abort: Optional[asyncio.Event], stream_final: bool
    ) -> AsyncIterator[AgentEvent]:
        turn = AgentTurn(question=question)
        system_prompt = self.prompts.system(self.native, self.tool_catalog())
        tool_schemas = self.tools.schemas() if self.native else None
        logger.info(f"Agent turn started: {question!r} (mode={self.config.tool_mode})")

        try:
            while turn.iteration < self.config.max_iterations:
                turn.iteration += 1
                turn.state = TurnState.PLANNING
                messages = [{"role": "user", "content": self._planning_message(turn)}]
                completion = await self._call(
                    self.client.complete(system_prompt, messages, tool_schemas), abort
                )
                invocations, final = self._decide(completion)
                if final is not None:
                    logger.info(f"Agent answered after {turn.iteration} iteration(s)")
                    async for event in self._respond(turn, final, "answered"):
                        yield event
                    return

                turn.state = TurnState.TOOL_EXECUTING
                for invocation in invocations:
                    async for event in self._run_tool(turn, invocation, abort):
                        yield event
                turn.state = TurnState.CONTEXT_MERGE
        except TurnAborted as e:
            logger.warning(f"Agent turn stopped: {e.reason}")
            text = self._fallback_answer(
                turn, f"The request stopped before an answer was ready ({e.reason})."
            )
            async for event in self._respond(
                turn, text, "error" if e.kind == "error" else "aborted",
                aborted=e.kind != "error",
            ):
                yield event
            return

        logger.info(
            f"Agent reached max iterations ({self.config.max_iterations}); synthesizing"
        )
        async for event in self._synthesize(turn, abort, stream_final):
            yield event

    def _planning_message(self, turn: AgentTurn) -> str:
        if not turn.calls:
            return turn.question
        context = self.context_builder.build(turn.question, turn.calls)
        return self.prompts.followup(context)

    def _decide(
        self, completion: Completion
    ) -> Tuple[List[ToolInvocation], Optional[str]]:
        """Returns the tool calls to run, or the final answer text."""
        if completion.tool_calls:
            return completion.tool_calls, None
        decision = parse_agent_response(completion.text)
        if decision.finished:
            return [], decision.content or ""
        return [ToolInvocation(name=decision.tool_name, parameters=decision.parameters)], None

    async def _run_tool(
        self, turn: AgentTurn, invocation: ToolInvocation, abort: Optional[asyncio.Event]
    ) -> AsyncIterator[AgentEvent]:
        self._check_abort(abort)
        yield self._tool_start(turn, invocation)
        call = await self._execute(invocation)
        turn.calls.append(call)
        yield AgentEvent(type=AgentEventType.TOOL_RESULT, data={"tool_call": call})

        if not self._should_refine(turn, call):
            return
        turn.refined = True
        query = str(call.parameters.get("query", ""))
        terms = await self._refine_query(query, abort)
        logger.info(f"Semantic search for {query!r} was empty; retrying as text {terms!r}")
        retry = ToolInvocation(name=ToolName.TEXT_SEARCH.value, parameters={"query": terms})
        yield self._tool_start(turn, retry)
        retry_call = await self._execute(retry, refined_from=call.tool_name)
        turn.calls.append(retry_call)
        yield AgentEvent(type=AgentEventType.TOOL_RESULT, data={"tool_call": retry_call})

    @staticmethod
    def _tool_start(turn: AgentTurn, invocation: ToolInvocation) -> AgentEvent:
        return AgentEvent(
            type=AgentEventType.TOOL_START,
            data={
                "tool_name": invocation.name,
                "parameters": invocation.parameters,
                "iteration": turn.iteration,
            },
        )

    async def _execute(
        self, invocation: ToolInvocation, refined_from: Optional[str] = None
    ) -> ToolCall:
        """Runs one tool; every failure becomes an error result."""
        if invocation.arguments_error:
            result: Dict[str, Any] = {"error": invocation.arguments_error}
        else:
            try:
                result = await self.tools.execute(invocation.name, invocation.parameters)
            except (UnknownToolError, ToolParameterError) as e:
                logger.warning(f"Tool call rejected: {e}")
                result = {"error": str(e)}
            except Exception as e:
                logger.error(f"Tool {invocation.name} failed: {e}", exc_info=True)
                result = {"error": f"{type(e).__name__}: {e}"}
        return ToolCall(
            tool_name=invocation.name,
            parameters=invocation.parameters,
            result=result,
            refined_from=refined_from,
        )

    def _should_refine(self, turn: AgentTurn, call: ToolCall) -> bool:
        return (
            self.config.enable_query_refinement
            and not turn.refined
            and call.tool_name == ToolName.SEMANTIC_SEARCH.value
            and call.result is not None
            and "error" not in call.result
            and call.result.get("found", 0) == 0
            and bool(call.parameters.get("query"))
        )

    async def _refine_query(self, query: str, abort: Optional[asyncio.Event]) -> str:
        completion = await self._call(
            self.client.complete(
                "You turn questions into literal search terms.",
                [{"role": "user", "content": self.prompts.refinement(query)}],
            ),
            abort,
        )
        for line in completion.text.splitlines():
            terms = line.strip()
            if terms.startswith("FINAL_ANSWER:"):
                terms = terms[len("FINAL_ANSWER:") :].strip()
            terms = terms.strip("\"'` ")
            if terms:
                return terms
        return query

    # ------------------------------------------------------------------
    # Completion calls, cancellation and the final response
    # ------------------------------------------------------------------

    @staticmethod
    def _check_abort(abort: Optional[asyncio.Event]) -> None:
        if abort is not None and abort.is_set():
            raise TurnAborted("cancelled by the user")

    async def _call(self, coro: Awaitable[Any], abort: Optional[asyncio.Event]) -> Any:
        """
        Awaits a completion, racing it against the abort event and the timeout.

        Raises:
            TurnAborted: On abort, timeout, or a failed completion call.
        """
        if abort is not None and abort.is_set():
            if asyncio.iscoroutine(coro):
                coro.close()
            raise TurnAborted("cancelled by the user")

        task = asyncio.ensure_future(coro)
        waiters = {task}
        abort_task = None
        if abort is not None:
            abort_task = asyncio.ensure_future(abort.wait())
            waiters.add(abort_task)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.config.completion_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if abort_task is not None:
                abort_task.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            try:
                return task.result()
            except Exception as e:
                logger.error(f"Completion call failed: {e}")
                raise TurnAborted(f"the language model call failed: {e}", kind="error") from e
        if abort_task is not None and abort_task in done:
            raise TurnAborted("cancelled by the user")
        raise TurnAborted(
            f"the language model did not respond within "
            f"{self.config.completion_timeout_seconds:g}s",
            kind="timeout",
        )

    async def _respond(
        self, turn: AgentTurn, text: str, reason: str, aborted: bool = False
    ) -> AsyncIterator[AgentEvent]:
        turn.state = TurnState.DONE
        if not text.strip():
            text = self._fallback_answer(turn)
        yield AgentEvent(
            type=AgentEventType.RESPONSE_START,
            data={"tool_calls": list(turn.calls), "iterations": turn.iteration},
        )
        yield AgentEvent(type=AgentEventType.RESPONSE_CHUNK, data={"chunk": text})
        yield self._response_end(turn, reason, aborted)

    @staticmethod
    def _response_end(turn: AgentTurn, reason: str, aborted: bool) -> AgentEvent:
        return AgentEvent(
            type=AgentEventType.RESPONSE_END,
            data={
                "tool_calls": list(turn.calls),
                "iterations": turn.iteration,
                "finished": True,
                "aborted": aborted,
                "reason": reason,
            },
        )

    async def _synthesize(
        self, turn: AgentTurn, abort: Optional[asyncio.Event], stream_final: bool
    ) -> AsyncIterator[AgentEvent]:
        """One last completion that must end in some text."""
        context = self.context_builder.build(turn.question, turn.calls)
        messages = [
            {"role": "user", "content": self.prompts.synthesis(turn.question, context)}
        ]
        system_prompt = self.prompts.system(True, "")

        turn.state = TurnState.DONE
        yield AgentEvent(
            type=AgentEventType.RESPONSE_START,
            data={"tool_calls": list(turn.calls), "iterations": turn.iteration},
        )

        produced: List[str] = []
        reason, aborted, note = "max_iterations", False, None
        try:
            if stream_final:
                stream = self.client.stream(system_prompt, messages)
                try:
                    while True:
                        chunk = await self._call(_next_chunk(stream), abort)
                        if chunk is None:
                            break
                        produced.append(chunk)
                        yield AgentEvent(
                            type=AgentEventType.RESPONSE_CHUNK, data={"chunk": chunk}
                        )
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
            else:
                completion = await self._call(
                    self.client.complete(system_prompt, messages), abort
                )
                decision = parse_agent_response(completion.text)
                # A model that still asks for a tool has not answered
                if decision.finished and (decision.content or "").strip():
                    produced.append(decision.content)
                    yield AgentEvent(
                        type=AgentEventType.RESPONSE_CHUNK,
                        data={"chunk": decision.content},
                    )
        except TurnAborted as e:
            logger.warning(f"Synthesis stopped: {e.reason}")
            if e.kind != "error":
                reason, aborted = "aborted", True
            note = f"The final answer was interrupted ({e.reason})."

        if not "".join(produced).strip():
            fallback = self._fallback_answer(turn, note)
            yield AgentEvent(type=AgentEventType.RESPONSE_CHUNK, data={"chunk": fallback})
        elif note:
            yield AgentEvent(
                type=AgentEventType.RESPONSE_CHUNK, data={"chunk": f"\n\n{note}"}
            )
        yield self._response_end(turn, reason, aborted)

    @staticmethod
    def _fallback_answer(turn: AgentTurn, note: Optional[str] = None) -> str:
        """A plain summary of the call log, used when no model answer exists."""
        lines = [note or "I could not produce a complete answer."]
        if not turn.calls:
            lines.append("No notes were searched.")
            return "\n".join(lines)

        lines.append("Here is what the searches found:")
        for call in turn.calls:
            result = call.result or {}
            items = result.get("results") if isinstance(result.get("results"), list) else []
            if "error" in result and not items:
                lines.append(f"- {call.tool_name}: {result['error']}")
                continue
            names = [
                str(item.get("title") or item.get("path"))
                for item in items[:5]
                if isinstance(item, dict)
            ]
            found = result.get("found", len(items))
            suffix = f": {', '.join(names)}" if names else ""
            lines.append(f"- {call.tool_name} found {found} result(s){suffix}")
        return "\n".join(lines)
