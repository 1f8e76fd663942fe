"""Completion port and its LiteLLM implementation."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from llama_index.core.llms import LLM, ChatMessage, MessageRole
from llama_index.llms.litellm import LiteLLM
from vault_agent.config import GenerationModelConfig

from .models import Completion, ToolInvocation

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class CompletionClient(Protocol):
    """Port to a language model."""

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        tool_schemas: Optional[List[Dict[str, Any]]] = None,
        **options: Any,
    ) -> Completion:
        """One completion; returns text and, in native mode, tool calls."""
        ...

    def stream(
        self, system_prompt: str, messages: List[Message], **options: Any
    ) -> AsyncIterator[str]:
        """Streams the completion text in incremental chunks."""
        ...


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def to_openai_tools(tool_schemas: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Wraps ``{name, description, parameters}`` schemas as OpenAI function tools."""
    return [
        {
            "type": "function",
            "function": {
                "name": schema["name"],
                "description": schema.get("description", ""),
                "parameters": schema.get("parameters", {"type": "object"}),
            },
        }
        for schema in tool_schemas
    ]


def parse_tool_calls(raw_calls: Any) -> List[ToolInvocation]:
    """Converts provider tool calls (dicts or objects) into ToolInvocations."""
    invocations = []
    for raw in raw_calls or []:
        function = _field(raw, "function")
        name = _field(function, "name") if function is not None else None
        if not name:
            logger.warning(f"Ignoring tool call without a function name: {raw}")
            continue
        arguments = _field(function, "arguments")
        parameters: Dict[str, Any] = {}
        error = None
        if isinstance(arguments, dict):
            parameters = arguments
        elif arguments:
            try:
                decoded = json.loads(arguments)
            except json.JSONDecodeError as e:
                error = f"Invalid JSON arguments: {e}"
            else:
                if isinstance(decoded, dict):
                    parameters = decoded
                else:
                    error = "Tool arguments must be a JSON object"
        invocations.append(
            ToolInvocation(
                name=name,
                parameters=parameters,
                call_id=_field(raw, "id"),
                arguments_error=error,
            )
        )
    return invocations


def _usage(raw: Any) -> Optional[Dict[str, Any]]:
    usage = _field(raw, "usage") if raw is not None else None
    if usage is None:
        return None
    if isinstance(usage, dict):
        return usage
    if hasattr(usage, "model_dump"):
        return usage.model_dump()
    return {
        key: getattr(usage, key)
        for key in ("prompt_tokens", "completion_tokens", "total_tokens")
        if hasattr(usage, key)
    }


class LiteLLMCompletionClient:
    """Completion port backed by llama-index's LiteLLM wrapper."""

    def __init__(self, config: GenerationModelConfig, llm: Optional[LLM] = None):
        self.config = config
        if llm is None:
            llm_parameters = config.parameters or {}
            llm = LiteLLM(model=config.model_name, **llm_parameters)
            logger.info(f"Using LiteLLM model {config.model_name}")
        self.llm = llm

    @staticmethod
    def _chat_messages(system_prompt: str, messages: List[Message]) -> List[ChatMessage]:
        chat = [ChatMessage(role=MessageRole.SYSTEM, content=system_prompt)]
        chat.extend(
            ChatMessage(role=m.get("role", "user"), content=m.get("content", ""))
            for m in messages
        )
        return chat

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        tool_schemas: Optional[List[Dict[str, Any]]] = None,
        **options: Any,
    ) -> Completion:
        kwargs = dict(options)
        if tool_schemas:
            kwargs["tools"] = to_openai_tools(tool_schemas)
        response = await self.llm.achat(
            self._chat_messages(system_prompt, messages), **kwargs
        )
        message = response.message
        return Completion(
            text=message.content or "",
            tool_calls=parse_tool_calls(message.additional_kwargs.get("tool_calls")),
            usage=_usage(response.raw),
        )

    async def stream(
        self, system_prompt: str, messages: List[Message], **options: Any
    ) -> AsyncIterator[str]:
        response_gen = await self.llm.astream_chat(
            self._chat_messages(system_prompt, messages), **options
        )
        async for chunk in response_gen:
            if chunk.delta:
                yield chunk.delta
