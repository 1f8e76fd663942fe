"""Tests for the LiteLLM completion client and tool-call decoding."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from components.agent_orchestrator import LiteLLMCompletionClient
from components.agent_orchestrator.completion_client import (
    parse_tool_calls,
    to_openai_tools,
)
from llama_index.core.llms import ChatMessage, ChatResponse, MessageRole
from vault_agent.config import GenerationModelConfig


def test_to_openai_tools():
    tools = to_openai_tools(
        [{"name": "text_search", "description": "Find text", "parameters": {"type": "object"}}]
    )
    assert tools == [
        {
            "type": "function",
            "function": {
                "name": "text_search",
                "description": "Find text",
                "parameters": {"type": "object"},
            },
        }
    ]


class TestParseToolCalls:
    def test_dict_calls_with_json_arguments(self):
        [call] = parse_tool_calls(
            [
                {
                    "id": "call_7",
                    "type": "function",
                    "function": {"name": "text_search", "arguments": '{"query": "VIN"}'},
                }
            ]
        )
        assert call.name == "text_search"
        assert call.parameters == {"query": "VIN"}
        assert call.call_id == "call_7"
        assert call.arguments_error is None

    def test_object_calls(self):
        raw = SimpleNamespace(
            id="call_1",
            function=SimpleNamespace(name="search_by_tags", arguments={"tags": ["x"]}),
        )
        [call] = parse_tool_calls([raw])
        assert call.parameters == {"tags": ["x"]}

    def test_empty_arguments(self):
        [call] = parse_tool_calls([{"function": {"name": "search_recent_notes", "arguments": ""}}])
        assert call.parameters == {}
        assert call.arguments_error is None

    def test_undecodable_arguments_are_kept_as_an_error(self):
        [bad_json, not_object] = parse_tool_calls(
            [
                {"function": {"name": "text_search", "arguments": "{query"}},
                {"function": {"name": "text_search", "arguments": "[1, 2]"}},
            ]
        )
        assert bad_json.arguments_error.startswith("Invalid JSON arguments")
        assert not_object.arguments_error == "Tool arguments must be a JSON object"

    def test_calls_without_a_name_are_skipped(self):
        assert parse_tool_calls([{"function": {"arguments": "{}"}}, {"id": "x"}]) == []

    def test_none(self):
        assert parse_tool_calls(None) == []


class TestLiteLLMCompletionClient:
    @pytest.fixture
    def llm(self):
        return MagicMock()

    @pytest.fixture
    def client(self, llm):
        return LiteLLMCompletionClient(GenerationModelConfig(model_name="test/model"), llm=llm)

    @pytest.mark.asyncio
    async def test_complete_with_tools(self, client, llm):
        llm.achat = AsyncMock(
            return_value=ChatResponse(
                message=ChatMessage(
                    role=MessageRole.ASSISTANT,
                    content="",
                    additional_kwargs={
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "function": {
                                    "name": "text_search",
                                    "arguments": '{"query": "Lisbon"}',
                                },
                            }
                        ]
                    },
                ),
                raw={"usage": {"prompt_tokens": 12, "completion_tokens": 3}},
            )
        )

        completion = await client.complete(
            "system",
            [{"role": "user", "content": "Where am I going?"}],
            [{"name": "text_search", "description": "d", "parameters": {"type": "object"}}],
        )

        assert completion.text == ""
        assert completion.tool_calls[0].parameters == {"query": "Lisbon"}
        assert completion.usage == {"prompt_tokens": 12, "completion_tokens": 3}

        messages = llm.achat.call_args.args[0]
        assert [m.role for m in messages] == [MessageRole.SYSTEM, MessageRole.USER]
        assert messages[1].content == "Where am I going?"
        assert llm.achat.call_args.kwargs["tools"][0]["function"]["name"] == "text_search"

    @pytest.mark.asyncio
    async def test_complete_text_only(self, client, llm):
        llm.achat = AsyncMock(
            return_value=ChatResponse(
                message=ChatMessage(role=MessageRole.ASSISTANT, content="FINAL_ANSWER: hi")
            )
        )
        completion = await client.complete("system", [{"role": "user", "content": "hello"}])
        assert completion.text == "FINAL_ANSWER: hi"
        assert completion.tool_calls == []
        assert completion.usage is None
        assert "tools" not in llm.achat.call_args.kwargs

    @pytest.mark.asyncio
    async def test_stream_yields_deltas(self, client, llm):
        async def deltas():
            for delta in ("Lis", None, "bon"):
                yield SimpleNamespace(delta=delta)

        llm.astream_chat = AsyncMock(return_value=deltas())
        chunks = [c async for c in client.stream("system", [{"role": "user", "content": "q"}])]
        assert chunks == ["Lis", "bon"]
