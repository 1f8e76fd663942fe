"""Tests for the knowledge agent loop."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from components.agent_orchestrator import AgentEventType, KnowledgeAgent
from components.document_index import DocumentIndex
from components.embedding_system import EmbeddingService
from components.search_tools import SearchToolSet
from shared.testing import (
    HANG,
    HashingEmbeddingModel,
    InMemoryFileStore,
    ScriptedCompletionClient,
    native_call,
    tool_call,
)
from vault_agent.config import AgentConfig, EmbeddingModelConfig, IndexingConfig

NOTES = {
    "Projects/Car.md": "Bought the blue hatchback. The VIN is 1HGCM82633A004352. #vehicles",
    "Travel Plans.md": "Lisbon in spring, then a train to Porto for the weekend.",
}


@pytest.fixture
async def tools():
    index = DocumentIndex(
        InMemoryFileStore(NOTES),
        EmbeddingService(EmbeddingModelConfig(), model=HashingEmbeddingModel()),
        IndexingConfig(min_content_length=10, semantic_connections=False),
    )
    await index.build_full()
    return SearchToolSet(index)


def make_agent(tools, script=(), **config):
    settings = dict(max_iterations=3, completion_timeout_seconds=2)
    settings.update(config)
    client = ScriptedCompletionClient(list(script))
    return KnowledgeAgent(tools, client, AgentConfig(**settings)), client


async def collect(events):
    return [event async for event in events]


class TestTextMode:
    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, tools):
        agent, client = make_agent(
            tools,
            [
                tool_call("find_specific_info", info_type="vin"),
                "FINAL_ANSWER: Your VIN is 1HGCM82633A004352 (Projects/Car.md).",
            ],
        )

        response = await agent.answer("What is my VIN?")

        assert response.content == "Your VIN is 1HGCM82633A004352 (Projects/Car.md)."
        assert response.reason == "answered"
        assert response.iterations == 2
        assert not response.aborted
        [call] = response.tool_calls
        assert call.tool_name == "find_specific_info"
        assert call.result["found"] == 1

        first, second = client.calls
        assert first["messages"][0]["content"] == "What is my VIN?"
        assert "TOOL_CALL:" in first["system_prompt"]
        assert "find_specific_info" in first["system_prompt"]
        assert first["tool_schemas"] is None
        assert "1HGCM82633A004352" in second["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_immediate_answer(self, tools):
        agent, _ = make_agent(tools, ["FINAL_ANSWER: Hello."])
        response = await agent.answer("Hi")
        assert response.content == "Hello."
        assert response.tool_calls == []
        assert response.iterations == 1

    @pytest.mark.asyncio
    async def test_unstructured_reply_is_the_answer(self, tools):
        agent, _ = make_agent(tools, ["The car is blue."])
        response = await agent.answer("What colour is the car?")
        assert response.content == "The car is blue."
        assert response.reason == "answered"

    @pytest.mark.asyncio
    async def test_empty_answer_falls_back_to_summary(self, tools):
        agent, _ = make_agent(tools, [tool_call("text_search", query="Lisbon"), "FINAL_ANSWER:"])
        response = await agent.answer("Where am I going?")
        assert response.content.strip()
        assert "text_search found 1 result(s): Travel Plans" in response.content

    @pytest.mark.asyncio
    async def test_unknown_tool_becomes_an_error_result(self, tools):
        agent, client = make_agent(
            tools, [tool_call("delete_notes", path="x"), "FINAL_ANSWER: ok"]
        )
        response = await agent.answer("question")
        [call] = response.tool_calls
        assert "Unknown tool: delete_notes" in call.result["error"]
        assert "Unknown tool" in client.calls[1]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_invalid_parameters_become_an_error_result(self, tools):
        agent, _ = make_agent(tools, [tool_call("text_search"), "FINAL_ANSWER: ok"])
        response = await agent.answer("question")
        assert "Invalid parameters for text_search" in response.tool_calls[0].result["error"]

    @pytest.mark.asyncio
    async def test_tool_exception_does_not_end_the_turn(self, tools):
        tools.execute = AsyncMock(side_effect=RuntimeError("index unavailable"))
        agent, _ = make_agent(tools, [tool_call("text_search", query="x"), "FINAL_ANSWER: ok"])
        response = await agent.answer("question")
        assert response.content == "ok"
        assert response.tool_calls[0].result == {"error": "RuntimeError: index unavailable"}


class TestMaxIterations:
    @pytest.mark.asyncio
    async def test_synthesis_after_last_iteration(self, tools):
        agent, client = make_agent(
            tools,
            [tool_call("text_search", query="Lisbon")] * 3
            + ["Based on Travel Plans.md you are going to Lisbon."],
        )
        response = await agent.answer("Where am I going?")

        assert response.reason == "max_iterations"
        assert response.iterations == 3
        assert len(response.tool_calls) == 3
        assert response.content == "Based on Travel Plans.md you are going to Lisbon."
        synthesis = client.calls[-1]["messages"][0]["content"]
        assert "search budget for this question is used up" in synthesis
        assert client.calls[-1]["tool_schemas"] is None

    @pytest.mark.asyncio
    async def test_synthesis_that_still_calls_a_tool_is_replaced(self, tools):
        agent, _ = make_agent(
            tools,
            [tool_call("text_search", query="Lisbon")] * 3
            + [tool_call("semantic_search", query="more")],
        )
        response = await agent.answer("Where am I going?")
        assert response.reason == "max_iterations"
        assert "TOOL_CALL" not in response.content
        assert "Here is what the searches found" in response.content

    @pytest.mark.asyncio
    async def test_failed_synthesis_still_answers(self, tools):
        agent, _ = make_agent(
            tools,
            [tool_call("text_search", query="Lisbon")] * 3 + [RuntimeError("overloaded")],
        )
        response = await agent.answer("Where am I going?")
        assert response.reason == "max_iterations"
        assert "overloaded" in response.content
        assert "text_search found 1 result(s)" in response.content


class TestRefinement:
    @pytest.mark.asyncio
    async def test_empty_semantic_search_is_retried_as_text(self, tools):
        agent, client = make_agent(
            tools,
            [
                tool_call("semantic_search", query="zebra quantum"),
                '"VIN"\n',
                "FINAL_ANSWER: found it",
            ],
        )
        response = await agent.answer("What is my vehicle identifier?")

        semantic, retry = response.tool_calls
        assert semantic.result["found"] == 0
        assert retry.tool_name == "text_search"
        assert retry.parameters == {"query": "VIN"}
        assert retry.refined_from == "semantic_search"
        assert retry.result["found"] == 1
        assert "zebra quantum" in client.calls[1]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_refinement_happens_once_per_turn(self, tools):
        agent, _ = make_agent(
            tools,
            [
                tool_call("semantic_search", query="zebra quantum"),
                "nothing useful",
                tool_call("semantic_search", query="quantum zebra"),
                "FINAL_ANSWER: nothing",
            ],
        )
        response = await agent.answer("question")
        assert [c.tool_name for c in response.tool_calls] == [
            "semantic_search",
            "text_search",
            "semantic_search",
        ]

    @pytest.mark.asyncio
    async def test_blank_refinement_reuses_the_query(self, tools):
        agent, _ = make_agent(
            tools,
            [tool_call("semantic_search", query="zebra quantum"), "  \n", "FINAL_ANSWER: no"],
        )
        response = await agent.answer("question")
        assert response.tool_calls[1].parameters == {"query": "zebra quantum"}

    @pytest.mark.asyncio
    async def test_refinement_can_be_disabled(self, tools):
        agent, _ = make_agent(
            tools,
            [tool_call("semantic_search", query="zebra quantum"), "FINAL_ANSWER: no"],
            enable_query_refinement=False,
        )
        response = await agent.answer("question")
        assert len(response.tool_calls) == 1


class TestNativeMode:
    @pytest.mark.asyncio
    async def test_native_tool_calls(self, tools):
        agent, client = make_agent(
            tools,
            [native_call("text_search", {"query": "Lisbon"}), "You are going to Lisbon."],
            tool_mode="native",
        )
        response = await agent.answer("Where am I going?")

        assert response.content == "You are going to Lisbon."
        assert response.tool_calls[0].result["found"] == 1
        schemas = client.calls[0]["tool_schemas"]
        assert [s["name"] for s in schemas] == tools.names
        assert "TOOL_CALL" not in client.calls[0]["system_prompt"]

    @pytest.mark.asyncio
    async def test_undecodable_native_arguments(self, tools):
        agent, _ = make_agent(
            tools,
            [native_call("text_search", "{not json"), "Sorry."],
            tool_mode="native",
        )
        response = await agent.answer("question")
        assert response.tool_calls[0].result == {"error": "Invalid JSON arguments"}


class TestStreaming:
    @pytest.mark.asyncio
    async def test_event_order(self, tools):
        agent, _ = make_agent(
            tools, [tool_call("text_search", query="Lisbon"), "FINAL_ANSWER: Lisbon."]
        )
        events = await collect(agent.stream("Where am I going?"))

        assert [e.type for e in events] == [
            AgentEventType.TOOL_START,
            AgentEventType.TOOL_RESULT,
            AgentEventType.RESPONSE_START,
            AgentEventType.RESPONSE_CHUNK,
            AgentEventType.RESPONSE_END,
        ]
        assert events[0].data["tool_name"] == "text_search"
        assert events[0].data["iteration"] == 1
        assert events[1].data["tool_call"].result["found"] == 1
        assert events[3].data["chunk"] == "Lisbon."
        assert events[-1].data["reason"] == "answered"

    @pytest.mark.asyncio
    async def test_synthesis_is_streamed_in_chunks(self, tools):
        agent, client = make_agent(
            tools,
            [tool_call("text_search", query="Lisbon")],
            max_iterations=1,
        )
        client.stream_script = ["You are ", "going to ", "Lisbon."]
        events = await collect(agent.stream("Where am I going?"))

        chunks = [e.data["chunk"] for e in events if e.type == AgentEventType.RESPONSE_CHUNK]
        assert chunks == ["You are ", "going to ", "Lisbon."]
        assert events[-1].type == AgentEventType.RESPONSE_END
        assert events[-1].data["reason"] == "max_iterations"
        assert client.calls[-1]["stream"] is True

    @pytest.mark.asyncio
    async def test_interrupted_stream_keeps_partial_text(self, tools):
        agent, client = make_agent(
            tools, [tool_call("text_search", query="Lisbon")], max_iterations=1
        )
        client.stream_script = ["You are going ", RuntimeError("connection reset")]
        events = await collect(agent.stream("Where am I going?"))

        chunks = [e.data["chunk"] for e in events if e.type == AgentEventType.RESPONSE_CHUNK]
        assert chunks[0] == "You are going "
        assert "interrupted" in chunks[-1]
        assert not events[-1].data["aborted"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_completion_timeout(self, tools):
        agent, _ = make_agent(tools, [HANG], completion_timeout_seconds=0.05)
        response = await agent.answer("question")
        assert response.aborted
        assert response.reason == "aborted"
        assert "did not respond within 0.05s" in response.content

    @pytest.mark.asyncio
    async def test_completion_error(self, tools):
        agent, _ = make_agent(tools, [RuntimeError("rate limited")])
        response = await agent.answer("question")
        assert response.reason == "error"
        assert not response.aborted
        assert "rate limited" in response.content

    @pytest.mark.asyncio
    async def test_abort_before_start(self, tools):
        agent, client = make_agent(tools)
        abort = asyncio.Event()
        abort.set()
        response = await agent.answer("question", abort)
        assert response.aborted
        assert response.content
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_abort_mid_turn_keeps_partial_results(self, tools):
        agent, client = make_agent(tools, [tool_call("text_search", query="Lisbon"), HANG])
        abort = asyncio.Event()
        task = asyncio.create_task(agent.answer("Where am I going?", abort))
        for _ in range(200):
            if len(client.calls) == 2:
                break
            await asyncio.sleep(0.01)
        abort.set()
        response = await asyncio.wait_for(task, timeout=1)

        assert response.aborted
        assert response.reason == "aborted"
        assert len(response.tool_calls) == 1
        assert "cancelled by the user" in response.content
        assert "text_search found 1 result(s)" in response.content
