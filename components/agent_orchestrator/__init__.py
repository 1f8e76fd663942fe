"""Agent orchestrator component: the plan, act, observe loop over the search tools."""

from .completion_client import CompletionClient, LiteLLMCompletionClient
from .context_builder import TRUNCATION_MARKER, ContextBuilder
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
from .orchestrator import KnowledgeAgent, TurnAborted
from .protocol import AgentDecision, parse_agent_response

__all__ = [
    "AgentDecision",
    "AgentEvent",
    "AgentEventType",
    "AgentResponse",
    "AgentTurn",
    "Completion",
    "CompletionClient",
    "ContextBuilder",
    "KnowledgeAgent",
    "LiteLLMCompletionClient",
    "TRUNCATION_MARKER",
    "ToolCall",
    "ToolInvocation",
    "TurnAborted",
    "TurnState",
    "parse_agent_response",
]
