"""Data models for the agent orchestrator."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolCall(BaseModel):
    """One executed agent step."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    refined_from: Optional[str] = Field(
        default=None, description="Tool whose empty result triggered this retry"
    )

    @property
    def failed(self) -> bool:
        return bool(self.result and "error" in self.result and not self.result.get("results"))


class ToolInvocation(BaseModel):
    """A tool call requested by the model, not yet executed."""

    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None
    arguments_error: Optional[str] = Field(
        default=None, description="Why the provider's arguments could not be decoded"
    )


class Completion(BaseModel):
    """What the completion port returns for one call."""

    text: str = ""
    tool_calls: List[ToolInvocation] = Field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None


class TurnState(str, Enum):
    PLANNING = "planning"
    TOOL_EXECUTING = "tool_executing"
    CONTEXT_MERGE = "context_merge"
    DONE = "done"


class AgentTurn(BaseModel):
    """Transient state of one question-answering loop."""

    question: str
    calls: List[ToolCall] = Field(default_factory=list)
    iteration: int = 0
    state: TurnState = TurnState.PLANNING
    refined: bool = False


class AgentEventType(str, Enum):
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    RESPONSE_START = "response_start"
    RESPONSE_CHUNK = "response_chunk"
    RESPONSE_END = "response_end"


class AgentEvent(BaseModel):
    type: AgentEventType
    data: Dict[str, Any] = Field(default_factory=dict)


class AgentResponse(BaseModel):
    """The outcome of one agent turn."""

    content: str
    tool_calls: List[ToolCall] = Field(default_factory=list)
    iterations: int = 0
    finished: bool = True
    aborted: bool = False
    reason: Optional[str] = Field(
        default=None, description="'answered', 'max_iterations', 'aborted' or 'error'"
    )
