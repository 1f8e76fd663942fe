"""The plain-text tool protocol.

A model in text mode answers with exactly one of::

    TOOL_CALL: tool_name({"param": "value"})
    FINAL_ANSWER: the answer text

Anything else, including a malformed ``TOOL_CALL`` line or parameters that
are not a JSON object, is taken as a final answer made of the raw text.
"""

import json
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

TOOL_CALL_PREFIX = "TOOL_CALL:"
FINAL_ANSWER_PREFIX = "FINAL_ANSWER:"
CALL_PATTERN = re.compile(r"^([A-Za-z_][\w\-]*)\s*\((.*)\)$", re.S)


class AgentDecision(BaseModel):
    finished: bool
    content: Optional[str] = None
    tool_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


def parse_agent_response(text: str) -> AgentDecision:
    """Parses one model response. Never raises."""
    stripped = (text or "").strip()

    if stripped.startswith(FINAL_ANSWER_PREFIX):
        return AgentDecision(
            finished=True, content=stripped[len(FINAL_ANSWER_PREFIX) :].strip()
        )

    if stripped.startswith(TOOL_CALL_PREFIX):
        call = stripped[len(TOOL_CALL_PREFIX) :].strip()
        match = CALL_PATTERN.match(call)
        if match:
            raw_params = match.group(2).strip()
            try:
                parameters = json.loads(raw_params) if raw_params else {}
            except (json.JSONDecodeError, RecursionError):
                parameters = None
            if isinstance(parameters, dict):
                return AgentDecision(
                    finished=False, tool_name=match.group(1), parameters=parameters
                )

    return AgentDecision(finished=True, content=text)
