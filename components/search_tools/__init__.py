"""Search tools component: the read-only tool catalog over the document index."""

from .date_parsing import DateParseError, parse_date_expression
from .models import ToolName
from .patterns import INFO_PATTERNS, InfoType, find_matches
from .tools import (
    TOOL_SPECS,
    SearchToolSet,
    ToolParameterError,
    ToolSpec,
    UnknownToolError,
)

__all__ = [
    "DateParseError",
    "INFO_PATTERNS",
    "InfoType",
    "SearchToolSet",
    "TOOL_SPECS",
    "ToolName",
    "ToolParameterError",
    "ToolSpec",
    "UnknownToolError",
    "find_matches",
    "parse_date_expression",
]
