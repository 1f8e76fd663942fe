"""Prompt templates for the agent, loaded from ``prompts.toml`` when present."""

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_TEXT_SYSTEM_PROMPT = """You are a research assistant answering questions from the user's personal notes.
You can call one tool per reply. Reply with exactly one line in one of these forms:

TOOL_CALL: tool_name({{"param": "value"}})
FINAL_ANSWER: your answer

Available tools:
{tool_catalog}

Tool selection guide:
- Specific values (VINs, phone numbers, emails, addresses, URLs, dates): find_specific_info
- Exact names or phrases: text_search
- Topics and concepts: semantic_search
- "Recent" or "latest" notes: search_recent_notes; date ranges: search_by_date
- Tags: search_by_tags; note relationships: search_by_links or explore_connections
- Full content of a note you already found: get_note_details

Ground every answer in the notes and mention which notes you used.
If the results already answer the question, reply with FINAL_ANSWER."""

DEFAULT_NATIVE_SYSTEM_PROMPT = """You are a research assistant answering questions from the user's personal notes.
Use the provided tools to search the notes. Call a tool whenever you need more
information; when the results answer the question, reply with the answer as
plain text. Ground every answer in the notes and mention which notes you used."""

DEFAULT_FOLLOWUP_PROMPT = """{context}

Based on these results, either call another tool to gather missing information
or give the final answer."""

DEFAULT_SYNTHESIS_PROMPT = """The search budget for this question is used up.
Synthesize a best-effort answer to the question from everything gathered so far.
Say plainly what could not be found. Do not call any tools.

{context}"""

DEFAULT_REFINEMENT_PROMPT = """A semantic search of personal notes for "{query}" found nothing.
Rewrite it as the literal words or short phrase most likely to appear verbatim
in a matching note. Reply with the search terms only."""


def describe_parameters(schema: Dict[str, Any]) -> str:
    """Compact one-line description of a JSON parameter schema."""
    properties = schema.get("properties", {})
    required = set(schema.get("required", []))
    parts: List[str] = []
    for name, prop in properties.items():
        kind = prop.get("type")
        if kind is None and "anyOf" in prop:
            kind = "|".join(s.get("type", "?") for s in prop["anyOf"] if s.get("type") != "null")
        if "enum" in prop:
            kind = "|".join(map(str, prop["enum"]))
        text = f"{name}: {kind or 'any'}"
        if name in required:
            text += " (required)"
        elif "default" in prop and prop["default"] is not None:
            text += f" = {json.dumps(prop['default'])}"
        parts.append(text)
    return ", ".join(parts)


class AgentPrompts:
    """Formats the agent's prompts from configured or built-in templates."""

    def __init__(self, prompts_config: Dict[str, Any]):
        self.templates = prompts_config.get("agent", {}) if prompts_config else {}

    def _template(self, key: str, default: str) -> str:
        template = self.templates.get(key)
        if not isinstance(template, str):
            logger.debug(f"Prompt '{key}' not configured; using built-in template")
            return default
        return template

    def _format(self, key: str, default: str, **values: Any) -> str:
        try:
            return self._template(key, default).format(**values)
        except (KeyError, IndexError, ValueError) as e:
            logger.warning(f"Failed to format prompt '{key}': {e}. Using fallback.")
            return default.format(**values)

    def system(self, native: bool, tool_catalog: str) -> str:
        if native:
            return self._format("native_system_prompt", DEFAULT_NATIVE_SYSTEM_PROMPT)
        return self._format(
            "system_prompt", DEFAULT_TEXT_SYSTEM_PROMPT, tool_catalog=tool_catalog
        )

    def followup(self, context: str) -> str:
        return self._format("followup_prompt", DEFAULT_FOLLOWUP_PROMPT, context=context)

    def synthesis(self, question: str, context: str) -> str:
        return self._format(
            "synthesis_prompt", DEFAULT_SYNTHESIS_PROMPT, question=question, context=context
        )

    def refinement(self, query: str) -> str:
        return self._format("refinement_prompt", DEFAULT_REFINEMENT_PROMPT, query=query)
