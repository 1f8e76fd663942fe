"""Merging of tool results into a size-bounded prompt context."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .models import ToolCall

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[truncated]"
FINAL_MARKER = f"\n{TRUNCATION_MARKER}"


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass
class _Group:
    call: ToolCall
    order: int
    priority: float
    header: str
    lines: List[str] = field(default_factory=list)


class ContextBuilder:
    """
    Serializes a call log into prompt context under a character budget.

    Result items are scored as the tool's base priority plus a boost for
    their similarity, when they carry one. Groups are emitted best first and
    items within a group best first. Every line is checked against the budget
    before it is appended; once a group overflows, its remaining items are
    replaced by a ``[truncated]`` line.
    """

    def __init__(
        self,
        budget_chars: int,
        tool_priorities: Optional[Dict[str, float]] = None,
        default_priority: float = 0.3,
        similarity_boost: float = 0.5,
    ):
        self.budget_chars = budget_chars
        self.tool_priorities = tool_priorities or {}
        self.default_priority = default_priority
        self.similarity_boost = similarity_boost

    def item_priority(self, tool_name: str, item: Any) -> float:
        priority = self.tool_priorities.get(tool_name, self.default_priority)
        if isinstance(item, dict) and isinstance(item.get("similarity"), (int, float)):
            priority += self.similarity_boost * float(item["similarity"])
        return priority

    def _group(self, call: ToolCall, order: int) -> _Group:
        result = call.result or {}
        items = result.get("results")
        items = items if isinstance(items, list) else []
        summary = {k: v for k, v in result.items() if k != "results"}
        header = f"## {call.tool_name}({_dumps(call.parameters)})"
        if call.refined_from:
            header += f" [retry of {call.refined_from}]"
        header += f" -> {_dumps(summary)}\n"

        scored = sorted(
            enumerate(items),
            key=lambda pair: (-self.item_priority(call.tool_name, pair[1]), pair[0]),
        )
        base = self.tool_priorities.get(call.tool_name, self.default_priority)
        if call.failed:
            base /= 2
        priority = max(
            [self.item_priority(call.tool_name, item) for _, item in scored] or [base]
        )
        return _Group(
            call=call,
            order=order,
            priority=priority,
            header=header,
            lines=[f"- {_dumps(item)}\n" for _, item in scored],
        )

    def build(self, question: str, calls: Sequence[ToolCall]) -> str:
        """
        Builds the merged context.

        Args:
            question: The user's question, placed first.
            calls: The call log of the current turn.

        Returns:
            Text no longer than the budget. It contains ``[truncated]``
            whenever any result was left out.
        """
        limit = self.budget_chars - len(FINAL_MARKER)
        dropped = False

        intro = f"Question: {question}\n\nResults gathered so far:\n"
        if len(intro) > limit:
            intro = intro[:limit]
            dropped = True
        parts = [intro]
        size = len(intro)

        def fits(piece: str) -> bool:
            return size + len(piece) <= limit

        groups = sorted(
            (self._group(call, i) for i, call in enumerate(calls)),
            key=lambda g: (-g.priority, g.order),
        )
        for group in groups:
            tool = group.call.tool_name
            if not fits(group.header):
                dropped = True
                marker = f"{TRUNCATION_MARKER} {tool}: {len(group.lines)} result(s) omitted\n"
                if fits(marker):
                    parts.append(marker)
                    size += len(marker)
                continue

            parts.append(group.header)
            size += len(group.header)
            for i, line in enumerate(group.lines):
                if fits(line):
                    parts.append(line)
                    size += len(line)
                    continue
                dropped = True
                remaining = len(group.lines) - i
                marker = f"{TRUNCATION_MARKER} {remaining} more {tool} result(s) omitted\n"
                if fits(marker):
                    parts.append(marker)
                    size += len(marker)
                break

        text = "".join(parts)
        if dropped:
            if TRUNCATION_MARKER not in text:
                text += FINAL_MARKER
            logger.debug(
                f"Context truncated to {len(text)} of {self.budget_chars} chars"
            )
        return text
