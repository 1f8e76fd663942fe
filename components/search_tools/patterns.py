"""Regular expressions for extracting specific kinds of information."""

import bisect
import re
from enum import Enum
from typing import Dict, List, NamedTuple, Pattern

WORD_PATTERN = re.compile(r"\S+")


class InfoType(str, Enum):
    VIN = "vin"
    PHONE = "phone"
    EMAIL = "email"
    ADDRESS = "address"
    URL = "url"
    NUMBER = "number"
    DATE = "date"


INFO_PATTERNS: Dict[InfoType, Pattern[str]] = {
    # 17 characters, no I/O/Q, at least one digit
    InfoType.VIN: re.compile(r"\b(?=[A-HJ-NPR-Z]*\d)[A-HJ-NPR-Z0-9]{17}\b"),
    InfoType.PHONE: re.compile(
        r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"
    ),
    InfoType.EMAIL: re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    InfoType.ADDRESS: re.compile(
        r"\b\d+\s+[A-Za-z0-9\s,.-]+?\b(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd"
        r"|Lane|Ln|Drive|Dr|Court|Ct|Circle|Cir|Place|Pl)\b",
        re.IGNORECASE,
    ),
    InfoType.URL: re.compile(
        r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
        r"[-a-zA-Z0-9()@:%_+.~#?&/=]*"
    ),
    InfoType.NUMBER: re.compile(r"\b\d{3,}\b"),
    InfoType.DATE: re.compile(
        r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b|\b\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}\b"
    ),
}


class PatternMatch(NamedTuple):
    value: str
    context: str
    position: int


def find_matches(
    text: str, pattern: Pattern[str], context_words: int, limit: int
) -> List[PatternMatch]:
    """
    Finds up to ``limit`` matches of ``pattern`` in ``text``.

    Each match carries the ``context_words`` words before and after it.
    Empty matches are ignored.
    """
    words = list(WORD_PATTERN.finditer(text))
    word_ends = [w.end() for w in words]
    word_starts = [w.start() for w in words]

    matches: List[PatternMatch] = []
    for match in pattern.finditer(text):
        if len(matches) >= limit:
            break
        if not match.group(0):
            continue
        if words:
            first = min(bisect.bisect_right(word_ends, match.start()), len(words) - 1)
            last = max(bisect.bisect_left(word_starts, match.end()) - 1, first)
            lo = max(0, first - context_words)
            hi = min(len(words) - 1, last + context_words)
            context = text[words[lo].start() : words[hi].end()]
        else:
            context = match.group(0)
        matches.append(
            PatternMatch(
                value=match.group(0).strip(),
                context=" ".join(context.split()),
                position=match.start(),
            )
        )
    return matches
