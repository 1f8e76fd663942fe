"""Parsing of absolute and relative date expressions.

Everything here is pure: the current time is always passed in.
"""

import re
from datetime import date, datetime, time, timedelta, timezone

RELATIVE_PATTERN = re.compile(r"^(\d+)\s+(day|week|month|year)s?\s+ago$")

UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}


class DateParseError(ValueError):
    """Raised when a date expression cannot be understood."""


def _day_bound(day: date, tzinfo, end_of_day: bool) -> datetime:
    moment = time.max if end_of_day else time.min
    return datetime.combine(day, moment, tzinfo=tzinfo)


def parse_date_expression(
    expression: str, now: datetime, end_of_day: bool = False
) -> datetime:
    """
    Parses a date expression relative to ``now``.

    Supported forms: ``now``, ``today``, ``yesterday``,
    ``N day(s)/week(s)/month(s)/year(s) ago`` (a month is 30 days, a year
    365), ISO dates and ISO datetimes.

    Args:
        expression: The text to parse.
        now: The current time; naive values are taken as UTC.
        end_of_day: For expressions naming a whole day (``today``,
            ``yesterday``, an ISO date), return the last instant of that day
            instead of the first, so it can serve as an inclusive upper bound.

    Returns:
        A timezone-aware datetime.

    Raises:
        DateParseError: If the expression matches none of the forms.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    text = expression.strip().lower()

    if text == "now":
        return now
    if text == "today":
        return _day_bound(now.date(), now.tzinfo, end_of_day)
    if text == "yesterday":
        return _day_bound(now.date() - timedelta(days=1), now.tzinfo, end_of_day)

    match = RELATIVE_PATTERN.match(text)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        return now - timedelta(days=amount * UNIT_DAYS[unit])

    try:
        return _day_bound(date.fromisoformat(text), now.tzinfo, end_of_day)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(expression.strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise DateParseError(f"Could not parse date: {expression!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed
