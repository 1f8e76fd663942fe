from datetime import datetime, timedelta, timezone

import pytest
from components.search_tools import DateParseError, parse_date_expression

NOW = datetime(2024, 3, 10, 15, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("now", NOW),
        ("today", datetime(2024, 3, 10, tzinfo=timezone.utc)),
        ("Yesterday", datetime(2024, 3, 9, tzinfo=timezone.utc)),
        ("3 days ago", NOW - timedelta(days=3)),
        ("1 day ago", NOW - timedelta(days=1)),
        ("2 weeks ago", NOW - timedelta(days=14)),
        ("1 month ago", NOW - timedelta(days=30)),
        ("1 year ago", NOW - timedelta(days=365)),
        ("2024-02-29", datetime(2024, 2, 29, tzinfo=timezone.utc)),
        ("2024-02-29T08:15:00Z", datetime(2024, 2, 29, 8, 15, tzinfo=timezone.utc)),
    ],
)
def test_expressions(expression, expected):
    assert parse_date_expression(expression, NOW) == expected


def test_end_of_day_for_whole_days():
    end = parse_date_expression("2024-03-01", NOW, end_of_day=True)
    assert end.date().isoformat() == "2024-03-01"
    assert (end.hour, end.minute, end.second) == (23, 59, 59)
    assert parse_date_expression("today", NOW, end_of_day=True) > NOW


def test_end_of_day_does_not_move_relative_expressions():
    assert parse_date_expression("3 days ago", NOW, end_of_day=True) == NOW - timedelta(
        days=3
    )


def test_naive_now_is_taken_as_utc():
    parsed = parse_date_expression("today", datetime(2024, 3, 10, 9, 0))
    assert parsed.tzinfo == timezone.utc


def test_naive_datetime_takes_now_timezone():
    parsed = parse_date_expression("2024-03-01T10:00:00", NOW)
    assert parsed.tzinfo == timezone.utc


@pytest.mark.parametrize("expression", ["last tuesday", "three days ago", "", "2024-13-01"])
def test_unparseable(expression):
    with pytest.raises(DateParseError, match="Could not parse date"):
        parse_date_expression(expression, NOW)
