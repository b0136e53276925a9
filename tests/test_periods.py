from datetime import date, datetime, timezone

import pytest

from periods import month_name, month_period, parse_month, today_local


@pytest.mark.parametrize(
    "value,expected",
    [(3, 3), ("3", 3), (" 12 ", 12), ("October", 10), ("oct", 10), ("SEPTEMBER", 9)],
)
def test_parse_month(value, expected) -> None:
    assert parse_month(value) == expected


@pytest.mark.parametrize("value", [0, 13, "13", "Brumaire", ""])
def test_parse_month_rejects_garbage(value) -> None:
    with pytest.raises(ValueError):
        parse_month(value)


def test_month_period_covers_whole_month() -> None:
    period = month_period(2024, 2)

    assert period.slug == "2024-02"
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 2, 29)
    assert month_name(2) == "February"


def test_today_local_uses_configured_timezone() -> None:
    # 23:30 UTC on New Year's Eve is already January 1st in Berlin
    now = datetime(2024, 12, 31, 23, 30, tzinfo=timezone.utc)

    assert today_local(now) == date(2025, 1, 1)
