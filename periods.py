import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings

_MONTH_LOOKUP = {
    name.lower(): idx for idx, name in enumerate(calendar.month_name) if name
}
_MONTH_LOOKUP.update(
    {name.lower(): idx for idx, name in enumerate(calendar.month_abbr) if name}
)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def parse_month(value: Union[int, str]) -> int:
    """Accept 1-12, "10", "October" or "oct"."""
    if isinstance(value, int):
        month = value
    else:
        clean = value.strip().lower()
        if clean.isdigit():
            month = int(clean)
        elif clean in _MONTH_LOOKUP:
            month = _MONTH_LOOKUP[clean]
        else:
            raise ValueError(f"Unknown month: {value!r}")
    if not 1 <= month <= 12:
        raise ValueError(f"Month out of range: {month}")
    return month


def month_name(month: int) -> str:
    return calendar.month_name[month]


def month_period(year: int, month: int) -> Period:
    last_day = calendar.monthrange(year, month)[1]
    return Period(
        f"{year:04d}-{month:02d}", date(year, month, 1), date(year, month, last_day)
    )


def today_local(now: Optional[datetime] = None) -> date:
    tz = ZoneInfo(get_settings().timezone)
    now = now or datetime.now(tz)
    return now.astimezone(tz).date()
