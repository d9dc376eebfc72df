from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from config import get_settings

Clock = Callable[[], date]


def today() -> date:
    """Current date in the configured timezone."""
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


ALL_TIME = Period("all", date(1970, 1, 1), date.max)


def _month_bounds(day: date) -> tuple[date, date]:
    first = day.replace(day=1)
    # day 28 plus four days always lands in the following month
    following = (first.replace(day=28) + timedelta(days=4)).replace(day=1)
    return first, following - timedelta(days=1)


def year_period(year: int) -> Period:
    return Period(str(year), date(year, 1, 1), date(year, 12, 31))


def custom_period(start: Optional[str], end: Optional[str]) -> Period:
    if not start or not end:
        raise ValueError("Custom period requires start and end dates")
    first, last = date.fromisoformat(start), date.fromisoformat(end)
    if first > last:
        raise ValueError("Start date must be before end date")
    return Period("custom", first, last)


def resolve_period(
    slug: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    clock: Clock = today,
) -> Period:
    """Turn a period query (``all``, ``this_month``, ``last_month``, ``this_year``, ``custom``) into dates."""
    if not slug or slug == "all":
        return ALL_TIME
    if slug == "custom":
        return custom_period(start, end)

    current = clock()
    if slug == "this_month":
        return Period(slug, *_month_bounds(current))
    if slug == "last_month":
        return Period(slug, *_month_bounds(current.replace(day=1) - timedelta(days=1)))
    if slug == "this_year":
        return Period(slug, date(current.year, 1, 1), date(current.year, 12, 31))
    raise ValueError(f"Unknown period: {slug}")
