from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


class PeriodKind(str, Enum):
    past = "past"
    current = "current"
    future = "future"


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_now() -> datetime:
    """Naive wall-clock time in the configured reference timezone.

    Cost timestamps are stored in this convention and month windows are
    built from it, so both sides of every comparison agree on month edges.
    """
    return datetime.now(ZoneInfo(get_settings().timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def _next_month_start(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1)
    return date(year, month + 1, 1)


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    last = _next_month_start(year, month) - date.resolution
    return Period(f"{year:04d}-{month:02d}", first, last)


def month_window(year: int, month: int) -> tuple[datetime, datetime]:
    # half-open: [first day 00:00, first day of next month 00:00)
    period = month_period(year, month)
    start = datetime.combine(period.start, time.min)
    end = datetime.combine(period.end + date.resolution, time.min)
    return start, end


def classify_period(
    year: int, month: int, *, today: Optional[date] = None
) -> PeriodKind:
    today = today or local_today()
    requested = (year, month)
    current = (today.year, today.month)
    if requested == current:
        return PeriodKind.current
    if requested < current:
        return PeriodKind.past
    return PeriodKind.future
