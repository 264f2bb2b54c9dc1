"""K-line periods and the bars built for them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class PeriodType(str, Enum):
    """Length of one k-line bar."""

    M1 = "m1"
    M3 = "m3"
    M5 = "m5"
    M15 = "m15"
    M30 = "m30"
    H1 = "h1"
    H2 = "h2"
    H4 = "h4"
    H6 = "h6"
    H8 = "h8"
    H12 = "h12"
    D1 = "d1"
    D3 = "d3"
    W1 = "w1"
    MN = "mn"


@dataclass
class KLine:
    """One candlestick bar; prices and volumes are decimal strings."""

    symbol: str
    open_at: datetime
    close_at: datetime
    period: PeriodType
    open: Optional[str] = None
    high: Optional[str] = None
    low: Optional[str] = None
    close: Optional[str] = None
    volume: Optional[str] = None
    amount: Optional[str] = None


_MINUTE_STEPS = {
    PeriodType.M1: 1,
    PeriodType.M3: 3,
    PeriodType.M5: 5,
    PeriodType.M15: 15,
    PeriodType.M30: 30,
}

_HOUR_STEPS = {
    PeriodType.H1: 1,
    PeriodType.H2: 2,
    PeriodType.H4: 4,
    PeriodType.H6: 6,
    PeriodType.H8: 8,
    PeriodType.H12: 12,
}

_ONE_SECOND = timedelta(seconds=1)


def periods() -> list[PeriodType]:
    """All supported periods, shortest first."""
    return list(PeriodType)


def parse_period(period: str) -> PeriodType:
    """Look up a period by name, ignoring case."""
    try:
        return PeriodType(period.lower())
    except ValueError:
        raise ValueError("invalid period") from None


def _midnight(at: datetime) -> datetime:
    return at.replace(hour=0, minute=0, second=0, microsecond=0)


def _next_month(start: datetime) -> datetime:
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def parse_period_time(at: datetime, period: PeriodType | str) -> tuple[datetime, datetime]:
    """Return the first and last second of the bar that holds ``at``."""
    period = PeriodType(period)

    if period in _MINUTE_STEPS:
        step = _MINUTE_STEPS[period]
        start = at.replace(minute=at.minute - at.minute % step, second=0, microsecond=0)
        return start, start + timedelta(minutes=step) - _ONE_SECOND

    if period in _HOUR_STEPS:
        step = _HOUR_STEPS[period]
        start = at.replace(hour=at.hour - at.hour % step, minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=step) - _ONE_SECOND

    if period is PeriodType.D1:
        start = _midnight(at)
        return start, start + timedelta(days=1) - _ONE_SECOND

    if period is PeriodType.D3:
        # Day numbers that round down to zero fall on the previous month's last day.
        first = _midnight(at).replace(day=1)
        start = first + timedelta(days=at.day - at.day % 3 - 1)
        return start, start + timedelta(days=3) - _ONE_SECOND

    if period is PeriodType.W1:
        start = _midnight(at) - timedelta(days=at.weekday())
        return start, start + timedelta(days=7) - _ONE_SECOND

    start = _midnight(at).replace(day=1)
    return start, _next_month(start) - _ONE_SECOND