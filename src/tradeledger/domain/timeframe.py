# src/tradeledger/domain/timeframe.py
"""
Resolution of the analysis window (day / ISO week / month / year / custom)
around an anchor date. Windows are inclusive ranges of local calendar dates.
"""

from __future__ import annotations
import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterator, Optional

from .errors import InvalidInput

# Longest custom window; reports hold one row per day.
MAX_CUSTOM_DAYS = 5 * 366


class TimeframeKind(Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    CUSTOM = "custom"


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise InvalidInput(f"range end {self.end} is before start {self.start}")

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end

    def days(self) -> Iterator[date]:
        for offset in range(len(self)):
            yield self.start + timedelta(days=offset)

    def __len__(self) -> int:
        return (self.end - self.start).days + 1

    def label(self) -> str:
        fmt = "%d/%m/%Y"
        if self.start == self.end:
            return self.start.strftime(fmt)
        return f"{self.start.strftime(fmt)} - {self.end.strftime(fmt)}"


def month_range(year: int, month: int) -> DateRange:
    last = calendar.monthrange(year, month)[1]
    return DateRange(date(year, month, 1), date(year, month, last))


def year_range(year: int) -> DateRange:
    return DateRange(date(year, 1, 1), date(year, 12, 31))


def resolve_timeframe(
    kind: TimeframeKind | str,
    anchor: date,
    custom_start: Optional[date] = None,
    custom_end: Optional[date] = None,
    max_days: int = MAX_CUSTOM_DAYS,
) -> DateRange:
    """Window of the given kind containing `anchor`.

    Custom windows fall back to the anchor for a missing bound, tolerate
    reversed bounds and may span at most `max_days` days.
    """
    try:
        kind = TimeframeKind(kind)
    except ValueError:
        raise InvalidInput(f"Unknown timeframe '{kind}'")

    if kind is TimeframeKind.DAY:
        return DateRange(anchor, anchor)
    if kind is TimeframeKind.WEEK:
        monday = anchor - timedelta(days=anchor.weekday())
        # The last ISO week of 9999 runs past date.max
        sunday = monday + timedelta(days=min(6, (date.max - monday).days))
        return DateRange(monday, sunday)
    if kind is TimeframeKind.MONTH:
        return month_range(anchor.year, anchor.month)
    if kind is TimeframeKind.YEAR:
        return year_range(anchor.year)

    start = custom_start or anchor
    end = custom_end or anchor
    if end < start:
        start, end = end, start
    if (end - start).days + 1 > max_days:
        raise InvalidInput(f"Custom window {start}..{end} is longer than {max_days} days")
    return DateRange(start, end)
