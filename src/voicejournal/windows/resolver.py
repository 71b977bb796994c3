"""
Call window resolution.

Given a user and a calendar date, decide whether recurring or custom
(one-off) windows apply and return the applicable intervals merged and
sorted. Resolution never writes.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, time
from enum import Enum
from typing import Protocol

from voicejournal.windows.models import DayMode, OneOffCallWindow, RecurringCallWindow, Weekday


class WindowMode(str, Enum):
    """Which window set applies to a date."""

    RECURRING = "recurring"
    CUSTOM = "custom"


@dataclass(frozen=True)
class TimeInterval:
    start: time
    end: time

    def contains(self, moment: time) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True)
class ResolvedWindows:
    """Applicable windows for one user and date."""

    mode: WindowMode
    intervals: tuple[TimeInterval, ...]

    def contains(self, moment: time) -> bool:
        """True when ``moment`` falls inside any interval."""
        return any(interval.contains(moment) for interval in self.intervals)

    @property
    def is_empty(self) -> bool:
        return not self.intervals


def merge_intervals(intervals: Iterable[TimeInterval]) -> tuple[TimeInterval, ...]:
    """Merge overlapping or touching intervals into a sorted, disjoint tuple."""
    ordered = sorted(intervals, key=lambda i: (i.start, i.end))
    merged: list[TimeInterval] = []
    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = TimeInterval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return tuple(merged)


def select_windows(
    on_date: date,
    recurring: Iterable[RecurringCallWindow],
    one_off: Iterable[OneOffCallWindow],
    day_mode: DayMode | None,
) -> ResolvedWindows:
    """Pure resolution over already-loaded rows.

    An explicit day mode wins. Without one, one-off windows set for the date
    take precedence over the weekly schedule.
    """
    weekday = Weekday(on_date.weekday())
    todays_one_off = [w for w in one_off if w.on_date == on_date]

    if day_mode is not None:
        use_custom = not day_mode.use_recurring
    else:
        use_custom = bool(todays_one_off)

    if use_custom:
        intervals = (TimeInterval(w.start_time, w.end_time) for w in todays_one_off)
        return ResolvedWindows(WindowMode.CUSTOM, merge_intervals(intervals))

    intervals = (
        TimeInterval(w.start_time, w.end_time) for w in recurring if w.weekday == int(weekday)
    )
    return ResolvedWindows(WindowMode.RECURRING, merge_intervals(intervals))


class WindowSourceProtocol(Protocol):
    """Read side of the window repository."""

    async def list_recurring(
        self, user_id: str, weekday: Weekday | None = None
    ) -> Iterable[RecurringCallWindow]: ...

    async def list_one_off(
        self, user_id: str, on_date: date | None = None
    ) -> Iterable[OneOffCallWindow]: ...

    async def get_day_mode(self, user_id: str, on_date: date) -> DayMode | None: ...


class CallWindowResolver:
    """Resolves the windows that apply to a user on a date."""

    def __init__(self, source: WindowSourceProtocol) -> None:
        self._source = source

    async def resolve_windows(self, user_id: str, on_date: date) -> ResolvedWindows:
        weekday = Weekday(on_date.weekday())
        recurring = await self._source.list_recurring(user_id, weekday)
        one_off = await self._source.list_one_off(user_id, on_date)
        day_mode = await self._source.get_day_mode(user_id, on_date)
        return select_windows(on_date, recurring, one_off, day_mode)
