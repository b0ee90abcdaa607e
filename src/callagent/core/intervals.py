"""Half-open time interval algebra.

All functions are pure and operate on timezone-aware datetimes. Intervals are
``[start, end)``; anything with ``end <= start`` is treated as empty and
dropped from results.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo


@dataclass(frozen=True, order=True)
class Interval:
    """A half-open ``[start, end)`` span of time."""

    start: datetime
    end: datetime

    @property
    def empty(self) -> bool:
        return self.end <= self.start

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, start: datetime, end: datetime) -> bool:
        """Return True when ``[start, end)`` lies entirely inside this interval."""
        return self.start <= start and end <= self.end


def intersect(a: Interval, b: Interval) -> Interval | None:
    """Return the overlap of *a* and *b*, or None when they do not overlap."""
    start = max(a.start, b.start)
    end = min(a.end, b.end)
    if end <= start:
        return None
    return Interval(start, end)


def clip(interval: Interval, window: Interval) -> Interval | None:
    """Restrict *interval* to *window*."""
    return intersect(interval, window)


def normalize(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort, drop empties and merge overlapping or touching intervals."""
    ordered = sorted(i for i in intervals if not i.empty)
    merged: list[Interval] = []
    for current in ordered:
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
            continue
        merged.append(current)
    return merged


def _intersect_sorted(left: Sequence[Interval], right: Sequence[Interval]) -> list[Interval]:
    """Two-pointer sweep over two normalized lists."""
    result: list[Interval] = []
    i = j = 0
    while i < len(left) and j < len(right):
        overlap = intersect(left[i], right[j])
        if overlap is not None:
            result.append(overlap)
        # advance whichever ends first
        if left[i].end <= right[j].end:
            i += 1
        else:
            j += 1
    return result


def intersect_all(lists: Iterable[Iterable[Interval]]) -> list[Interval]:
    """Return the time common to every list.

    Each list is normalized first, so input order and overlaps within a list
    do not matter. An empty collection of lists yields ``[]``.
    """
    result: list[Interval] | None = None
    for intervals in lists:
        current = normalize(intervals)
        result = current if result is None else _intersect_sorted(result, current)
        if not result:
            return []
    return result or []


def invert(busy: Iterable[Interval], window: Interval) -> list[Interval]:
    """Return the gaps of *window* not covered by any interval in *busy*."""
    if window.empty:
        return []
    free: list[Interval] = []
    cursor = window.start
    for block in normalize(busy):
        if block.end <= cursor:
            continue
        if block.start >= window.end:
            break
        if block.start > cursor:
            free.append(Interval(cursor, block.start))
        cursor = max(cursor, block.end)
        if cursor >= window.end:
            break
    if cursor < window.end:
        free.append(Interval(cursor, window.end))
    return free


def next_local_midnight(moment: datetime, tz: ZoneInfo) -> datetime:
    """Return the first local midnight strictly after *moment*, as an aware datetime."""
    local = moment.astimezone(tz)
    next_day = local.date() + timedelta(days=1)
    return datetime.combine(next_day, time.min, tzinfo=tz)


def start_of_local_day(moment: datetime, tz: ZoneInfo) -> datetime:
    local = moment.astimezone(tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz)


def split_by_local_day(interval: Interval, tz: ZoneInfo) -> list[Interval]:
    """Cut *interval* at every local midnight in *tz*.

    Boundaries are computed from the local calendar date, so a 23h or 25h day
    around a DST change produces a single piece for that day.
    """
    pieces: list[Interval] = []
    cursor = interval.start
    while cursor < interval.end:
        boundary = next_local_midnight(cursor, tz)
        if boundary <= cursor:
            # A gap in local time can land midnight on or before the cursor;
            # fall back to a fixed step rather than looping forever.
            boundary = cursor + timedelta(days=1)
        piece_end = min(boundary, interval.end)
        pieces.append(Interval(cursor, piece_end))
        cursor = piece_end
    return pieces


def is_weekend(moment: datetime, tz: ZoneInfo) -> bool:
    """Saturday or Sunday in *tz*."""
    return moment.astimezone(tz).weekday() >= 5


def exclude_weekend(interval: Interval, tz: ZoneInfo) -> list[Interval]:
    """Return the parts of *interval* that fall on local weekdays."""
    return [piece for piece in split_by_local_day(interval, tz) if not is_weekend(piece.start, tz)]
