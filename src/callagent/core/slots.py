"""Meeting time selection over the participants' common free time.

A slot must fit inside one free interval, inside one local calendar day and
inside business hours. Among the candidates three passes are tried in order;
the first pass that yields anything wins:

1. starts from tomorrow up to three days out (or the deadline), latest first;
2. starts from there up to the deadline, earliest first;
3. starts later today, latest first.

Candidates are only generated at interval and business-hour edges, so the
cost is linear in the number of intervals. An edge is rounded to a five
minute grid when the rounded start still fits, and kept as is otherwise.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from callagent.core.intervals import (
    Interval,
    intersect,
    next_local_midnight,
    normalize,
    split_by_local_day,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Rome"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class SchedulingPolicy:
    """Fixed placement rules for meetings."""

    tz: ZoneInfo = ZoneInfo(DEFAULT_TIMEZONE)
    business_start: time = time(7, 0)
    business_end: time = time(20, 0)
    near_term: timedelta = timedelta(days=3)
    granularity: timedelta = timedelta(minutes=5)

    def business_band(self, moment: datetime) -> Interval:
        """Business hours of the local day containing *moment*."""
        day = moment.astimezone(self.tz).date()
        return Interval(
            datetime.combine(day, self.business_start, tzinfo=self.tz),
            datetime.combine(day, self.business_end, tzinfo=self.tz),
        )


def _ceil_to(moment: datetime, step: timedelta) -> datetime:
    remainder = (moment - _EPOCH) % step
    return moment if not remainder else moment + (step - remainder)


def _floor_to(moment: datetime, step: timedelta) -> datetime:
    return moment - (moment - _EPOCH) % step


def _bookable_segments(free: Iterable[Interval], policy: SchedulingPolicy) -> Iterator[Interval]:
    """Pieces of *free* that lie within one local day's business hours, in UTC."""
    for interval in normalize(free):
        for piece in split_by_local_day(interval, policy.tz):
            segment = intersect(piece, policy.business_band(piece.start))
            if segment is not None:
                yield Interval(segment.start.astimezone(UTC), segment.end.astimezone(UTC))


def _earliest_start(
    segment: Interval, duration: timedelta, lo: datetime, hi: datetime, step: timedelta
) -> datetime | None:
    start = max(segment.start, lo)
    limit = min(segment.end - duration, hi)
    if start > limit:
        return None
    rounded = _ceil_to(start, step)
    return rounded if rounded <= limit else start


def _latest_start(
    segment: Interval, duration: timedelta, lo: datetime, hi: datetime, step: timedelta
) -> datetime | None:
    start = min(segment.end - duration, hi)
    limit = max(segment.start, lo)
    if start < limit:
        return None
    rounded = _floor_to(start, step)
    return rounded if rounded >= limit else start


def select_slot(
    free: Iterable[Interval],
    duration: timedelta,
    now: datetime,
    deadline: datetime,
    policy: SchedulingPolicy | None = None,
) -> Interval | None:
    """Pick a meeting slot inside *free*, or None when nothing fits.

    Parameters
    ----------
    free:
        Time every participant is free, as produced by the availability
        resolver and :func:`~callagent.core.intervals.intersect_all`.
    duration:
        Meeting length.
    now:
        Current instant; nothing before it is ever chosen.
    deadline:
        Latest instant the meeting may end.
    """
    policy = policy or SchedulingPolicy()
    if duration <= timedelta(0):
        raise ValueError("duration must be positive")

    now = now.astimezone(UTC)
    deadline = deadline.astimezone(UTC)
    horizon = Interval(now, deadline)
    if horizon.empty:
        return None

    segments = [
        clipped
        for segment in _bookable_segments(free, policy)
        if (clipped := intersect(segment, horizon)) is not None and clipped.duration >= duration
    ]
    if not segments:
        return None

    tomorrow = next_local_midnight(now, policy.tz).astimezone(UTC)
    near_end = min(now + policy.near_term, deadline)
    step = policy.granularity

    passes = (
        ("near-term", tomorrow, near_end, _latest_start, max),
        ("mid-term", near_end, deadline, _earliest_start, min),
        ("same-day", now, tomorrow, _latest_start, max),
    )
    for label, lo, hi, anchor, choose in passes:
        if hi < lo:
            continue
        candidates = [
            start
            for segment in segments
            if (start := anchor(segment, duration, lo, hi, step)) is not None
        ]
        if candidates:
            start = choose(candidates)
            logger.debug("Slot found in %s pass: %s", label, start.isoformat())
            return Interval(start, start + duration)
    return None
