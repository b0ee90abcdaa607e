"""Per-participant free time within a call's search window.

Calendar-linked participants are resolved from live busy data; everyone else
from the windows they submitted. Weekends are removed here; business hours
are left to the slot selection engine.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from callagent.core.intervals import Interval, clip, exclude_weekend, invert, normalize
from callagent.models import AvailabilitySubmission, Call, ParticipantLink
from callagent.providers.base import (
    CalendarError,
    CalendarProvider,
    CalendarRequestError,
    is_transient_calendar_error,
)

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_DAYS = 14


class BusyLookupError(CalendarError):
    """A participant's busy time could not be read and must not be guessed.

    ``status_code`` carries the calendar API status when there was one.
    """

    def __init__(self, participant_id: str, cause: CalendarError) -> None:
        self.participant_id = participant_id
        self.status_code = cause.status_code if isinstance(cause, CalendarRequestError) else None
        super().__init__(f"busy lookup failed for {participant_id}: {cause}")


def search_window(
    call: Call,
    now: datetime,
    default_days: int = DEFAULT_SEARCH_DAYS,
) -> Interval:
    """``[max(now, created_at), deadline)``, or a fixed horizon when there is no deadline."""
    start = max(now, call.created_at)
    end = call.deadline if call.deadline is not None else start + timedelta(days=default_days)
    return Interval(start, end)


def _weekday_pieces(intervals: Sequence[Interval], tz: ZoneInfo) -> list[Interval]:
    pieces: list[Interval] = []
    for interval in intervals:
        pieces.extend(exclude_weekend(interval, tz))
    return normalize(pieces)


def free_from_busy(busy: Sequence[Interval], window: Interval, tz: ZoneInfo) -> list[Interval]:
    """Weekday gaps of *window* not covered by *busy*."""
    return _weekday_pieces(invert(busy, window), tz)


def free_from_submissions(
    submissions: Sequence[AvailabilitySubmission],
    window: Interval,
    tz: ZoneInfo,
) -> list[Interval]:
    """Weekday parts of the submitted windows that fall inside *window*."""
    clipped: list[Interval] = []
    for submission in submissions:
        piece = clip(Interval(submission.start, submission.end), window)
        if piece is not None:
            clipped.append(piece)
    return _weekday_pieces(clipped, tz)


@dataclass
class AvailabilityResolver:
    """Computes each participant's free intervals for one call.

    Parameters
    ----------
    provider:
        Calendar backend used for busy lookups.
    tz:
        Zone whose calendar defines weekends.
    """

    provider: CalendarProvider
    tz: ZoneInfo
    default_days: int = DEFAULT_SEARCH_DAYS

    async def _busy_for(
        self,
        link: ParticipantLink,
        access_token: str,
        window: Interval,
    ) -> list[Interval]:
        try:
            return await self.provider.freebusy(access_token, link.calendar_id, window)
        except CalendarError as exc:
            if not is_transient_calendar_error(exc):
                raise BusyLookupError(link.participant_id, exc) from exc
            logger.warning(
                "Busy lookup failed for %s; treating calendar as free: %s",
                link.participant_id,
                exc,
            )
            return []

    async def resolve(
        self,
        call: Call,
        links: Sequence[ParticipantLink],
        submissions: Sequence[AvailabilitySubmission],
        access_tokens: Mapping[str, str],
        now: datetime,
    ) -> dict[str, list[Interval]]:
        """Return ``{participant_id: free intervals}`` for every link.

        *access_tokens* maps calendar-linked participant ids to a usable token;
        a calendar participant without one is treated like a manual
        participant. A transient busy lookup failure counts as no busy time.

        Raises
        ------
        BusyLookupError
            If a calendar answered with anything other than a transient error.
        """
        window = search_window(call, now, self.default_days)
        if window.empty:
            return {link.participant_id: [] for link in links}

        by_participant: dict[str, list[AvailabilitySubmission]] = {}
        for submission in submissions:
            by_participant.setdefault(submission.participant_id, []).append(submission)

        calendar_links = [
            link for link in links if link.has_calendar and link.participant_id in access_tokens
        ]
        busy_results = await asyncio.gather(
            *(
                self._busy_for(link, access_tokens[link.participant_id], window)
                for link in calendar_links
            )
        )
        busy_by_participant = {
            link.participant_id: busy
            for link, busy in zip(calendar_links, busy_results, strict=True)
        }

        free: dict[str, list[Interval]] = {}
        for link in links:
            if link.participant_id in busy_by_participant:
                free[link.participant_id] = free_from_busy(
                    busy_by_participant[link.participant_id], window, self.tz
                )
            else:
                free[link.participant_id] = free_from_submissions(
                    by_participant.get(link.participant_id, []), window, self.tz
                )
        return free
