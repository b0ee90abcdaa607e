"""Domain records for calls, participant links and availability.

Rows are plain dataclasses; the status columns are parsed into StrEnums on
the way in so that an unexpected stored value never masquerades as a known
state.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

ALLOWED_DURATIONS: frozenset[int] = frozenset({30, 45, 60})


class CallStatus(enum.StrEnum):
    """Lifecycle state of a call."""

    PROCESSING = "processing"
    SCHEDULED = "scheduled"
    CANCELED = "canceled"
    ENDED = "ended"

    @property
    def terminal(self) -> bool:
        return self in (CallStatus.CANCELED, CallStatus.ENDED)


class ResponseStatus(enum.StrEnum):
    """A participant's response to the availability request.

    ``UNKNOWN`` is never stored; it stands in for any stored value this
    version does not recognize.
    """

    WAITING = "waiting"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELED = "canceled"
    ENDED = "ended"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> ResponseStatus:
        if raw is None:
            return cls.UNKNOWN
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            logger.warning("Unrecognized participant response status: %r", raw)
            return cls.UNKNOWN

    @property
    def terminal(self) -> bool:
        return self in (
            ResponseStatus.ACCEPTED,
            ResponseStatus.DECLINED,
            ResponseStatus.CANCELED,
            ResponseStatus.ENDED,
        )


class CallKind(enum.StrEnum):
    """Interview stage the call belongs to."""

    SCREENING = "screening"
    VALIDATION = "validation"
    FINAL = "final"


@dataclass
class Call:
    """A call being scheduled, or already scheduled."""

    id: str
    title: str
    created_at: datetime
    status: CallStatus
    kind: CallKind
    duration_minutes: int
    deadline: datetime | None = None
    scheduled_at: datetime | None = None
    notes: str | None = None
    meeting_link: str | None = None
    event_id: str | None = None
    organizer_email: str | None = None

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)

    @classmethod
    def from_row(cls, row: Any) -> Call:
        return cls(
            id=str(row["id"]),
            title=row["title"],
            created_at=row["created_at"],
            status=CallStatus(row["status"]),
            kind=CallKind(row["kind"]),
            duration_minutes=int(row["duration_minutes"]),
            deadline=row["deadline"],
            scheduled_at=row["scheduled_at"],
            notes=row["notes"],
            meeting_link=row["meeting_link"],
            event_id=row["event_id"],
            organizer_email=row["organizer_email"],
        )


@dataclass
class ParticipantLink:
    """One participant's membership in one call.

    ``access_token`` is the opaque deep-link token handed to participants who
    submit availability by hand; calendar-linked participants have none.
    """

    call_id: str
    participant_id: str
    name: str
    email: str
    has_calendar: bool
    response_status: ResponseStatus = ResponseStatus.WAITING
    calendar_id: str = "primary"
    access_token: str | None = None
    created_at: datetime | None = None
    last_reminder_at: datetime | None = None
    reminders_sent: int = 0

    @classmethod
    def from_row(cls, row: Any) -> ParticipantLink:
        return cls(
            call_id=str(row["call_id"]),
            participant_id=row["participant_id"],
            name=row["name"],
            email=row["email"],
            has_calendar=bool(row["has_calendar"]),
            response_status=ResponseStatus.parse(row["response_status"]),
            calendar_id=row["calendar_id"] or "primary",
            access_token=row["access_token"],
            created_at=row["created_at"],
            last_reminder_at=row["last_reminder_at"],
            reminders_sent=int(row["reminders_sent"] or 0),
        )


@dataclass(frozen=True)
class AvailabilitySubmission:
    """A window a manual participant declared as free."""

    call_id: str
    participant_id: str
    start: datetime
    duration_minutes: int

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)
