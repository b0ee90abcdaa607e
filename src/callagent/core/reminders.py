"""Reminder throttling and no-response cancellation rules.

These functions only decide; the orchestrator performs the sends and writes.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from callagent.models import Call, ParticipantLink, ResponseStatus

DEFAULT_REMINDER_INTERVAL = timedelta(hours=8)
DEFAULT_MAX_REMINDERS = 3


@dataclass(frozen=True)
class ReminderPolicy:
    """How often, and how many times, a silent participant is nudged.

    The first availability request counts as reminder number one.
    """

    interval: timedelta = DEFAULT_REMINDER_INTERVAL
    max_reminders: int = DEFAULT_MAX_REMINDERS

    def needs_reminder(self, link: ParticipantLink, now: datetime) -> bool:
        status = link.response_status
        if status is ResponseStatus.UNKNOWN:
            # Unreadable state: better to nudge than to stay silent forever.
            return True
        if status.terminal:
            return False
        if link.reminders_sent >= self.max_reminders:
            return False
        if link.last_reminder_at is None:
            return True
        return now - link.last_reminder_at >= self.interval


def needs_reminder(
    link: ParticipantLink,
    now: datetime,
    policy: ReminderPolicy | None = None,
) -> bool:
    """Return True when *link* is due for an availability e-mail at *now*."""
    return (policy or ReminderPolicy()).needs_reminder(link, now)


def manual_links(links: Iterable[ParticipantLink]) -> list[ParticipantLink]:
    """Links of participants who answer through the deep link rather than a calendar."""
    return [link for link in links if not link.has_calendar]


def everyone_accepted(links: Iterable[ParticipantLink]) -> bool:
    """True iff there is at least one link and every one of them is accepted."""
    links = list(links)
    return bool(links) and all(link.response_status is ResponseStatus.ACCEPTED for link in links)


def has_refusal(links: Iterable[ParticipantLink]) -> bool:
    return any(
        link.response_status in (ResponseStatus.DECLINED, ResponseStatus.CANCELED)
        for link in links
    )


def should_cancel_for_no_response(
    call: Call,
    links: Iterable[ParticipantLink],
    now: datetime,
) -> bool:
    """Decide whether a still-processing call must be abandoned.

    Any manual participant who declined (or whose link was canceled) sinks
    the call at once. Otherwise the call is abandoned once the deadline has
    passed without every manual participant having answered. Calls without a
    deadline never time out.
    """
    manual = manual_links(links)
    if has_refusal(manual):
        return True
    if call.deadline is None:
        return False
    return now >= call.deadline and not everyone_accepted(manual)
