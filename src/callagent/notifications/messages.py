"""E-mail bodies sent to call participants.

Every message is rendered twice, as HTML and as plain text. User-supplied
values (names, titles, notes) are HTML-escaped.
"""

from __future__ import annotations

import enum
import html
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo

from callagent.core.intervals import Interval
from callagent.models import Call, ParticipantLink

GOOGLE_CALENDAR_TEMPLATE_URL = "https://calendar.google.com/calendar/render"
_DISPLAY_FORMAT = "%A %d %B %Y, %H:%M"


class CancelReason(enum.StrEnum):
    """Explanation shown to participants when a call is canceled."""

    DECLINED = "A participant declined the invitation."
    NO_RESPONSE = "Not every participant shared their availability before the deadline."
    NO_SLOT = "No time slot suitable for every participant could be found."
    CREDENTIALS = "A participant's calendar connection is no longer valid."


@dataclass(frozen=True)
class Message:
    subject: str
    html: str
    text: str


def _calendar_stamp(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def calendar_add_link(call: Call, slot: Interval, meeting_link: str | None = None) -> str:
    """Google Calendar "add event" template URL for *slot*."""
    details = call.notes or ""
    if meeting_link:
        details = f"{details}\n\n{meeting_link}".strip()
    query = {
        "action": "TEMPLATE",
        "text": call.title,
        "dates": f"{_calendar_stamp(slot.start)}/{_calendar_stamp(slot.end)}",
        "details": details,
    }
    return f"{GOOGLE_CALENDAR_TEMPLATE_URL}?{urlencode(query)}"


class MessageComposer:
    """Builds the participant e-mails for one deployment.

    Parameters
    ----------
    base_url:
        Public origin of the availability pages, without a trailing slash.
    tz:
        Zone used to print dates.
    """

    def __init__(self, base_url: str, tz: ZoneInfo) -> None:
        self._base_url = base_url.rstrip("/")
        self._tz = tz

    def availability_url(self, access_token: str) -> str:
        return f"{self._base_url}/availability/{quote(access_token, safe='')}"

    def reconnect_url(self) -> str:
        return f"{self._base_url}/connect/google"

    def _when(self, moment: datetime | None) -> str:
        if moment is None:
            return "not set"
        return moment.astimezone(self._tz).strftime(_DISPLAY_FORMAT)

    def availability_request(self, call: Call, link: ParticipantLink) -> Message:
        """Initial request (no reminders yet) or a follow-up reminder."""
        if link.access_token is None:
            raise ValueError(f"participant {link.participant_id} has no availability link")
        url = self.availability_url(link.access_token)
        is_reminder = link.reminders_sent > 0
        subject = (
            f"Reminder: share your availability for “{call.title}”"
            if is_reminder
            else f"Share your availability for “{call.title}”"
        )
        intro = (
            "We are still waiting for your availability"
            if is_reminder
            else "You have been invited to a call"
        )
        text = (
            f"Hello {link.name},\n\n"
            f"{intro}: “{call.title}” ({call.duration_minutes} minutes).\n"
            f"Please tell us when you are free before {self._when(call.deadline)}:\n"
            f"{url}\n"
        )
        if call.notes:
            text += f"\nNotes: {call.notes}\n"
        body = (
            f"<p>Hello {html.escape(link.name)},</p>"
            f"<p>{intro}: <strong>{html.escape(call.title)}</strong> "
            f"({call.duration_minutes} minutes).</p>"
            f"<p>Please tell us when you are free before "
            f"{html.escape(self._when(call.deadline))}:</p>"
            f'<p><a href="{html.escape(url)}">Share my availability</a></p>'
        )
        if call.notes:
            body += f"<p>Notes: {html.escape(call.notes)}</p>"
        return Message(subject=subject, html=body, text=text)

    def cancellation(self, call: Call, link: ParticipantLink, reason: str) -> Message:
        subject = f"Call canceled: “{call.title}”"
        text = (
            f"Hello {link.name},\n\n"
            f"The call “{call.title}” has been canceled.\n"
            f"{reason}\n"
        )
        body = (
            f"<p>Hello {html.escape(link.name)},</p>"
            f"<p>The call <strong>{html.escape(call.title)}</strong> has been canceled.</p>"
            f"<p>{html.escape(reason)}</p>"
        )
        return Message(subject=subject, html=body, text=text)

    def confirmation(
        self,
        call: Call,
        link: ParticipantLink,
        slot: Interval,
        meeting_link: str | None,
    ) -> Message:
        add_link = calendar_add_link(call, slot, meeting_link)
        subject = f"Call scheduled: “{call.title}”"
        text = (
            f"Hello {link.name},\n\n"
            f"The call “{call.title}” is scheduled for {self._when(slot.start)} "
            f"({call.duration_minutes} minutes).\n"
        )
        if meeting_link:
            text += f"Join: {meeting_link}\n"
        text += f"Add to your calendar: {add_link}\n"
        body = (
            f"<p>Hello {html.escape(link.name)},</p>"
            f"<p>The call <strong>{html.escape(call.title)}</strong> is scheduled for "
            f"{html.escape(self._when(slot.start))} ({call.duration_minutes} minutes).</p>"
        )
        if meeting_link:
            body += f'<p><a href="{html.escape(meeting_link)}">Join the call</a></p>'
        body += f'<p><a href="{html.escape(add_link)}">Add to Google Calendar</a></p>'
        return Message(subject=subject, html=body, text=text)

    def reconnect(self, call: Call, link: ParticipantLink) -> Message:
        url = self.reconnect_url()
        subject = "Please reconnect your Google Calendar"
        text = (
            f"Hello {link.name},\n\n"
            f"We could not read your calendar for “{call.title}”, so the call was canceled.\n"
            f"Reconnect your Google account here: {url}\n"
        )
        body = (
            f"<p>Hello {html.escape(link.name)},</p>"
            f"<p>We could not read your calendar for <strong>{html.escape(call.title)}</strong>, "
            f"so the call was canceled.</p>"
            f'<p><a href="{html.escape(url)}">Reconnect your Google account</a></p>'
        )
        return Message(subject=subject, html=body, text=text)
