"""In-memory doubles for the scheduling engine's boundaries.

Every class here implements the same interface as its production
counterpart (:class:`~callagent.storage.calls.CallStore`,
:class:`~callagent.credential_store.TokenStore`, the provider ABCs and
:class:`~callagent.notifications.email.Mailer`) without touching a database,
the network or an SMTP server. None of them depend on pytest, so they can be
imported from any test tree.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from callagent.core.intervals import Interval, intersect
from callagent.credential_store import GOOGLE_PROVIDER, OAuthTokenRecord
from callagent.models import (
    AvailabilitySubmission,
    Call,
    CallStatus,
    ParticipantLink,
    ResponseStatus,
)
from callagent.providers.base import (
    CalendarError,
    CalendarProvider,
    CreatedEvent,
    EventRequest,
    OAuthClient,
    OAuthExchangeError,
    OAuthRefreshError,
    RefreshedToken,
)
from callagent.storage.calls import TokenConflictError

__all__ = [
    "FakeCalendarProvider",
    "FakeOAuthClient",
    "InMemoryCallStore",
    "InMemoryTokenStore",
    "RecordingMailer",
    "SentEmail",
]


# ---------------------------------------------------------------------------
# Call store
# ---------------------------------------------------------------------------


class InMemoryCallStore:
    """Dict-backed call store with the same conditional-write semantics as Postgres.

    Records are copied on the way in and on the way out so callers can never
    mutate stored state behind the store's back.
    """

    def __init__(self) -> None:
        self.calls: dict[str, Call] = {}
        self.links: dict[tuple[str, str], ParticipantLink] = {}
        self.submissions: list[AvailabilitySubmission] = []

    async def get_call(self, call_id: str) -> Call | None:
        call = self.calls.get(call_id)
        return replace(call) if call is not None else None

    async def list_open_call_ids(self) -> list[str]:
        open_calls = [c for c in self.calls.values() if not c.status.terminal]
        open_calls.sort(key=lambda c: (c.created_at, c.id))
        return [c.id for c in open_calls]

    async def insert_call(self, call: Call) -> None:
        if call.id in self.calls:
            raise ValueError(f"duplicate call id {call.id}")
        self.calls[call.id] = replace(call)

    async def delete_call(self, call_id: str) -> None:
        self.calls.pop(call_id, None)
        for key in [k for k in self.links if k[0] == call_id]:
            del self.links[key]
        self.submissions = [s for s in self.submissions if s.call_id != call_id]

    async def transition_call(
        self,
        call_id: str,
        expected: CallStatus,
        new: CallStatus,
        *,
        scheduled_at: datetime | None = None,
        meeting_link: str | None = None,
        event_id: str | None = None,
    ) -> bool:
        call = self.calls.get(call_id)
        if call is None or call.status is not expected:
            return False
        call.status = new
        if scheduled_at is not None:
            call.scheduled_at = scheduled_at
        if meeting_link is not None:
            call.meeting_link = meeting_link
        if event_id is not None:
            call.event_id = event_id
        return True

    async def list_links(self, call_id: str) -> list[ParticipantLink]:
        return [replace(link) for (cid, _), link in self.links.items() if cid == call_id]

    async def get_link_by_token(self, access_token: str) -> ParticipantLink | None:
        for link in self.links.values():
            if link.access_token is not None and link.access_token == access_token:
                return replace(link)
        return None

    async def insert_links(self, links: Sequence[ParticipantLink]) -> None:
        taken = {link.access_token for link in self.links.values() if link.access_token}
        batch: set[str] = set()
        for link in links:
            if link.access_token is None:
                continue
            if link.access_token in taken or link.access_token in batch:
                raise TokenConflictError("participant access token already in use")
            batch.add(link.access_token)
        for link in links:
            key = (link.call_id, link.participant_id)
            if key in self.links:
                raise ValueError(f"duplicate participant {key}")
        for link in links:
            self.links[(link.call_id, link.participant_id)] = replace(link)

    async def set_link_status(
        self,
        call_id: str,
        participant_id: str,
        new: ResponseStatus,
        *,
        expected: ResponseStatus | None = None,
    ) -> bool:
        link = self.links.get((call_id, participant_id))
        if link is None:
            return False
        if expected is not None and link.response_status is not expected:
            return False
        link.response_status = new
        return True

    async def cascade_link_status(
        self,
        call_id: str,
        new: ResponseStatus,
        *,
        only_from: Collection[ResponseStatus] | None = None,
    ) -> int:
        changed = 0
        for (cid, _), link in self.links.items():
            if cid != call_id:
                continue
            if only_from is not None and link.response_status not in only_from:
                continue
            link.response_status = new
            changed += 1
        return changed

    async def record_reminder(
        self,
        call_id: str,
        participant_id: str,
        expected_count: int,
        sent_at: datetime,
    ) -> bool:
        link = self.links.get((call_id, participant_id))
        if link is None or link.reminders_sent != expected_count:
            return False
        link.reminders_sent += 1
        link.last_reminder_at = sent_at
        return True

    async def reset_link(self, call_id: str, participant_id: str) -> None:
        link = self.links.get((call_id, participant_id))
        if link is None:
            return
        link.response_status = ResponseStatus.WAITING
        link.reminders_sent = 0
        link.last_reminder_at = None
        self._drop_submissions(call_id, participant_id)

    async def list_submissions(self, call_id: str) -> list[AvailabilitySubmission]:
        return sorted(
            (s for s in self.submissions if s.call_id == call_id),
            key=lambda s: (s.participant_id, s.start),
        )

    async def submit_batch(
        self,
        call_id: str,
        participant_id: str,
        submissions: Sequence[AvailabilitySubmission],
    ) -> bool:
        for submission in submissions:
            if (submission.call_id, submission.participant_id) != (call_id, participant_id):
                raise ValueError(f"submission does not belong to {participant_id}")
        link = self.links.get((call_id, participant_id))
        if link is None or link.response_status is not ResponseStatus.WAITING:
            return False
        if any(
            s.call_id == call_id and s.participant_id == participant_id for s in self.submissions
        ):
            return False
        link.response_status = ResponseStatus.ACCEPTED
        self.submissions.extend(replace(s) for s in submissions)
        return True

    def _drop_submissions(self, call_id: str, participant_id: str) -> None:
        self.submissions = [
            s
            for s in self.submissions
            if not (s.call_id == call_id and s.participant_id == participant_id)
        ]


# ---------------------------------------------------------------------------
# Token store
# ---------------------------------------------------------------------------


class InMemoryTokenStore:
    """Dict-backed token store; ``updated_at`` advances on every write."""

    def __init__(self) -> None:
        self.records: dict[str, OAuthTokenRecord] = {}
        self._clock = datetime(2000, 1, 1, tzinfo=UTC)

    def _tick(self) -> datetime:
        self._clock += timedelta(microseconds=1)
        return self._clock

    def put(
        self,
        owner_key: str,
        *,
        access_token: str | None = "access",
        refresh_token: str | None = "refresh",
        expires_at: datetime | None = None,
    ) -> OAuthTokenRecord:
        """Seed a record synchronously for test setup."""
        record = OAuthTokenRecord(
            owner_key=owner_key,
            provider=GOOGLE_PROVIDER,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=None,
            updated_at=self._tick(),
        )
        self.records[owner_key] = record
        return replace(record)

    async def get(self, owner_key: str) -> OAuthTokenRecord | None:
        record = self.records.get(owner_key)
        return replace(record) if record is not None else None

    async def update_if_unchanged(
        self,
        owner_key: str,
        expected_updated_at: datetime,
        *,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool:
        record = self.records.get(owner_key)
        if record is None or record.updated_at != expected_updated_at:
            return False
        record.access_token = access_token
        record.expires_at = expires_at
        if refresh_token is not None:
            record.refresh_token = refresh_token
        record.updated_at = self._tick()
        return True

    async def delete(self, owner_key: str) -> None:
        self.records.pop(owner_key, None)

    async def owners_with_tokens(self, owner_keys: Iterable[str]) -> set[str]:
        return {key for key in owner_keys if key in self.records}

    async def upsert(self, record: OAuthTokenRecord) -> None:
        self.records[record.owner_key] = replace(record, updated_at=self._tick())


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class FakeOAuthClient(OAuthClient):
    """Returns canned token results, or raises a queued error.

    Authorization codes listed in ``codes`` map to the refresh token the
    exchange hands back (None for a consent without one); any other code is
    rejected. Revoked tokens are collected in ``revoked``.
    """

    def __init__(self, *, lifetime: timedelta = timedelta(hours=1)) -> None:
        self.lifetime = lifetime
        self.calls: list[str] = []
        self.errors: list[OAuthRefreshError] = []
        self.codes: dict[str, str | None] = {}
        self.revoked: list[str] = []
        self.revoke_error: OAuthExchangeError | None = None
        self.now = datetime(2000, 1, 1, tzinfo=UTC)
        self._issued = 0

    def fail_with(self, error: OAuthRefreshError) -> None:
        self.errors.append(error)

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        self.calls.append(refresh_token)
        if self.errors:
            raise self.errors.pop(0)
        self._issued += 1
        return RefreshedToken(
            access_token=f"refreshed-{self._issued}",
            expires_at=self.now + self.lifetime,
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> RefreshedToken:
        if code not in self.codes:
            raise OAuthExchangeError(f"unknown authorization code {code!r}")
        self._issued += 1
        return RefreshedToken(
            access_token=f"granted-{self._issued}",
            expires_at=self.now + self.lifetime,
            refresh_token=self.codes.pop(code),
            scope="https://www.googleapis.com/auth/calendar.readonly",
        )

    async def revoke(self, token: str) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(token)


class FakeCalendarProvider(CalendarProvider):
    """Serves busy blocks per access token and records created events.

    Busy data and queued lookup errors are keyed by access token because that
    is the only thing that identifies the calendar owner in a real provider
    call. Creating an event with a known ``event_id`` returns the existing one.
    """

    def __init__(self) -> None:
        self.busy: dict[str, list[Interval]] = {}
        self.freebusy_errors: dict[str, CalendarError] = {}
        self.freebusy_calls: list[tuple[str, str, Interval]] = []
        self.created: list[tuple[str, EventRequest]] = []
        self.events: dict[str, CreatedEvent] = {}
        self.create_error: CalendarError | None = None
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    async def freebusy(
        self,
        access_token: str,
        calendar_id: str,
        window: Interval,
    ) -> list[Interval]:
        self.freebusy_calls.append((access_token, calendar_id, window))
        if access_token in self.freebusy_errors:
            raise self.freebusy_errors[access_token]
        blocks = []
        for block in self.busy.get(access_token, []):
            overlap = intersect(block, window)
            if overlap is not None:
                blocks.append(overlap)
        return blocks

    async def create_event(self, access_token: str, request: EventRequest) -> CreatedEvent:
        if self.create_error is not None:
            raise self.create_error
        if request.event_id is not None and request.event_id in self.events:
            return self.events[request.event_id]
        self.created.append((access_token, request))
        event_id = request.event_id or f"evt-{len(self.created)}"
        event = CreatedEvent(
            event_id=event_id,
            html_link=f"https://calendar.example.com/{event_id}",
            meeting_link=f"https://meet.example.com/{event_id}",
        )
        self.events[event_id] = event
        return event

    async def shutdown(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SentEmail:
    to: str
    subject: str
    html: str
    text: str


@dataclass
class RecordingMailer:
    """Keeps every message instead of sending it.

    Addresses in *failing* are recorded but reported as undeliverable.
    """

    sent: list[SentEmail] = field(default_factory=list)
    failing: set[str] = field(default_factory=set)

    async def send_email(self, to: str, subject: str, html: str, text: str) -> bool:
        self.sent.append(SentEmail(to=to, subject=subject, html=html, text=text))
        return to not in self.failing

    def to(self, address: str) -> list[SentEmail]:
        return [message for message in self.sent if message.to == address]

    def clear(self) -> None:
        self.sent.clear()
