"""Call intake: creating calls and handling participants' deep-link actions.

These are the reads and writes that happen outside the orchestrator. Creating
a call registers every participant, marks those with a connected Google
account as calendar-linked and hands everyone else a secret availability link.
The link owners can then view the call, submit availability, decline, or start
over.
"""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from callagent.credential_store import TokenStore, normalize_owner_key
from callagent.models import (
    ALLOWED_DURATIONS,
    AvailabilitySubmission,
    Call,
    CallKind,
    CallStatus,
    ParticipantLink,
    ResponseStatus,
)
from callagent.storage.calls import CallStore, TokenConflictError

logger = logging.getLogger(__name__)

MAX_TOKEN_RETRIES = 3
ACCESS_TOKEN_BYTES = 32

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CallIntakeError(Exception):
    """Base class for errors raised by intake operations."""


class CallValidationError(CallIntakeError):
    """Raised when a request fails validation.

    ``details`` lists one human-readable problem per entry.
    """

    def __init__(self, details: Sequence[str]) -> None:
        self.details = list(details)
        super().__init__("; ".join(self.details) or "invalid request")


class InvalidTokenError(CallIntakeError):
    """No participant link matches the presented token."""


class CallNotFoundError(CallIntakeError):
    """The call behind a participant link no longer exists."""


class CallClosedError(CallIntakeError):
    """The call is no longer accepting this action."""

    def __init__(self, status: CallStatus) -> None:
        self.status = status
        super().__init__(f"call is {status.value}")


class CalendarParticipantError(CallIntakeError):
    """Calendar-linked participants do not submit availability by hand."""


class AlreadySubmittedError(CallIntakeError):
    """The link already carries an answer; reopen it before submitting again."""


def _validation_details(exc: ValidationError) -> list[str]:
    details = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error["loc"])
        details.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return details


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("must include a timezone offset")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ParticipantInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    email: str

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if not _EMAIL_RE.fullmatch(normalized):
            raise ValueError("must be a valid e-mail address")
        return normalized


class CallRequest(BaseModel):
    """A request to schedule a new call."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=100)
    kind: CallKind
    duration_minutes: int
    deadline: datetime
    notes: str | None = Field(default=None, max_length=500)
    participants: list[ParticipantInput] = Field(min_length=1)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("notes")
    @classmethod
    def _normalize_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("duration_minutes")
    @classmethod
    def _allowed_duration(cls, value: int) -> int:
        if value not in ALLOWED_DURATIONS:
            allowed = ", ".join(str(d) for d in sorted(ALLOWED_DURATIONS))
            raise ValueError(f"must be one of {allowed}")
        return value

    @field_validator("deadline")
    @classmethod
    def _aware_deadline(cls, value: datetime) -> datetime:
        return _require_aware(value)

    @model_validator(mode="after")
    def _unique_emails(self) -> CallRequest:
        seen: set[str] = set()
        duplicates: list[str] = []
        for participant in self.participants:
            key = normalize_owner_key(participant.email)
            if key in seen:
                duplicates.append(participant.email)
            seen.add(key)
        if duplicates:
            raise ValueError(f"duplicate participant e-mail(s): {', '.join(duplicates)}")
        return self


class AvailabilityWindow(BaseModel):
    """One window of free time submitted through a deep link."""

    model_config = ConfigDict(extra="forbid")

    start: datetime
    duration_minutes: int = Field(gt=0)

    @field_validator("start")
    @classmethod
    def _aware_start(cls, value: datetime) -> datetime:
        return _require_aware(value)


def parse_call_request(raw: CallRequest | Mapping[str, Any]) -> CallRequest:
    """Validate *raw*, raising :class:`CallValidationError` with every problem found."""
    if isinstance(raw, CallRequest):
        return raw
    try:
        return CallRequest.model_validate(raw)
    except ValidationError as exc:
        raise CallValidationError(_validation_details(exc)) from exc


def parse_windows(
    raw: Iterable[AvailabilityWindow | Mapping[str, Any]],
) -> list[AvailabilityWindow]:
    windows: list[AvailabilityWindow] = []
    problems: list[str] = []
    for index, item in enumerate(raw):
        if isinstance(item, AvailabilityWindow):
            windows.append(item)
            continue
        try:
            windows.append(AvailabilityWindow.model_validate(item))
        except ValidationError as exc:
            problems.extend(f"windows[{index}].{detail}" for detail in _validation_details(exc))
    if problems:
        raise CallValidationError(problems)
    if not windows:
        raise CallValidationError(["windows: at least one availability window is required"])
    return windows


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def new_access_token() -> str:
    """256-bit URL-safe deep-link token."""
    return secrets.token_urlsafe(ACCESS_TOKEN_BYTES)


def _build_links(
    call: Call,
    people: Sequence[ParticipantInput],
    calendar_owners: set[str],
    now: datetime,
    token_factory: Callable[[], str],
) -> list[ParticipantLink]:
    links = []
    for person in people:
        participant_id = normalize_owner_key(person.email)
        has_calendar = participant_id in calendar_owners
        links.append(
            ParticipantLink(
                call_id=call.id,
                participant_id=participant_id,
                name=person.name,
                email=person.email,
                has_calendar=has_calendar,
                response_status=ResponseStatus.WAITING,
                access_token=None if has_calendar else token_factory(),
                created_at=now,
            )
        )
    return links


async def create_call(
    store: CallStore,
    tokens: TokenStore,
    request: CallRequest | Mapping[str, Any],
    *,
    organizer: ParticipantInput,
    now: datetime | None = None,
    token_factory: Callable[[], str] = new_access_token,
) -> tuple[Call, list[ParticipantLink]]:
    """Validate *request*, persist the call and its participant links.

    The organizer is added as a participant and must not also be listed.
    Participants with a stored OAuth token are calendar-linked; everyone else
    gets a fresh deep-link token. Token collisions are retried with a new set
    of tokens up to :data:`MAX_TOKEN_RETRIES` times. If the links cannot be
    stored, the call row is removed again.

    Raises
    ------
    CallValidationError
        If the request is invalid.
    TokenConflictError
        If unique tokens could not be generated.
    """
    now = now or datetime.now(UTC)
    parsed = parse_call_request(request)

    organizer_key = normalize_owner_key(organizer.email)
    problems: list[str] = []
    if parsed.deadline <= now:
        problems.append("deadline: must be in the future")
    if any(normalize_owner_key(p.email) == organizer_key for p in parsed.participants):
        problems.append("participants: the organizer is added automatically and must not be listed")
    if problems:
        raise CallValidationError(problems)

    people = [*parsed.participants, organizer]
    calendar_owners = await tokens.owners_with_tokens(normalize_owner_key(p.email) for p in people)

    call = Call(
        id=str(uuid.uuid4()),
        title=parsed.title,
        created_at=now,
        status=CallStatus.PROCESSING,
        kind=parsed.kind,
        duration_minutes=parsed.duration_minutes,
        deadline=parsed.deadline,
        notes=parsed.notes,
        organizer_email=organizer.email,
    )
    await store.insert_call(call)

    try:
        for attempt in range(MAX_TOKEN_RETRIES + 1):
            links = _build_links(call, people, calendar_owners, now, token_factory)
            try:
                await store.insert_links(links)
            except TokenConflictError:
                logger.warning(
                    "Access token collision for call %s (attempt %d/%d)",
                    call.id,
                    attempt + 1,
                    MAX_TOKEN_RETRIES + 1,
                )
                continue
            break
        else:
            raise TokenConflictError(
                f"could not generate unique access tokens after {MAX_TOKEN_RETRIES} retries"
            )
    except Exception:
        await store.delete_call(call.id)
        raise

    logger.info(
        "Call %s registered with %d participants (%d calendar-linked)",
        call.id,
        len(links),
        sum(1 for link in links if link.has_calendar),
    )
    return call, links


# ---------------------------------------------------------------------------
# Deep-link actions
# ---------------------------------------------------------------------------


async def _resolve_token(store: CallStore, access_token: str) -> tuple[ParticipantLink, Call]:
    link = await store.get_link_by_token(access_token)
    if link is None:
        raise InvalidTokenError("unknown availability link")
    call = await store.get_call(link.call_id)
    if call is None:
        raise CallNotFoundError(f"call {link.call_id} no longer exists")
    return link, call


@dataclass(frozen=True)
class ParticipantSummary:
    """What one participant may see about another."""

    name: str
    email: str
    has_calendar: bool
    response_status: ResponseStatus


@dataclass(frozen=True)
class Participation:
    """A participant's view of a call through their deep link."""

    call: Call
    participant: ParticipantLink
    windows: list[AvailabilitySubmission]
    others: list[ParticipantSummary]


async def get_participation(store: CallStore, access_token: str) -> Participation:
    """Load the call behind *access_token*, the caller's windows and everyone's status.

    Works whatever state the call is in. Other participants' tokens are
    never included.
    """
    link, call = await _resolve_token(store, access_token)
    links = await store.list_links(call.id)
    windows = [
        s for s in await store.list_submissions(call.id) if s.participant_id == link.participant_id
    ]
    others = [
        ParticipantSummary(
            name=other.name,
            email=other.email,
            has_calendar=other.has_calendar,
            response_status=other.response_status,
        )
        for other in links
        if other.participant_id != link.participant_id
    ]
    return Participation(call=call, participant=link, windows=windows, others=others)


async def submit_availability(
    store: CallStore,
    access_token: str,
    windows: Iterable[AvailabilityWindow | Mapping[str, Any]],
    *,
    now: datetime | None = None,
) -> ParticipantLink:
    """Record a participant's free windows and mark their link accepted.

    Only one batch per participant is accepted, and only while the link is
    still waiting; use :func:`reopen_participation` to start over. The windows
    and the status change are stored together or not at all.
    """
    link, call = await _resolve_token(store, access_token)
    if call.status is not CallStatus.PROCESSING:
        raise CallClosedError(call.status)
    if link.has_calendar:
        raise CalendarParticipantError("availability is read from the participant's calendar")

    parsed = parse_windows(windows)
    if call.deadline is not None and not any(w.start < call.deadline for w in parsed):
        raise CallValidationError(["windows: at least one window must start before the deadline"])

    batch = [
        AvailabilitySubmission(
            call_id=call.id,
            participant_id=link.participant_id,
            start=w.start,
            duration_minutes=w.duration_minutes,
        )
        for w in parsed
    ]
    if not await store.submit_batch(call.id, link.participant_id, batch):
        raise AlreadySubmittedError(f"an answer is already recorded ({link.response_status.value})")
    logger.info(
        "Availability submitted for call %s by %s (%d windows)",
        call.id,
        link.participant_id,
        len(parsed),
    )
    link.response_status = ResponseStatus.ACCEPTED
    return link


async def decline_participation(store: CallStore, access_token: str) -> ParticipantLink:
    """Mark the participant as declined; the call is canceled on its next orchestration step.

    Declining a call that is already canceled or ended is a no-op.
    """
    link, call = await _resolve_token(store, access_token)
    if call.status.terminal:
        return link
    if call.status is not CallStatus.PROCESSING:
        raise CallClosedError(call.status)
    if link.response_status is not ResponseStatus.DECLINED:
        await store.set_link_status(call.id, link.participant_id, ResponseStatus.DECLINED)
        link.response_status = ResponseStatus.DECLINED
        logger.info("Participant %s declined call %s", link.participant_id, call.id)
    return link


async def reopen_participation(store: CallStore, access_token: str) -> ParticipantLink:
    """Discard a participant's answer so they can respond again.

    The link goes back to ``waiting`` with a fresh reminder budget and any
    submitted windows are deleted.
    """
    link, call = await _resolve_token(store, access_token)
    if call.status is not CallStatus.PROCESSING:
        raise CallClosedError(call.status)
    await store.reset_link(call.id, link.participant_id)
    logger.info("Participant %s reopened their answer for call %s", link.participant_id, call.id)
    link.response_status = ResponseStatus.WAITING
    link.reminders_sent = 0
    link.last_reminder_at = None
    return link
