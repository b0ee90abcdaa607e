"""Per-call state machine.

``processing`` calls are driven toward ``scheduled`` or ``canceled``;
``scheduled`` calls become ``ended`` once their start time has passed.
``canceled`` and ``ended`` are final and never touched again.

Each :meth:`CallOrchestrator.process_call` invocation is a single idempotent
step: it reads the current state, makes at most one status transition and
sends the notifications that belong to it. Transitions are conditional on the
status that was read, so when two invocations race only one of them acts; the
other returns :attr:`CallOutcome.NOOP` and sends nothing. Anything that fails
transiently leaves the call untouched for the next invocation.
"""

from __future__ import annotations

import enum
import hashlib
import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime

from opentelemetry import trace

from callagent.core.availability import (
    DEFAULT_SEARCH_DAYS,
    AvailabilityResolver,
    BusyLookupError,
    search_window,
)
from callagent.core.intervals import Interval, intersect_all
from callagent.core.logging import call_context
from callagent.core.reminders import (
    ReminderPolicy,
    everyone_accepted,
    has_refusal,
    manual_links,
    should_cancel_for_no_response,
)
from callagent.core.slots import SchedulingPolicy, select_slot
from callagent.core.tokens import OAuthTokenError, TokenGuard
from callagent.credential_store import MANAGER_OWNER_KEY
from callagent.models import Call, CallStatus, ParticipantLink, ResponseStatus
from callagent.notifications.email import Mailer
from callagent.notifications.messages import CancelReason, Message, MessageComposer
from callagent.providers.base import CalendarError, CalendarProvider, EventRequest
from callagent.storage.calls import CallStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("callagent")


def event_id_for(call_id: str) -> str:
    """Stable calendar event id for a call, so a retried create cannot duplicate it.

    Hex digits fit the base32hex alphabet Google requires for client ids.
    """
    return "call" + hashlib.sha256(call_id.encode()).hexdigest()[:32]


class CallOutcome(enum.StrEnum):
    """What a single orchestration step did."""

    NOT_FOUND = "not_found"
    NOOP = "noop"
    ENDED = "ended"
    WAITING = "waiting"
    CANCELED = "canceled"
    SCHEDULED = "scheduled"
    RETRY = "retry"
    ERROR = "error"


class CallOrchestrator:
    """Drives calls through their lifecycle.

    Parameters
    ----------
    store:
        Call, link and submission persistence.
    token_guard:
        Source of fresh access tokens for participants and the manager identity.
    provider:
        Calendar backend for busy lookups and event creation.
    mailer:
        Outbound e-mail transport.
    composer:
        Renders participant e-mails.
    reminder_policy, scheduling_policy:
        Override the default reminder cadence and slot placement rules.
    """

    def __init__(
        self,
        store: CallStore,
        token_guard: TokenGuard,
        provider: CalendarProvider,
        mailer: Mailer,
        composer: MessageComposer,
        *,
        reminder_policy: ReminderPolicy | None = None,
        scheduling_policy: SchedulingPolicy | None = None,
        search_days: int = DEFAULT_SEARCH_DAYS,
    ) -> None:
        self._store = store
        self._tokens = token_guard
        self._provider = provider
        self._mailer = mailer
        self._composer = composer
        self._reminders = reminder_policy or ReminderPolicy()
        self._scheduling = scheduling_policy or SchedulingPolicy()
        self._search_days = search_days
        self._resolver = AvailabilityResolver(provider, self._scheduling.tz, search_days)

    async def process_call(self, call_id: str, now: datetime | None = None) -> CallOutcome:
        """Advance one call by a single step and report what happened."""
        now = now or datetime.now(UTC)
        with (
            call_context(call_id),
            tracer.start_as_current_span("callagent.process_call") as span,
        ):
            span.set_attribute("callagent.call_id", call_id)
            outcome = await self._process(call_id, now)
            span.set_attribute("callagent.outcome", outcome.value)
            logger.info("Call processed: %s", outcome.value)
            return outcome

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _process(self, call_id: str, now: datetime) -> CallOutcome:
        call = await self._store.get_call(call_id)
        if call is None:
            logger.warning("Call not found")
            return CallOutcome.NOT_FOUND
        if call.status.terminal:
            return CallOutcome.NOOP
        if call.status is CallStatus.SCHEDULED:
            if call.scheduled_at is not None and call.scheduled_at <= now:
                return await self._end(call)
            return CallOutcome.NOOP

        links = await self._store.list_links(call.id)
        manual = manual_links(links)

        if call.deadline is not None and now >= call.deadline:
            reason = (
                CancelReason.NO_RESPONSE
                if manual and not everyone_accepted(manual)
                else CancelReason.NO_SLOT
            )
            return await self._cancel(call, links, reason)

        links = await self._send_reminders(call, links, now)
        manual = manual_links(links)

        if should_cancel_for_no_response(call, links, now):
            reason = CancelReason.DECLINED if has_refusal(manual) else CancelReason.NO_RESPONSE
            return await self._cancel(call, links, reason)

        if manual and not everyone_accepted(manual):
            return CallOutcome.WAITING

        return await self._schedule(call, links, now)

    async def _send_reminders(
        self,
        call: Call,
        links: Sequence[ParticipantLink],
        now: datetime,
    ) -> list[ParticipantLink]:
        """Nudge every manual participant who is due; return the links as updated."""
        updated: list[ParticipantLink] = []
        for link in links:
            if link.has_calendar or not self._reminders.needs_reminder(link, now):
                updated.append(link)
                continue
            if link.access_token is None:
                logger.error("Participant %s has no availability link", link.participant_id)
                updated.append(link)
                continue

            await self._send(link, self._composer.availability_request(call, link))
            recorded = await self._store.record_reminder(
                call.id, link.participant_id, link.reminders_sent, now
            )
            if recorded:
                link = replace(link, reminders_sent=link.reminders_sent + 1, last_reminder_at=now)
            else:
                logger.info("Reminder for %s was recorded concurrently", link.participant_id)
            updated.append(link)
        return updated

    async def _participant_tokens(
        self,
        call: Call,
        links: Sequence[ParticipantLink],
        now: datetime,
    ) -> dict[str, str] | CallOutcome:
        """Fresh tokens for every calendar participant, or the outcome that ends this step."""
        tokens: dict[str, str] = {}
        revoked: list[ParticipantLink] = []
        transient = False
        for link in links:
            if not link.has_calendar:
                continue
            try:
                tokens[link.participant_id] = await self._tokens.get_access_token(
                    link.participant_id, now=now
                )
            except OAuthTokenError as exc:
                if exc.terminal:
                    logger.warning(
                        "Calendar credential unusable for %s: %s",
                        link.participant_id,
                        exc.code.value,
                    )
                    revoked.append(link)
                else:
                    logger.warning(
                        "Calendar credential temporarily unavailable for %s: %s",
                        link.participant_id,
                        exc.code.value,
                    )
                    transient = True

        if revoked:
            return await self._cancel(call, links, CancelReason.CREDENTIALS, reconnect=revoked)
        if transient:
            return CallOutcome.RETRY
        return tokens

    async def _schedule(
        self,
        call: Call,
        links: Sequence[ParticipantLink],
        now: datetime,
    ) -> CallOutcome:
        tokens = await self._participant_tokens(call, links, now)
        if isinstance(tokens, CallOutcome):
            return tokens

        submissions = await self._store.list_submissions(call.id)
        try:
            free = await self._resolver.resolve(call, links, submissions, tokens, now)
        except BusyLookupError as exc:
            if exc.status_code == 401:
                logger.warning("Calendar access rejected for %s", exc.participant_id)
                await self._tokens.discard(exc.participant_id)
                revoked = [link for link in links if link.participant_id == exc.participant_id]
                return await self._cancel(call, links, CancelReason.CREDENTIALS, reconnect=revoked)
            logger.error("Busy lookup failed: %s", exc)
            return CallOutcome.RETRY
        common = intersect_all(free.values())
        window = search_window(call, now, self._search_days)
        slot = select_slot(common, call.duration, now, window.end, self._scheduling)
        if slot is None:
            logger.info("No common slot among %d participants", len(links))
            return await self._cancel(call, links, CancelReason.NO_SLOT)

        try:
            manager_token = await self._tokens.get_access_token(MANAGER_OWNER_KEY, now=now)
        except OAuthTokenError as exc:
            logger.error("Organizer calendar credential unavailable: %s", exc.code.value)
            return CallOutcome.RETRY

        request = EventRequest(
            title=call.title,
            start=slot.start,
            end=slot.end,
            attendees=[link.email for link in links],
            description=call.notes,
            timezone=self._scheduling.tz.key,
            request_id=call.id,
            event_id=event_id_for(call.id),
        )
        try:
            event = await self._provider.create_event(manager_token, request)
        except CalendarError as exc:
            logger.warning("Event creation failed: %s", exc)
            return CallOutcome.RETRY

        moved = await self._store.transition_call(
            call.id,
            CallStatus.PROCESSING,
            CallStatus.SCHEDULED,
            scheduled_at=slot.start,
            meeting_link=event.meeting_link,
            event_id=event.event_id,
        )
        if not moved:
            logger.warning(
                "Call changed state while scheduling; event %s left in place", event.event_id
            )
            return CallOutcome.NOOP

        logger.info("Call scheduled at %s", slot.start.isoformat())
        await self._confirm(call, links, slot, event.meeting_link)
        return CallOutcome.SCHEDULED

    async def _cancel(
        self,
        call: Call,
        links: Sequence[ParticipantLink],
        reason: CancelReason,
        *,
        reconnect: Sequence[ParticipantLink] = (),
    ) -> CallOutcome:
        moved = await self._store.transition_call(call.id, call.status, CallStatus.CANCELED)
        if not moved:
            return CallOutcome.NOOP
        await self._store.cascade_link_status(call.id, ResponseStatus.CANCELED)
        logger.info("Call canceled: %s", reason.name)

        reconnect_ids = {link.participant_id for link in reconnect}
        for link in links:
            if link.participant_id in reconnect_ids:
                await self._send(link, self._composer.reconnect(call, link))
            else:
                await self._send(link, self._composer.cancellation(call, link, reason))
        return CallOutcome.CANCELED

    async def _end(self, call: Call) -> CallOutcome:
        moved = await self._store.transition_call(call.id, CallStatus.SCHEDULED, CallStatus.ENDED)
        if not moved:
            return CallOutcome.NOOP
        await self._store.cascade_link_status(
            call.id, ResponseStatus.ENDED, only_from=(ResponseStatus.WAITING,)
        )
        logger.info("Call ended")
        return CallOutcome.ENDED

    async def _confirm(
        self,
        call: Call,
        links: Sequence[ParticipantLink],
        slot: Interval,
        meeting_link: str | None,
    ) -> None:
        for link in links:
            await self._send(link, self._composer.confirmation(call, link, slot, meeting_link))

    async def _send(self, link: ParticipantLink, message: Message) -> bool:
        return await self._mailer.send_email(
            link.email, message.subject, message.html, message.text
        )


async def run_pending_calls(
    orchestrator: CallOrchestrator,
    store: CallStore,
    now: datetime | None = None,
) -> dict[str, CallOutcome]:
    """Process every call that is not yet canceled or ended, one after another.

    A failure in one call is logged and reported as :attr:`CallOutcome.ERROR`;
    it does not stop the rest of the worklist.
    """
    now = now or datetime.now(UTC)
    outcomes: dict[str, CallOutcome] = {}
    call_ids = await store.list_open_call_ids()
    logger.info("Processing %d open calls", len(call_ids))
    for call_id in call_ids:
        try:
            outcomes[call_id] = await orchestrator.process_call(call_id, now)
        except Exception:
            logger.exception("Processing failed for call %s", call_id)
            outcomes[call_id] = CallOutcome.ERROR
    return outcomes
