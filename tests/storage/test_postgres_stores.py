"""Integration tests for the asyncpg-backed stores against a real Postgres.

Covers:
- create_call / submit_availability round trip through PostgresCallStore
- Conditional call transitions: only one of two competing writers wins
- Link status updates, cascades and reminder compare-and-set
- submit_batch: one of two racing batches lands; a failed insert rolls back the status
- reset_link drops the participant's windows
- Access token uniqueness surfaces as TokenConflictError, nothing inserted
- PostgresTokenStore optimistic refresh and upsert semantics

Requires Docker; skipped otherwise.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import asyncpg
import pytest

from callagent.calls import ParticipantInput, create_call, submit_availability
from callagent.credential_store import OAuthTokenRecord, PostgresTokenStore
from callagent.models import (
    AvailabilitySubmission,
    Call,
    CallKind,
    CallStatus,
    ParticipantLink,
    ResponseStatus,
)
from callagent.storage.calls import PostgresCallStore, TokenConflictError

pytestmark = pytest.mark.integration


def _record(owner_key: str, **overrides) -> OAuthTokenRecord:
    values = {
        "owner_key": owner_key,
        "provider": "google",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": datetime.now(UTC) + timedelta(hours=1),
        "scope": "https://www.googleapis.com/auth/calendar",
        "updated_at": datetime.now(UTC),
    }
    values.update(overrides)
    return OAuthTokenRecord(**values)


def _call(now: datetime) -> Call:
    return Call(
        id=str(uuid.uuid4()),
        title="Sync",
        created_at=now,
        status=CallStatus.PROCESSING,
        kind=CallKind.VALIDATION,
        duration_minutes=30,
        deadline=now + timedelta(days=7),
    )


def _link(call: Call, participant_id: str, token: str | None) -> ParticipantLink:
    return ParticipantLink(
        call_id=call.id,
        participant_id=participant_id,
        name=participant_id,
        email=participant_id,
        has_calendar=token is None,
        access_token=token,
        created_at=call.created_at,
    )


async def test_create_call_and_submit(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        tokens = PostgresTokenStore(pool)
        await tokens.upsert(_record("ann@example.com"))
        now = datetime.now(UTC)

        call, links = await create_call(
            store,
            tokens,
            {
                "title": "Screening",
                "kind": "screening",
                "duration_minutes": 30,
                "deadline": now + timedelta(days=10),
                "participants": [
                    {"name": "Ann", "email": "ann@example.com"},
                    {"name": "Max", "email": "max@example.org"},
                ],
            },
            organizer=ParticipantInput(name="Olga", email="olga@example.com"),
            now=now,
        )

        stored = await store.get_call(call.id)
        assert stored is not None
        assert stored.status is CallStatus.PROCESSING
        assert stored.organizer_email == "olga@example.com"
        assert call.id in await store.list_open_call_ids()

        by_id = {link.participant_id: link for link in await store.list_links(call.id)}
        assert set(by_id) == {"ann@example.com", "max@example.org", "olga@example.com"}
        assert by_id["ann@example.com"].has_calendar
        assert by_id["ann@example.com"].access_token is None
        max_token = by_id["max@example.org"].access_token
        assert max_token is not None
        assert len(links) == 3

        start = now + timedelta(days=2)
        await submit_availability(
            store, max_token, [{"start": start, "duration_minutes": 90}], now=now
        )
        submissions = await store.list_submissions(call.id)
        assert [(s.participant_id, s.duration_minutes) for s in submissions] == [
            ("max@example.org", 90)
        ]
        assert submissions[0].start == start
        link = await store.get_link_by_token(max_token)
        assert link.response_status is ResponseStatus.ACCEPTED


async def test_only_one_transition_wins(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        call = _call(datetime.now(UTC))
        await store.insert_call(call)

        results = await asyncio.gather(
            store.transition_call(
                call.id,
                CallStatus.PROCESSING,
                CallStatus.SCHEDULED,
                scheduled_at=call.created_at + timedelta(days=1),
                event_id="evt-1",
            ),
            store.transition_call(call.id, CallStatus.PROCESSING, CallStatus.CANCELED),
        )

        assert sorted(results) == [False, True]
        stored = await store.get_call(call.id)
        if results[0]:
            assert stored.status is CallStatus.SCHEDULED
            assert stored.event_id == "evt-1"
        else:
            assert stored.status is CallStatus.CANCELED
            assert stored.event_id is None


def _submission(call: Call, participant_id: str, hours: int, minutes: int = 30):
    return AvailabilitySubmission(
        call_id=call.id,
        participant_id=participant_id,
        start=call.created_at + timedelta(hours=hours),
        duration_minutes=minutes,
    )


async def test_only_one_batch_wins(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        call = _call(datetime.now(UTC))
        await store.insert_call(call)
        await store.insert_links([_link(call, "max@example.org", "tok-max")])

        first = [_submission(call, "max@example.org", 24)]
        second = [_submission(call, "max@example.org", 48)]

        results = await asyncio.gather(
            store.submit_batch(call.id, "max@example.org", first),
            store.submit_batch(call.id, "max@example.org", second),
        )

        assert sorted(results) == [False, True]
        submissions = await store.list_submissions(call.id)
        assert len(submissions) == 1
        [link] = await store.list_links(call.id)
        assert link.response_status is ResponseStatus.ACCEPTED


async def test_failed_batch_rolls_back(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        call = _call(datetime.now(UTC))
        await store.insert_call(call)
        await store.insert_links([_link(call, "max@example.org", "tok-max")])
        batch = [
            _submission(call, "max@example.org", 24),
            _submission(call, "max@example.org", 48, minutes=0),
        ]

        with pytest.raises(asyncpg.CheckViolationError):
            await store.submit_batch(call.id, "max@example.org", batch)

        [link] = await store.list_links(call.id)
        assert link.response_status is ResponseStatus.WAITING
        assert await store.list_submissions(call.id) == []
        assert await store.submit_batch(
            call.id, "max@example.org", [_submission(call, "max@example.org", 24)]
        )


async def test_reset_link_drops_windows(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        call = _call(datetime.now(UTC))
        await store.insert_call(call)
        await store.insert_links(
            [_link(call, "max@example.org", "tok-max"), _link(call, "eve@example.org", "tok-eve")]
        )
        for participant_id, hours in (("max@example.org", 24), ("eve@example.org", 30)):
            batch = [_submission(call, participant_id, hours)]
            await store.submit_batch(call.id, participant_id, batch)

        await store.reset_link(call.id, "max@example.org")

        assert [s.participant_id for s in await store.list_submissions(call.id)] == [
            "eve@example.org"
        ]
        link = await store.get_link_by_token("tok-max")
        assert link.response_status is ResponseStatus.WAITING


async def test_link_updates(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        call = _call(datetime.now(UTC))
        await store.insert_call(call)
        await store.insert_links(
            [_link(call, "a@example.com", "tok-a"), _link(call, "b@example.com", None)]
        )

        assert await store.set_link_status(
            call.id, "a@example.com", ResponseStatus.ACCEPTED, expected=ResponseStatus.WAITING
        )
        assert not await store.set_link_status(
            call.id, "a@example.com", ResponseStatus.DECLINED, expected=ResponseStatus.WAITING
        )

        sent_at = datetime.now(UTC)
        assert await store.record_reminder(call.id, "b@example.com", 0, sent_at)
        assert not await store.record_reminder(call.id, "b@example.com", 0, sent_at)

        changed = await store.cascade_link_status(
            call.id, ResponseStatus.ENDED, only_from=[ResponseStatus.WAITING]
        )
        assert changed == 1

        links = {link.participant_id: link for link in await store.list_links(call.id)}
        assert links["a@example.com"].response_status is ResponseStatus.ACCEPTED
        assert links["b@example.com"].response_status is ResponseStatus.ENDED
        assert links["b@example.com"].reminders_sent == 1

        await store.reset_link(call.id, "b@example.com")
        links = {link.participant_id: link for link in await store.list_links(call.id)}
        reset = links["b@example.com"]
        assert reset.response_status is ResponseStatus.WAITING
        assert reset.reminders_sent == 0
        assert reset.last_reminder_at is None


async def test_duplicate_token_rejected_atomically(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        first = _call(datetime.now(UTC))
        second = _call(datetime.now(UTC))
        await store.insert_call(first)
        await store.insert_call(second)
        await store.insert_links([_link(first, "a@example.com", "shared")])

        with pytest.raises(TokenConflictError):
            await store.insert_links(
                [
                    _link(second, "b@example.com", "unique"),
                    _link(second, "c@example.com", "shared"),
                ]
            )
        assert await store.list_links(second.id) == []


async def test_delete_call_cascades(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresCallStore(pool)
        call = _call(datetime.now(UTC))
        await store.insert_call(call)
        await store.insert_links([_link(call, "a@example.com", "tok-a")])

        await store.delete_call(call.id)

        assert await store.get_call(call.id) is None
        assert await store.get_link_by_token("tok-a") is None


async def test_token_store_optimistic_refresh(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        tokens = PostgresTokenStore(pool)
        await tokens.upsert(_record("ann@example.com"))
        record = await tokens.get("ann@example.com")
        assert record is not None

        expires = datetime.now(UTC) + timedelta(hours=2)
        assert await tokens.update_if_unchanged(
            "ann@example.com", record.updated_at, access_token="access-2", expires_at=expires
        )
        # the stale version stamp no longer matches
        assert not await tokens.update_if_unchanged(
            "ann@example.com", record.updated_at, access_token="access-3", expires_at=expires
        )

        refreshed = await tokens.get("ann@example.com")
        assert refreshed.access_token == "access-2"
        assert refreshed.refresh_token == "refresh-1"
        assert refreshed.updated_at > record.updated_at


async def test_token_store_upsert_and_delete(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        tokens = PostgresTokenStore(pool)
        await tokens.upsert(_record("ann@example.com"))
        await tokens.upsert(_record("ann@example.com", access_token="new", refresh_token=None))

        record = await tokens.get("ann@example.com")
        assert record.access_token == "new"
        assert record.refresh_token == "refresh-1"

        owners = await tokens.owners_with_tokens(["ann@example.com", "max@example.org"])
        assert owners == {"ann@example.com"}
        assert await tokens.owners_with_tokens([]) == set()

        await tokens.delete("ann@example.com")
        assert await tokens.get("ann@example.com") is None
