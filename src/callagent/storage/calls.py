"""Row store for calls, participant links and availability submissions.

Every state change is a conditional UPDATE keyed on the value the caller
last read, so concurrent writers cannot both apply the same transition. The
boolean returned by those methods tells the caller whether it won.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

import asyncpg

from callagent.models import (
    AvailabilitySubmission,
    Call,
    CallStatus,
    ParticipantLink,
    ResponseStatus,
)

logger = logging.getLogger(__name__)

_ACCESS_TOKEN_CONSTRAINT = "call_participants_access_token_key"

_CALL_COLUMNS = """
    id, title, created_at, status, kind, duration_minutes, deadline,
    scheduled_at, notes, meeting_link, event_id, organizer_email
"""

_LINK_COLUMNS = """
    call_id, participant_id, name, email, has_calendar, calendar_id,
    response_status, access_token, created_at, last_reminder_at, reminders_sent
"""


class TokenConflictError(Exception):
    """Raised when a generated participant access token collides with an existing one."""


@runtime_checkable
class CallStore(Protocol):
    """Persistence boundary the orchestrator and intake functions rely on."""

    async def get_call(self, call_id: str) -> Call | None: ...

    async def list_open_call_ids(self) -> list[str]: ...

    async def insert_call(self, call: Call) -> None: ...

    async def delete_call(self, call_id: str) -> None: ...

    async def transition_call(
        self,
        call_id: str,
        expected: CallStatus,
        new: CallStatus,
        *,
        scheduled_at: datetime | None = None,
        meeting_link: str | None = None,
        event_id: str | None = None,
    ) -> bool: ...

    async def list_links(self, call_id: str) -> list[ParticipantLink]: ...

    async def get_link_by_token(self, access_token: str) -> ParticipantLink | None: ...

    async def insert_links(self, links: Sequence[ParticipantLink]) -> None: ...

    async def set_link_status(
        self,
        call_id: str,
        participant_id: str,
        new: ResponseStatus,
        *,
        expected: ResponseStatus | None = None,
    ) -> bool: ...

    async def cascade_link_status(
        self,
        call_id: str,
        new: ResponseStatus,
        *,
        only_from: Collection[ResponseStatus] | None = None,
    ) -> int: ...

    async def record_reminder(
        self,
        call_id: str,
        participant_id: str,
        expected_count: int,
        sent_at: datetime,
    ) -> bool: ...

    async def reset_link(self, call_id: str, participant_id: str) -> None: ...

    async def list_submissions(self, call_id: str) -> list[AvailabilitySubmission]: ...

    async def submit_batch(
        self,
        call_id: str,
        participant_id: str,
        submissions: Sequence[AvailabilitySubmission],
    ) -> bool: ...


class PostgresCallStore:
    """asyncpg-backed :class:`CallStore`.

    Parameters
    ----------
    pool:
        An asyncpg connection pool with the scheduling tables migrated.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def get_call(self, call_id: str) -> Call | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CALL_COLUMNS} FROM calls WHERE id = $1::uuid",
            call_id,
        )
        return Call.from_row(row) if row is not None else None

    async def list_open_call_ids(self) -> list[str]:
        """Ids of every call that is not canceled or ended, oldest first."""
        rows = await self._pool.fetch(
            """
            SELECT id FROM calls
            WHERE status NOT IN ('canceled', 'ended')
            ORDER BY created_at, id
            """
        )
        return [str(row["id"]) for row in rows]

    async def insert_call(self, call: Call) -> None:
        await self._pool.execute(
            """
            INSERT INTO calls
                (id, title, created_at, status, kind, duration_minutes, deadline,
                 scheduled_at, notes, meeting_link, event_id, organizer_email)
            VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            """,
            call.id,
            call.title,
            call.created_at,
            call.status.value,
            call.kind.value,
            call.duration_minutes,
            call.deadline,
            call.scheduled_at,
            call.notes,
            call.meeting_link,
            call.event_id,
            call.organizer_email,
        )
        logger.info("Call created: %s", call.id)

    async def delete_call(self, call_id: str) -> None:
        await self._pool.execute("DELETE FROM calls WHERE id = $1::uuid", call_id)
        logger.info("Call deleted: %s", call_id)

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
        """Move a call from *expected* to *new* status.

        Optional fields are only written when given. Returns False when the
        call was no longer in *expected* status.
        """
        result = await self._pool.fetchval(
            """
            UPDATE calls
            SET status = $3,
                scheduled_at = COALESCE($4, scheduled_at),
                meeting_link = COALESCE($5, meeting_link),
                event_id = COALESCE($6, event_id)
            WHERE id = $1::uuid AND status = $2
            RETURNING id
            """,
            call_id,
            expected.value,
            new.value,
            scheduled_at,
            meeting_link,
            event_id,
        )
        return result is not None

    # ------------------------------------------------------------------
    # Participant links
    # ------------------------------------------------------------------

    async def list_links(self, call_id: str) -> list[ParticipantLink]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_LINK_COLUMNS} FROM call_participants
            WHERE call_id = $1::uuid
            ORDER BY created_at, participant_id
            """,
            call_id,
        )
        return [ParticipantLink.from_row(row) for row in rows]

    async def get_link_by_token(self, access_token: str) -> ParticipantLink | None:
        row = await self._pool.fetchrow(
            f"SELECT {_LINK_COLUMNS} FROM call_participants WHERE access_token = $1",
            access_token,
        )
        return ParticipantLink.from_row(row) if row is not None else None

    async def insert_links(self, links: Sequence[ParticipantLink]) -> None:
        """Insert all *links* atomically.

        Raises
        ------
        TokenConflictError
            If any access token already exists; nothing is inserted.
        """
        records = [
            (
                link.call_id,
                link.participant_id,
                link.name,
                link.email,
                link.has_calendar,
                link.calendar_id,
                link.response_status.value,
                link.access_token,
                link.created_at,
                link.last_reminder_at,
                link.reminders_sent,
            )
            for link in links
        ]
        async with self._pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.executemany(
                        """
                        INSERT INTO call_participants
                            (call_id, participant_id, name, email, has_calendar,
                             calendar_id, response_status, access_token,
                             created_at, last_reminder_at, reminders_sent)
                        VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8,
                                COALESCE($9, now()), $10, $11)
                        """,
                        records,
                    )
            except asyncpg.UniqueViolationError as exc:
                if exc.constraint_name == _ACCESS_TOKEN_CONSTRAINT:
                    raise TokenConflictError("participant access token already in use") from exc
                raise

    async def set_link_status(
        self,
        call_id: str,
        participant_id: str,
        new: ResponseStatus,
        *,
        expected: ResponseStatus | None = None,
    ) -> bool:
        """Set one link's status, optionally only if it currently is *expected*."""
        result = await self._pool.fetchval(
            """
            UPDATE call_participants
            SET response_status = $3
            WHERE call_id = $1::uuid
              AND participant_id = $2
              AND ($4::text IS NULL OR response_status = $4::text)
            RETURNING participant_id
            """,
            call_id,
            participant_id,
            new.value,
            expected.value if expected is not None else None,
        )
        return result is not None

    async def cascade_link_status(
        self,
        call_id: str,
        new: ResponseStatus,
        *,
        only_from: Collection[ResponseStatus] | None = None,
    ) -> int:
        """Set every link of a call to *new*; restrict to *only_from* statuses if given."""
        from_values = [s.value for s in only_from] if only_from is not None else None
        status = await self._pool.execute(
            """
            UPDATE call_participants
            SET response_status = $2
            WHERE call_id = $1::uuid
              AND ($3::text[] IS NULL OR response_status = ANY($3::text[]))
            """,
            call_id,
            new.value,
            from_values,
        )
        # asyncpg returns e.g. "UPDATE 3"
        return int(status.split()[-1]) if status else 0

    async def record_reminder(
        self,
        call_id: str,
        participant_id: str,
        expected_count: int,
        sent_at: datetime,
    ) -> bool:
        """Bump the reminder counter if it still equals *expected_count*."""
        result = await self._pool.fetchval(
            """
            UPDATE call_participants
            SET reminders_sent = reminders_sent + 1,
                last_reminder_at = $4
            WHERE call_id = $1::uuid
              AND participant_id = $2
              AND reminders_sent = $3
            RETURNING reminders_sent
            """,
            call_id,
            participant_id,
            expected_count,
            sent_at,
        )
        return result is not None

    async def reset_link(self, call_id: str, participant_id: str) -> None:
        """Put a link back to ``waiting`` with a fresh reminder budget.

        The participant's submitted windows are dropped in the same
        transaction, so a link is never ``waiting`` while still holding a batch.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE call_participants
                    SET response_status = 'waiting',
                        reminders_sent = 0,
                        last_reminder_at = NULL
                    WHERE call_id = $1::uuid AND participant_id = $2
                    """,
                    call_id,
                    participant_id,
                )
                await conn.execute(
                    """
                    DELETE FROM availability_submissions
                    WHERE call_id = $1::uuid AND participant_id = $2
                    """,
                    call_id,
                    participant_id,
                )

    # ------------------------------------------------------------------
    # Availability submissions
    # ------------------------------------------------------------------

    async def list_submissions(self, call_id: str) -> list[AvailabilitySubmission]:
        rows = await self._pool.fetch(
            """
            SELECT call_id, participant_id, start_at, duration_minutes
            FROM availability_submissions
            WHERE call_id = $1::uuid
            ORDER BY participant_id, start_at
            """,
            call_id,
        )
        return [
            AvailabilitySubmission(
                call_id=str(row["call_id"]),
                participant_id=row["participant_id"],
                start=row["start_at"],
                duration_minutes=int(row["duration_minutes"]),
            )
            for row in rows
        ]

    async def submit_batch(
        self,
        call_id: str,
        participant_id: str,
        submissions: Sequence[AvailabilitySubmission],
    ) -> bool:
        """Store a participant's windows and mark the link ``accepted``.

        Applies only while the link is ``waiting`` with no stored windows; the
        status flip and the inserts commit together. Returns False, writing
        nothing, when another batch got there first.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                flipped = await conn.fetchval(
                    """
                    UPDATE call_participants
                    SET response_status = 'accepted'
                    WHERE call_id = $1::uuid
                      AND participant_id = $2
                      AND response_status = 'waiting'
                      AND NOT EXISTS (
                          SELECT 1 FROM availability_submissions
                          WHERE call_id = $1::uuid AND participant_id = $2
                      )
                    RETURNING participant_id
                    """,
                    call_id,
                    participant_id,
                )
                if flipped is None:
                    return False
                await conn.executemany(
                    """
                    INSERT INTO availability_submissions
                        (call_id, participant_id, start_at, duration_minutes)
                    VALUES ($1::uuid, $2, $3, $4)
                    """,
                    [
                        (s.call_id, s.participant_id, s.start, s.duration_minutes)
                        for s in submissions
                    ],
                )
        return True
