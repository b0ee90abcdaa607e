"""create_scheduling_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calls (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            title TEXT NOT NULL,
            kind TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'processing',
            duration_minutes INTEGER NOT NULL,
            deadline TIMESTAMPTZ,
            scheduled_at TIMESTAMPTZ,
            notes TEXT,
            meeting_link TEXT,
            event_id TEXT,
            organizer_email TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calls_duration_check CHECK (duration_minutes IN (30, 45, 60)),
            CONSTRAINT calls_status_check
                CHECK (status IN ('processing', 'scheduled', 'canceled', 'ended')),
            CONSTRAINT calls_deadline_check CHECK (deadline IS NULL OR deadline > created_at)
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calls_status
        ON calls (status)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS call_participants (
            call_id UUID NOT NULL REFERENCES calls (id) ON DELETE CASCADE,
            participant_id TEXT NOT NULL,
            name TEXT NOT NULL,
            email TEXT NOT NULL,
            has_calendar BOOLEAN NOT NULL DEFAULT false,
            calendar_id TEXT NOT NULL DEFAULT 'primary',
            response_status TEXT NOT NULL DEFAULT 'waiting',
            access_token TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            last_reminder_at TIMESTAMPTZ,
            reminders_sent INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (call_id, participant_id),
            CONSTRAINT call_participants_access_token_key UNIQUE (access_token)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS availability_submissions (
            id BIGSERIAL PRIMARY KEY,
            call_id UUID NOT NULL,
            participant_id TEXT NOT NULL,
            start_at TIMESTAMPTZ NOT NULL,
            duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            FOREIGN KEY (call_id, participant_id)
                REFERENCES call_participants (call_id, participant_id) ON DELETE CASCADE
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_availability_submissions_participant
        ON availability_submissions (call_id, participant_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS oauth_tokens (
            owner_key TEXT PRIMARY KEY,
            provider TEXT NOT NULL DEFAULT 'google',
            access_token TEXT,
            refresh_token TEXT,
            expires_at TIMESTAMPTZ,
            scope TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS oauth_tokens")
    op.execute("DROP TABLE IF EXISTS availability_submissions")
    op.execute("DROP TABLE IF EXISTS call_participants")
    op.execute("DROP TABLE IF EXISTS calls")
