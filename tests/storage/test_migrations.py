"""Integration tests for the core Alembic chain.

Covers:
- Upgrading an empty database creates every scheduling table, index and constraint
- Upgrading twice is a no-op
- Table-level CHECK constraints reject invalid calls

Requires Docker; skipped otherwise.
"""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError

from callagent.migrations import run_migrations, upgrade_to_head
from callagent.testing.migration import (
    constraint_exists,
    create_migration_db,
    index_exists,
    migration_db_name,
    table_exists,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def migrated_db_url(postgres_container) -> str:
    db_url = create_migration_db(postgres_container, migration_db_name())
    upgrade_to_head(db_url)
    return db_url


def test_creates_tables(migrated_db_url):
    for table in ("calls", "call_participants", "availability_submissions", "oauth_tokens"):
        assert table_exists(migrated_db_url, table), table
    assert table_exists(migrated_db_url, "alembic_version")


def test_creates_indexes_and_constraints(migrated_db_url):
    assert index_exists(migrated_db_url, "ix_calls_status")
    assert index_exists(migrated_db_url, "ix_availability_submissions_participant")
    assert constraint_exists(
        migrated_db_url, "call_participants", "call_participants_access_token_key"
    )
    assert constraint_exists(migrated_db_url, "calls", "calls_duration_check")
    assert constraint_exists(migrated_db_url, "calls", "calls_deadline_check")


async def test_upgrade_is_idempotent(migrated_db_url):
    await run_migrations(migrated_db_url)
    engine = create_engine(migrated_db_url)
    with engine.connect() as conn:
        versions = conn.execute(text("SELECT version_num FROM alembic_version")).scalars().all()
    engine.dispose()
    assert versions == ["core_001"]


@pytest.mark.parametrize(
    ("duration", "deadline_offset"),
    [(25, "1 day"), (30, "-1 day")],
)
def test_rejects_invalid_calls(migrated_db_url, duration, deadline_offset):
    engine = create_engine(migrated_db_url)
    try:
        with pytest.raises(IntegrityError):
            with engine.begin() as conn:
                conn.execute(
                    text(
                        "INSERT INTO calls (title, kind, duration_minutes, deadline) "
                        "VALUES ('x', 'screening', :duration, now() + CAST(:offset AS interval))"
                    ),
                    {"duration": duration, "offset": deadline_offset},
                )
    finally:
        engine.dispose()
