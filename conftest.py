"""Root conftest: shared Postgres fixtures for the integration tests.

Database-backed tests share one testcontainers Postgres server per session and
provision a fresh, fully migrated database per fixture use.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

_TEARDOWN_TRANSIENT_SNIPPETS = (
    "did not receive an exit event",
    "is already in progress",
    "no such container",
    "is dead or marked for removal",
)
_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


def _safe_exception_text(exc: BaseException) -> str:
    explanation_text = str(getattr(exc, "explanation", "") or "")
    return " ".join(part for part in (explanation_text, str(exc)) if part)


def _is_transient_testcontainer_teardown_error(exc: BaseException) -> bool:
    """True for known transient Docker API teardown races from force-remove."""
    from docker.errors import APIError
    from requests.exceptions import ReadTimeout

    if isinstance(exc, ReadTimeout):
        return True
    if not isinstance(exc, APIError):
        return False

    status_code = getattr(getattr(exc, "response", None), "status_code", None)
    if status_code != 500:
        return False

    error_text = _safe_exception_text(exc).lower()
    return any(marker in error_text for marker in _TEARDOWN_TRANSIENT_SNIPPETS)


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_testcontainer_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                _safe_exception_text(exc),
            )
            time.sleep(delay)
            delay *= 2


def _patch_testcontainers_stop_with_retry() -> None:
    """Patch testcontainers stop() to tolerate transient Docker daemon races."""
    from testcontainers.core.container import DockerContainer

    if getattr(DockerContainer.stop, "_callagent_retry_patch", False):
        return

    original_stop = DockerContainer.stop

    def _stop_with_retry(self: Any, force: bool = True, delete_volume: bool = True) -> None:
        _retry_testcontainer_stop(
            lambda: original_stop(self, force=force, delete_volume=delete_volume)
        )

    _stop_with_retry._callagent_retry_patch = True  # type: ignore[attr-defined]
    DockerContainer.stop = _stop_with_retry


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Isolation contract:
    - Shared: Docker container process and server instance (session scope).
    - Reset per test fixture usage: each helper call provisions a new database with
      a random name, so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")

    from testcontainers.postgres import PostgresContainer

    _patch_testcontainers_stop_with_retry()
    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, migrated database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from callagent.db import Database
    from callagent.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
        migrate: bool = True,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        if migrate:
            await run_migrations(db.dsn)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
