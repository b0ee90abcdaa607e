"""Assembles the scheduling engine from configuration.

Usage::

    config = load_config("callagent.toml")
    async with CallAgent(config) as agent:
        outcomes = await agent.run_pending()

The caller decides when to run; typically an external scheduler triggers
:meth:`CallAgent.run_pending` every few minutes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from types import TracebackType

import httpx

from callagent.config import AgentConfig
from callagent.core.logging import configure_logging
from callagent.core.orchestrator import CallOrchestrator, CallOutcome, run_pending_calls
from callagent.core.reminders import ReminderPolicy
from callagent.core.slots import SchedulingPolicy
from callagent.core.tokens import TokenGuard
from callagent.credential_store import PostgresTokenStore
from callagent.db import Database
from callagent.google_credentials import load_google_app_credentials
from callagent.migrations import run_migrations
from callagent.notifications.email import SmtpMailer
from callagent.notifications.messages import MessageComposer
from callagent.providers.google import GoogleCalendarProvider, GoogleOAuthClient
from callagent.storage.calls import PostgresCallStore

logger = logging.getLogger(__name__)


class CallAgent:
    """Owns the database pool, the HTTP client and the orchestrator built on them."""

    def __init__(self, config: AgentConfig, *, migrate: bool = True) -> None:
        self.config = config
        self._migrate = migrate
        self._db: Database | None = None
        self._http_client: httpx.AsyncClient | None = None
        self._provider: GoogleCalendarProvider | None = None
        self.store: PostgresCallStore | None = None
        self.tokens: PostgresTokenStore | None = None
        self.orchestrator: CallOrchestrator | None = None

    async def start(self) -> None:
        cfg = self.config
        configure_logging(
            level=cfg.logging.level,
            fmt=cfg.logging.format,
            log_root=Path(cfg.logging.log_root) if cfg.logging.log_root else None,
        )
        credentials = load_google_app_credentials(cfg.google)

        db = Database(
            db_name=cfg.database.name,
            host=cfg.database.host,
            port=cfg.database.port,
            user=cfg.database.user,
            password=cfg.database.password,
            ssl=cfg.database.ssl,
            min_pool_size=cfg.database.min_pool_size,
            max_pool_size=cfg.database.max_pool_size,
        )
        await db.provision()
        if self._migrate:
            await run_migrations(db.dsn)
        pool = await db.connect()
        self._db = db

        self._http_client = httpx.AsyncClient(timeout=30.0)
        self._provider = GoogleCalendarProvider(self._http_client)
        self.store = PostgresCallStore(pool)
        self.tokens = PostgresTokenStore(pool)

        scheduling = SchedulingPolicy()
        self.orchestrator = CallOrchestrator(
            self.store,
            TokenGuard(self.tokens, GoogleOAuthClient(credentials, self._http_client)),
            self._provider,
            SmtpMailer(cfg.email),
            MessageComposer(cfg.links.base_url, scheduling.tz),
            reminder_policy=ReminderPolicy(
                interval=timedelta(hours=cfg.reminders.interval_hours),
                max_reminders=cfg.reminders.max_reminders,
            ),
            scheduling_policy=scheduling,
            search_days=cfg.search_days,
        )
        logger.info("Call agent started")

    async def stop(self) -> None:
        if self._provider is not None:
            await self._provider.shutdown()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        if self._db is not None:
            await self._db.close()
            self._db = None
        self.orchestrator = None
        logger.info("Call agent stopped")

    async def __aenter__(self) -> CallAgent:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    def _require_started(self) -> tuple[CallOrchestrator, PostgresCallStore]:
        if self.orchestrator is None or self.store is None:
            raise RuntimeError("CallAgent is not started")
        return self.orchestrator, self.store

    async def process_call(self, call_id: str, now: datetime | None = None) -> CallOutcome:
        orchestrator, _ = self._require_started()
        return await orchestrator.process_call(call_id, now)

    async def run_pending(self, now: datetime | None = None) -> dict[str, CallOutcome]:
        orchestrator, store = self._require_started()
        return await run_pending_calls(orchestrator, store, now)
