"""Postgres connection settings and the shared asyncpg pool.

The agent keeps one pool for its stores. :meth:`Database.provision` creates
the target database on first start so migrations have somewhere to run.
"""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "callagent"

_SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})


def _ssl_mode(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode %r", value)
        return None
    return mode


def db_params_from_env() -> dict[str, str | int | None]:
    """Connection settings from ``DATABASE_URL``, else the ``POSTGRES_*`` variables."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        url = urlparse(database_url)
        return {
            "host": url.hostname or "localhost",
            "port": url.port or 5432,
            "user": url.username or "callagent",
            "password": url.password or "callagent",
            "db_name": url.path.lstrip("/") or None,
            "ssl": _ssl_mode(parse_qs(url.query).get("sslmode", [None])[0]),
        }
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "callagent"),
        "password": os.environ.get("POSTGRES_PASSWORD", "callagent"),
        "db_name": os.environ.get("POSTGRES_DB"),
        "ssl": _ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


class Database:
    """Owns the asyncpg pool the call and token stores share."""

    def __init__(
        self,
        db_name: str = DEFAULT_DB_NAME,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @property
    def dsn(self) -> str:
        """URL form of these settings, as the migration runner expects."""
        url = f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db_name}"
        if self.ssl is not None:
            url += f"?sslmode={self.ssl}"
        return url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance database if missing."""
        conn = await asyncpg.connect(**self._connect_kwargs("postgres"))
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                return
            # CREATE DATABASE takes no bind parameters.
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        self.pool = await asyncpg.create_pool(
            **self._connect_kwargs(self.db_name),
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
        )
        logger.info("Connection pool open for %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Connection pool closed for %s", self.db_name)
