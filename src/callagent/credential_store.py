"""OAuth token store backed by the ``oauth_tokens`` table.

One row per owner. Participants are keyed by their normalized e-mail; the
shared organizer identity that creates calendar events lives under the
sentinel key :data:`MANAGER_OWNER_KEY`.

Updates are optimistic: the writer passes the ``updated_at`` it read and the
row only changes if nobody else refreshed it in between.

Note: raw token values are NEVER exposed by ``__repr__`` or written to logs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

MANAGER_OWNER_KEY = "__manager__"
GOOGLE_PROVIDER = "google"


def normalize_owner_key(email: str) -> str:
    """Lower-case and strip an e-mail so it can be used as an owner key."""
    return email.strip().lower()


# ---------------------------------------------------------------------------
# OAuthTokenRecord dataclass
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokenRecord:
    """Stored OAuth credentials for one owner.

    Attributes
    ----------
    owner_key:
        Normalized e-mail, or :data:`MANAGER_OWNER_KEY`.
    provider:
        Issuer name, currently always ``"google"``.
    access_token:
        Last known access token, if any.
    refresh_token:
        Long-lived refresh token, if the consent flow returned one.
    expires_at:
        Absolute expiry of *access_token*.
    scope:
        Space-separated granted scopes.
    updated_at:
        Version stamp used for optimistic concurrency.
    """

    owner_key: str
    provider: str
    access_token: str | None
    refresh_token: str | None
    expires_at: datetime | None
    scope: str | None
    updated_at: datetime

    def __repr__(self) -> str:
        return (
            f"OAuthTokenRecord("
            f"owner_key={self.owner_key!r}, "
            f"provider={self.provider!r}, "
            f"has_access_token={self.access_token is not None!r}, "
            f"has_refresh_token={self.refresh_token is not None!r}, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__

    @classmethod
    def from_row(cls, row: Any) -> OAuthTokenRecord:
        return cls(
            owner_key=row["owner_key"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            scope=row["scope"],
            updated_at=row["updated_at"],
        )


class TokenStore(Protocol):
    """Persistence boundary used by the token freshness guard."""

    async def get(self, owner_key: str) -> OAuthTokenRecord | None: ...

    async def update_if_unchanged(
        self,
        owner_key: str,
        expected_updated_at: datetime,
        *,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool: ...

    async def delete(self, owner_key: str) -> None: ...

    async def owners_with_tokens(self, owner_keys: Iterable[str]) -> set[str]: ...

    async def upsert(self, record: OAuthTokenRecord) -> None: ...


# ---------------------------------------------------------------------------
# PostgresTokenStore
# ---------------------------------------------------------------------------


class PostgresTokenStore:
    """Async token store backed by the ``oauth_tokens`` DB table.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    def __repr__(self) -> str:
        return "PostgresTokenStore(pool=<asyncpg.Pool>)"

    async def get(self, owner_key: str) -> OAuthTokenRecord | None:
        """Load the record for *owner_key*, or None if the owner never connected."""
        row = await self._pool.fetchrow(
            """
            SELECT owner_key, provider, access_token, refresh_token,
                   expires_at, scope, updated_at
            FROM oauth_tokens
            WHERE owner_key = $1
            """,
            owner_key,
        )
        if row is None:
            return None
        return OAuthTokenRecord.from_row(row)

    async def update_if_unchanged(
        self,
        owner_key: str,
        expected_updated_at: datetime,
        *,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool:
        """Write refreshed credentials if the row still carries *expected_updated_at*.

        A ``None`` *refresh_token* keeps the stored one.

        Returns
        -------
        bool
            True if the row was updated, False if another writer got there first.
        """
        result = await self._pool.fetchval(
            """
            UPDATE oauth_tokens
            SET access_token = $3,
                expires_at = $4,
                refresh_token = COALESCE($5, refresh_token),
                updated_at = clock_timestamp()
            WHERE owner_key = $1 AND updated_at = $2
            RETURNING owner_key
            """,
            owner_key,
            expected_updated_at,
            access_token,
            expires_at,
            refresh_token,
        )
        updated = result is not None
        if updated:
            logger.debug("OAuth token refreshed for owner %s", owner_key)
        else:
            logger.info("OAuth token for owner %s was refreshed concurrently", owner_key)
        return updated

    async def delete(self, owner_key: str) -> None:
        """Remove the record for *owner_key* (no-op if absent)."""
        await self._pool.execute("DELETE FROM oauth_tokens WHERE owner_key = $1", owner_key)
        logger.info("OAuth token deleted for owner %s", owner_key)

    async def owners_with_tokens(self, owner_keys: Iterable[str]) -> set[str]:
        """Return the subset of *owner_keys* that have a stored record."""
        keys = list(owner_keys)
        if not keys:
            return set()
        rows = await self._pool.fetch(
            "SELECT owner_key FROM oauth_tokens WHERE owner_key = ANY($1::text[])",
            keys,
        )
        return {row["owner_key"] for row in rows}

    async def upsert(self, record: OAuthTokenRecord) -> None:
        """Insert or replace the record for ``record.owner_key``."""
        await self._pool.execute(
            """
            INSERT INTO oauth_tokens
                (owner_key, provider, access_token, refresh_token, expires_at, scope,
                 updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, clock_timestamp())
            ON CONFLICT (owner_key) DO UPDATE SET
                provider = EXCLUDED.provider,
                access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, oauth_tokens.refresh_token),
                expires_at = EXCLUDED.expires_at,
                scope = EXCLUDED.scope,
                updated_at = EXCLUDED.updated_at
            """,
            record.owner_key,
            record.provider,
            record.access_token,
            record.refresh_token,
            record.expires_at,
            record.scope,
        )
        logger.info("OAuth token stored for owner %s", record.owner_key)
