"""Access-token freshness guard and calendar connection helpers.

Hands out a usable access token for an owner, refreshing it through the
OAuth client when it is missing or about to expire. Dead grants are removed
from storage so the owner is forced through the consent flow again; transient
failures leave storage untouched so the next run can retry.

:func:`connect_calendar` and :func:`disconnect_calendar` complete the consent
flow and tear a grant down again.
"""

from __future__ import annotations

import enum
import logging
from datetime import UTC, datetime, timedelta

from callagent.credential_store import (
    GOOGLE_PROVIDER,
    OAuthTokenRecord,
    TokenStore,
    normalize_owner_key,
)
from callagent.providers.base import (
    OAuthClient,
    OAuthRefreshError,
    OAuthRevokedError,
    OAuthTransientError,
)

logger = logging.getLogger(__name__)

EXPIRY_SKEW = timedelta(seconds=60)


class TokenErrorCode(enum.StrEnum):
    NO_TOKENS = "NO_TOKENS"
    MISSING_REFRESH_TOKEN = "MISSING_REFRESH_TOKEN"
    REFRESH_REVOKED = "REFRESH_REVOKED"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


_TERMINAL_CODES = frozenset(
    {
        TokenErrorCode.NO_TOKENS,
        TokenErrorCode.MISSING_REFRESH_TOKEN,
        TokenErrorCode.REFRESH_REVOKED,
    }
)


class OAuthTokenError(Exception):
    """Raised when no usable access token can be produced for an owner.

    ``terminal`` errors need the owner to reconnect their account; the rest
    may succeed on a later attempt.
    """

    def __init__(self, code: TokenErrorCode, owner_key: str, message: str | None = None) -> None:
        self.code = code
        self.owner_key = owner_key
        super().__init__(message or f"{code.value} for owner {owner_key}")

    @property
    def terminal(self) -> bool:
        return self.code in _TERMINAL_CODES

    @property
    def retryable(self) -> bool:
        return not self.terminal


def needs_refresh(record: OAuthTokenRecord, now: datetime) -> bool:
    """True when the stored access token is missing or expires within the skew."""
    if not record.access_token or record.expires_at is None:
        return True
    return now > record.expires_at - EXPIRY_SKEW


class TokenGuard:
    """Returns fresh access tokens, refreshing and persisting them as needed."""

    def __init__(self, store: TokenStore, oauth: OAuthClient) -> None:
        self._store = store
        self._oauth = oauth

    async def get_access_token(self, owner_key: str, *, now: datetime | None = None) -> str:
        """Return a valid access token for *owner_key*.

        Raises
        ------
        OAuthTokenError
            With a code describing why no token could be produced.
        """
        now = now or datetime.now(UTC)
        record = await self._store.get(owner_key)
        if record is None:
            raise OAuthTokenError(TokenErrorCode.NO_TOKENS, owner_key)

        access_token = record.access_token
        if access_token and not needs_refresh(record, now):
            return access_token

        if not record.refresh_token:
            logger.warning("Stored OAuth credential for %s has no refresh token", owner_key)
            await self._store.delete(owner_key)
            raise OAuthTokenError(TokenErrorCode.MISSING_REFRESH_TOKEN, owner_key)

        try:
            refreshed = await self._oauth.refresh(record.refresh_token)
        except OAuthRevokedError as exc:
            logger.warning("Refresh token for %s was revoked: %s", owner_key, exc)
            await self._store.delete(owner_key)
            raise OAuthTokenError(TokenErrorCode.REFRESH_REVOKED, owner_key, str(exc)) from exc
        except OAuthTransientError as exc:
            logger.warning("Token refresh for %s failed transiently: %s", owner_key, exc)
            raise OAuthTokenError(TokenErrorCode.NETWORK, owner_key, str(exc)) from exc
        except OAuthRefreshError as exc:
            logger.error("Token refresh for %s failed: %s", owner_key, exc)
            raise OAuthTokenError(TokenErrorCode.UNKNOWN, owner_key, str(exc)) from exc

        updated = await self._store.update_if_unchanged(
            owner_key,
            record.updated_at,
            access_token=refreshed.access_token,
            expires_at=refreshed.expires_at,
            refresh_token=refreshed.refresh_token,
        )
        if updated:
            return refreshed.access_token

        # Someone else refreshed in between; prefer what they stored.
        latest = await self._store.get(owner_key)
        if latest is not None and latest.access_token:
            return latest.access_token
        return refreshed.access_token

    async def discard(self, owner_key: str) -> None:
        """Forget a credential the calendar API has rejected outright."""
        logger.warning("Discarding rejected OAuth credential for %s", owner_key)
        await self._store.delete(owner_key)


async def connect_calendar(
    store: TokenStore,
    oauth: OAuthClient,
    owner_key: str,
    code: str,
    *,
    redirect_uri: str,
    now: datetime | None = None,
) -> OAuthTokenRecord:
    """Finish the consent flow for *owner_key* and store the granted tokens.

    Google only returns a refresh token on the first consent; a reconnect
    without one keeps the refresh token already on file.

    Raises
    ------
    OAuthExchangeError
        If the authorization code is rejected.
    OAuthTokenError
        With ``MISSING_REFRESH_TOKEN`` when no refresh token is available at all.
    """
    now = now or datetime.now(UTC)
    owner_key = normalize_owner_key(owner_key)
    granted = await oauth.exchange_code(code, redirect_uri)

    refresh_token = granted.refresh_token
    if refresh_token is None:
        existing = await store.get(owner_key)
        refresh_token = existing.refresh_token if existing is not None else None
    if refresh_token is None:
        raise OAuthTokenError(
            TokenErrorCode.MISSING_REFRESH_TOKEN,
            owner_key,
            "Google did not return a refresh token; consent must be requested offline",
        )

    record = OAuthTokenRecord(
        owner_key=owner_key,
        provider=GOOGLE_PROVIDER,
        access_token=granted.access_token,
        refresh_token=refresh_token,
        expires_at=granted.expires_at,
        scope=granted.scope,
        updated_at=now,
    )
    await store.upsert(record)
    logger.info("Calendar connected for %s (scope=%s)", owner_key, granted.scope)
    return record


async def disconnect_calendar(store: TokenStore, oauth: OAuthClient, owner_key: str) -> bool:
    """Revoke *owner_key*'s grant and delete it; False when nothing was stored.

    The refresh token is revoked in preference to the access token so the
    whole grant goes away. If revocation fails the stored row is kept.
    """
    owner_key = normalize_owner_key(owner_key)
    record = await store.get(owner_key)
    if record is None:
        return False
    token = record.refresh_token or record.access_token
    if token:
        await oauth.revoke(token)
    await store.delete(owner_key)
    logger.info("Calendar disconnected for %s", owner_key)
    return True
