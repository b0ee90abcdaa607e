"""Calendar provider abstractions shared by the engine and its backends."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime

from callagent.core.intervals import Interval


class CalendarError(RuntimeError):
    """Base error raised by calendar provider helpers."""


class CalendarRequestError(CalendarError):
    """Raised when a calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


class CalendarUnavailableError(CalendarError):
    """The calendar API could not be reached at all."""


def is_transient_calendar_error(exc: CalendarError) -> bool:
    """True for failures a later attempt may not see: transport errors, 429 and 5xx."""
    if isinstance(exc, CalendarUnavailableError):
        return True
    if isinstance(exc, CalendarRequestError):
        return exc.status_code == 429 or exc.status_code >= 500
    return False


class OAuthRefreshError(RuntimeError):
    """Raised when a refresh-token exchange fails for an unclassified reason."""


class OAuthRevokedError(OAuthRefreshError):
    """The refresh token was rejected as expired, revoked or otherwise invalid."""


class OAuthTransientError(OAuthRefreshError):
    """The token endpoint was unreachable, timed out, throttled or errored server-side."""


class OAuthExchangeError(RuntimeError):
    """Raised when an authorization code exchange or a grant revocation fails."""


@dataclass(frozen=True)
class RefreshedToken:
    """Result of a successful refresh-token or authorization-code exchange."""

    access_token: str
    expires_at: datetime | None
    refresh_token: str | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        return f"RefreshedToken(access_token=<REDACTED>, expires_at={self.expires_at!r})"


@dataclass(frozen=True)
class EventRequest:
    """Everything needed to create a meeting on the organizer's calendar."""

    title: str
    start: datetime
    end: datetime
    attendees: list[str] = field(default_factory=list)
    description: str | None = None
    timezone: str = "Europe/Rome"
    calendar_id: str = "primary"
    request_id: str | None = None
    event_id: str | None = None


@dataclass(frozen=True)
class CreatedEvent:
    event_id: str
    html_link: str | None = None
    meeting_link: str | None = None


class OAuthClient(abc.ABC):
    """Token endpoint operations: connecting, refreshing and revoking a grant."""

    @abc.abstractmethod
    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Exchange *refresh_token*.

        Raises ``OAuthRevokedError`` when the grant is dead,
        ``OAuthTransientError`` for network/throttling/server failures, and
        plain ``OAuthRefreshError`` for anything else.
        """
        ...

    @abc.abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> RefreshedToken:
        """Trade an authorization code from the consent screen for tokens.

        Raises ``OAuthExchangeError`` when the code is rejected or the
        endpoint cannot be reached.
        """
        ...

    @abc.abstractmethod
    async def revoke(self, token: str) -> None:
        """Revoke the grant behind *token*; an already dead grant is not an error."""
        ...


class CalendarProvider(abc.ABC):
    """Busy-time lookup and event creation on behalf of a token holder."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def freebusy(
        self,
        access_token: str,
        calendar_id: str,
        window: Interval,
    ) -> list[Interval]:
        """Return the busy intervals of *calendar_id* overlapping *window*."""
        ...

    @abc.abstractmethod
    async def create_event(self, access_token: str, request: EventRequest) -> CreatedEvent:
        """Create an event with a video conference link.

        When ``request.event_id`` names an event that already exists, that
        event is brought in line with *request* and returned instead.
        """
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...
