"""Calendar/video providers and the OAuth exchange they depend on."""

from callagent.providers.base import (
    CalendarError,
    CalendarProvider,
    CalendarRequestError,
    CreatedEvent,
    EventRequest,
    OAuthClient,
    OAuthRefreshError,
    OAuthRevokedError,
    OAuthTransientError,
    RefreshedToken,
)
from callagent.providers.google import GoogleCalendarProvider, GoogleOAuthClient

__all__ = [
    "CalendarError",
    "CalendarProvider",
    "CalendarRequestError",
    "CreatedEvent",
    "EventRequest",
    "GoogleCalendarProvider",
    "GoogleOAuthClient",
    "OAuthClient",
    "OAuthRefreshError",
    "OAuthRevokedError",
    "OAuthTransientError",
    "RefreshedToken",
]
