"""Google Calendar backend: freeBusy lookups, Meet-enabled events and OAuth refresh."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httpx

from callagent.core.intervals import Interval
from callagent.google_credentials import GoogleAppCredentials
from callagent.providers.base import (
    CalendarError,
    CalendarProvider,
    CalendarRequestError,
    CalendarUnavailableError,
    CreatedEvent,
    EventRequest,
    OAuthClient,
    OAuthExchangeError,
    OAuthRefreshError,
    OAuthRevokedError,
    OAuthTransientError,
    RefreshedToken,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Rate-limit retry policy for Calendar API calls.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Busy lookups on the participant's behalf and event creation for the organizer.
CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
)

_REVOKED_GRANT_ERRORS = {"invalid_grant"}
_REVOKED_DESCRIPTION_RE = re.compile(r"(?i)\b(expired|revoked)\b")


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return _redact_credential_values(" ".join(message.split()))[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            text = error_payload
            if isinstance(description, str) and description.strip():
                text = f"{error_payload}: {description}"
            return _redact_credential_values(" ".join(text.split()))[:200]

    raw_text = response.text.strip()
    if raw_text:
        return _redact_credential_values(" ".join(raw_text.split()))[:200]
    return "Request failed without an error payload"


def _redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise CalendarError(f"Invalid datetime from Google Calendar: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _refresh_error_code(response: httpx.Response) -> tuple[str | None, str | None]:
    """Return the OAuth ``error`` / ``error_description`` pair, if present."""
    try:
        payload = response.json()
    except ValueError:
        return None, None
    if not isinstance(payload, dict):
        return None, None
    error = payload.get("error")
    description = payload.get("error_description")
    return (
        error if isinstance(error, str) else None,
        description if isinstance(description, str) else None,
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _granted_token(payload: Any, error_cls: type[Exception]) -> RefreshedToken:
    """Build a RefreshedToken from a token endpoint JSON body."""
    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not isinstance(access_token, str) or not access_token.strip():
        raise error_cls("Google OAuth token response is missing a non-empty access_token")

    expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        refresh_token = None
    scope = payload.get("scope")

    return RefreshedToken(
        access_token=access_token.strip(),
        expires_at=datetime.now(UTC) + timedelta(seconds=expires_in_seconds),
        refresh_token=refresh_token,
        scope=scope if isinstance(scope, str) and scope.strip() else None,
    )


class GoogleOAuthClient(OAuthClient):
    """Consent, refresh and revocation against Google's OAuth endpoints."""

    def __init__(
        self,
        credentials: GoogleAppCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client

    def authorization_url(
        self,
        redirect_uri: str,
        *,
        state: str | None = None,
        login_hint: str | None = None,
    ) -> str:
        """Consent screen URL that yields a refresh token on the callback."""
        params = {
            "client_id": self._credentials.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
        }
        if state is not None:
            params["state"] = state
        if login_hint is not None:
            params["login_hint"] = login_hint
        return f"{GOOGLE_OAUTH_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> RefreshedToken:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthExchangeError(f"Network error during token exchange: {exc}") from exc

        if response.status_code != 200:
            raise OAuthExchangeError(
                f"Google OAuth code exchange failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthExchangeError("Google OAuth token endpoint returned invalid JSON") from exc
        return _granted_token(payload, OAuthExchangeError)

    async def revoke(self, token: str) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_REVOKE_URL,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise OAuthExchangeError(f"Google OAuth revoke request failed: {exc}") from exc

        if response.status_code == 200:
            return
        error, _ = _refresh_error_code(response)
        if response.status_code == 400 and error == "invalid_token":
            logger.info("Google OAuth grant was already revoked")
            return
        raise OAuthExchangeError(
            f"Google OAuth revoke failed ({response.status_code}): "
            f"{_safe_google_error_message(response)}"
        )

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise OAuthTransientError(f"Google OAuth token refresh request failed: {exc}") from exc

        status = response.status_code
        if status < 200 or status >= 300:
            message = (
                f"Google OAuth token refresh failed ({status}): "
                f"{_safe_google_error_message(response)}"
            )
            if status == 429 or status >= 500:
                raise OAuthTransientError(message)
            error, description = _refresh_error_code(response)
            if error in _REVOKED_GRANT_ERRORS or (
                description is not None and _REVOKED_DESCRIPTION_RE.search(description)
            ):
                raise OAuthRevokedError(message)
            raise OAuthRefreshError(message)

        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthRefreshError("Google OAuth token endpoint returned invalid JSON") from exc
        return _granted_token(payload, OAuthRefreshError)


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


def _build_google_event_body(request: EventRequest) -> dict[str, Any]:
    """Translate an EventRequest into a Google Calendar API event body."""
    tz = ZoneInfo(request.timezone)
    body: dict[str, Any] = {
        "summary": request.title,
        "status": "confirmed",
        "start": {
            "dateTime": request.start.astimezone(tz).isoformat(),
            "timeZone": request.timezone,
        },
        "end": {
            "dateTime": request.end.astimezone(tz).isoformat(),
            "timeZone": request.timezone,
        },
        "attendees": [{"email": email} for email in request.attendees],
        "conferenceData": {
            "createRequest": {
                "requestId": request.request_id or uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        },
    }
    if request.event_id is not None:
        body["id"] = request.event_id
    if request.description is not None:
        body["description"] = request.description
    return body


def _extract_meeting_link(payload: dict[str, Any]) -> str | None:
    hangout = payload.get("hangoutLink")
    if isinstance(hangout, str) and hangout.strip():
        return hangout
    conference = payload.get("conferenceData")
    if not isinstance(conference, dict):
        return None
    for entry in conference.get("entryPoints") or []:
        if isinstance(entry, dict) and entry.get("entryPointType") == "video":
            uri = entry.get("uri")
            if isinstance(uri, str) and uri.strip():
                return uri
    return None


class GoogleCalendarProvider(CalendarProvider):
    """Google provider issuing requests with a caller-supplied bearer token."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def name(self) -> str:
        return "google"

    async def _request_google_json(
        self,
        access_token: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            access_token,
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        access_token: str,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(access_token, method, url, params, json_body)

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(access_token, method, url, params, json_body)
            retry += 1

        return response

    async def _request_once(
        self,
        access_token: str,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CalendarUnavailableError(f"Google Calendar request failed: {exc}") from exc

    async def freebusy(
        self,
        access_token: str,
        calendar_id: str,
        window: Interval,
    ) -> list[Interval]:
        if window.empty:
            return []

        payload = await self._request_google_json(
            access_token,
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": _google_rfc3339(window.start),
                "timeMax": _google_rfc3339(window.end),
                "timeZone": "UTC",
                "items": [{"id": calendar_id}],
            },
        )
        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            raise CalendarError("Google Calendar freeBusy response missing calendars object")

        calendar_payload = calendars_payload.get(calendar_id)
        if not isinstance(calendar_payload, dict):
            if len(calendars_payload) == 1:
                calendar_payload = next(iter(calendars_payload.values()))
            else:
                raise CalendarError(
                    "Google Calendar freeBusy response missing calendar entry for requested id"
                )
        if not isinstance(calendar_payload, dict):
            raise CalendarError("Google Calendar freeBusy response calendar entry is invalid")

        errors = calendar_payload.get("errors")
        if isinstance(errors, list) and errors:
            reasons = ", ".join(
                str(err.get("reason", "unknown")) for err in errors if isinstance(err, dict)
            )
            raise CalendarError(f"Google Calendar freeBusy reported errors: {reasons}")

        busy_payload = calendar_payload.get("busy")
        if not isinstance(busy_payload, list):
            raise CalendarError("Google Calendar freeBusy response missing busy array")

        busy: list[Interval] = []
        for block in busy_payload:
            if not isinstance(block, dict):
                continue
            start_raw = block.get("start")
            end_raw = block.get("end")
            if not isinstance(start_raw, str) or not isinstance(end_raw, str):
                raise CalendarError("Google Calendar freeBusy busy windows must include start/end")
            start_at = _parse_google_datetime(start_raw)
            end_at = _parse_google_datetime(end_raw)
            if end_at <= start_at:
                continue
            busy.append(Interval(start_at, end_at))
        return busy

    async def create_event(self, access_token: str, request: EventRequest) -> CreatedEvent:
        if request.end <= request.start:
            raise ValueError("request.end must be after request.start")

        try:
            payload = await self._request_google_json(
                access_token,
                "POST",
                f"/calendars/{request.calendar_id}/events",
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                json_body=_build_google_event_body(request),
            )
        except CalendarRequestError as exc:
            if exc.status_code != 409 or request.event_id is None:
                raise
            # An earlier attempt already created this event; move it onto this request.
            logger.info("Event %s already exists; updating it", request.event_id)
            payload = await self._request_google_json(
                access_token,
                "PATCH",
                f"/calendars/{request.calendar_id}/events/{request.event_id}",
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                json_body=_build_google_event_body(request),
            )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarError("Google Calendar create response is missing an event id")

        html_link = payload.get("htmlLink")
        return CreatedEvent(
            event_id=event_id,
            html_link=html_link if isinstance(html_link, str) else None,
            meeting_link=_extract_meeting_link(payload),
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
