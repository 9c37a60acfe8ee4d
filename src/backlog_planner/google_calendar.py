"""Google Calendar REST client used by the sync engine.

This module defines:
- the ``CalendarAuthError`` exception hierarchy
- ``TokenRefreshResult``: discriminated outcome of a refresh-token exchange
- ``GoogleCalendarClient``: OAuth token, calendar and event endpoints over httpx

Every outbound request carries a bounded timeout. Timeouts and network errors
are always reported as transient, never as permanent credential failures.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_REQUEST_TIMEOUT_S = 10.0
DEFAULT_EXPIRES_IN_SECONDS = 3600
DEFAULT_CALENDAR_NAME = "Backlog Planner"

# Token endpoint responses meaning the refresh credential itself was rejected.
PERMANENT_REFRESH_STATUS_CODES = frozenset({400, 401, 403})
# Delete responses meaning the event no longer exists.
EVENT_GONE_STATUS_CODES = frozenset({404, 410})


class CalendarAuthError(RuntimeError):
    """Base error raised by Google Calendar auth/request helpers."""


class CalendarCredentialError(CalendarAuthError):
    """Raised when the OAuth client id/secret are not configured."""


class CalendarRequestError(CalendarAuthError):
    """Raised when a Google API request returns a non-2xx response."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarTransportError(CalendarAuthError):
    """Raised when a Google API request times out or fails at the network level."""

    def __init__(self, message: str, *, is_timeout: bool = False) -> None:
        self.is_timeout = is_timeout
        super().__init__(message)


class RefreshOutcome(StrEnum):
    """Classification of a refresh-token exchange."""

    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class TokenRefreshResult:
    outcome: RefreshOutcome
    access_token: str | None = field(default=None, repr=False)
    expires_in: int | None = None
    reason: str | None = None

    @classmethod
    def success(cls, access_token: str, expires_in: int) -> TokenRefreshResult:
        return cls(RefreshOutcome.SUCCESS, access_token=access_token, expires_in=expires_in)

    @classmethod
    def permanent(cls, reason: str) -> TokenRefreshResult:
        return cls(RefreshOutcome.PERMANENT_FAILURE, reason=reason)

    @classmethod
    def transient(cls, reason: str) -> TokenRefreshResult:
        return cls(RefreshOutcome.TRANSIENT_FAILURE, reason=reason)


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int


@dataclass(frozen=True)
class CalendarEventData:
    """Event fields mirrored from a session."""

    summary: str
    start_at: datetime
    end_at: datetime
    timezone: str
    description: str | None = None


def classify_refresh_status(status_code: int) -> RefreshOutcome:
    """Map a non-2xx token endpoint status onto a failure class."""
    if status_code in PERMANENT_REFRESH_STATUS_CODES:
        return RefreshOutcome.PERMANENT_FAILURE
    return RefreshOutcome.TRANSIENT_FAILURE


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


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
                return _sanitize(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return _sanitize(f"{error_payload}: {description}")
            return _sanitize(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return _sanitize(raw_text)
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact token and client-secret values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return re.sub(r"(?i)\bBearer\s+[^\s,;]+", "Bearer [REDACTED]", redacted)


def _sanitize(message: str) -> str:
    return " ".join(redact_credential_values(message).split())[:200]


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def build_event_body(event: CalendarEventData) -> dict[str, Any]:
    return {
        "summary": event.summary,
        "description": event.description or "",
        "start": {"dateTime": _google_rfc3339(event.start_at), "timeZone": event.timezone},
        "end": {"dateTime": _google_rfc3339(event.end_at), "timeZone": event.timezone},
    }


def _non_empty_string(payload: Any, key: str) -> str | None:
    value = payload.get(key) if isinstance(payload, dict) else None
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class GoogleCalendarClient:
    """Stateless Google OAuth + Calendar client.

    The client never caches access tokens; token state lives in persistence
    and is managed by the sync config resolver.
    """

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        self._client_id = (client_id or "").strip()
        self._client_secret = (client_secret or "").strip()
        self._timeout = httpx.Timeout(timeout_s)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=self._timeout)

    @property
    def has_client_credentials(self) -> bool:
        return bool(self._client_id and self._client_secret)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _require_client_credentials(self) -> None:
        if not self.has_client_credentials:
            raise CalendarCredentialError("Google OAuth client_id/client_secret are not configured")

    # ------------------------------------------------------------------
    # OAuth endpoints
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> TokenRefreshResult:
        """Exchange *refresh_token* for a new access token.

        Provider and network outcomes are returned, never raised.
        """
        self._require_client_credentials()
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException:
            return TokenRefreshResult.transient("token refresh request timed out")
        except httpx.HTTPError as exc:
            return TokenRefreshResult.transient(
                f"token refresh request failed: {_sanitize(str(exc))}"
            )

        if response.status_code < 200 or response.status_code >= 300:
            reason = (
                f"token refresh failed ({response.status_code}): "
                f"{_safe_google_error_message(response)}"
            )
            if classify_refresh_status(response.status_code) is RefreshOutcome.PERMANENT_FAILURE:
                return TokenRefreshResult.permanent(reason)
            return TokenRefreshResult.transient(reason)

        try:
            payload = response.json()
        except ValueError:
            return TokenRefreshResult.transient("token endpoint returned invalid JSON")

        access_token = _non_empty_string(payload, "access_token")
        if access_token is None:
            return TokenRefreshResult.transient(
                "token response is missing a non-empty access_token"
            )
        return TokenRefreshResult.success(
            access_token, _coerce_expires_in_seconds(payload.get("expires_in"))
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an authorization code for access and refresh tokens."""
        self._require_client_credentials()
        response = await self._send(
            "POST",
            GOOGLE_OAUTH_TOKEN_URL,
            data={
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
        payload = self._json_payload(response)
        access_token = _non_empty_string(payload, "access_token")
        refresh_token = _non_empty_string(payload, "refresh_token")
        if access_token is None or refresh_token is None:
            raise CalendarAuthError("Google OAuth code exchange did not return both tokens")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=_coerce_expires_in_seconds(payload.get("expires_in")),
        )

    async def revoke_token(self, token: str) -> bool:
        """Revoke *token*. Returns False instead of raising when revocation fails."""
        try:
            response = await self._send(
                "POST",
                GOOGLE_OAUTH_REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except CalendarAuthError as exc:
            logger.warning("Google token revocation failed: %s", exc)
            return False
        return 200 <= response.status_code < 300

    # ------------------------------------------------------------------
    # Calendar endpoints
    # ------------------------------------------------------------------

    async def create_calendar(
        self, access_token: str, *, summary: str = DEFAULT_CALENDAR_NAME
    ) -> str:
        """Create a secondary calendar and return its id."""
        response = await self._send(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars",
            access_token=access_token,
            json={"summary": summary, "description": f"Sessions scheduled by {summary}"},
        )
        calendar_id = _non_empty_string(self._json_payload(response), "id")
        if calendar_id is None:
            raise CalendarAuthError("Google Calendar create_calendar response is missing an id")
        return calendar_id

    async def create_event(
        self, access_token: str, calendar_id: str, event: CalendarEventData
    ) -> str:
        """Create *event* and return the provider-assigned event id."""
        response = await self._send(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events",
            access_token=access_token,
            json=build_event_body(event),
        )
        event_id = _non_empty_string(self._json_payload(response), "id")
        if event_id is None:
            raise CalendarAuthError("Google Calendar create_event response is missing an id")
        return event_id

    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, event: CalendarEventData
    ) -> None:
        """Replace the event's fields with *event* (last writer wins)."""
        await self._send(
            "PUT",
            self._event_url(calendar_id, event_id),
            access_token=access_token,
            json=build_event_body(event),
        )

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> bool:
        """Delete an event.

        Returns True when the provider deleted it and False when it was already
        gone (404/410). Both count as success.
        """
        response = await self._send(
            "DELETE",
            self._event_url(calendar_id, event_id),
            access_token=access_token,
            accepted_statuses=EVENT_GONE_STATUS_CODES,
        )
        if response.status_code in EVENT_GONE_STATUS_CODES:
            logger.debug("delete_event: event '%s' already gone; treating as success", event_id)
            return False
        return True

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _event_url(calendar_id: str, event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return (
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}"
            f"/events/{quote(normalized_event_id, safe='')}"
        )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        access_token: str | None = None,
        accepted_statuses: frozenset[int] = frozenset(),
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        request_headers: dict[str, str] = dict(headers or {})
        if access_token is not None:
            request_headers["Authorization"] = f"Bearer {access_token}"
        try:
            response = await self._http_client.request(
                method, url, headers=request_headers, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise CalendarTransportError(
                f"Google request timed out: {method} {url}", is_timeout=True
            ) from exc
        except httpx.HTTPError as exc:
            raise CalendarTransportError(
                f"Google request failed: {method} {url}: {_sanitize(str(exc))}"
            ) from exc

        if response.status_code in accepted_statuses:
            return response
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        return response

    @staticmethod
    def _json_payload(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarAuthError(
                "Google API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarAuthError("Google API returned an unexpected JSON payload shape")
        return payload
