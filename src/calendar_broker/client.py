"""Per-account Google Calendar access.

``CalendarClient`` is the capability the registry, router and tools consume.
``GoogleCalendarClient`` implements it against the Calendar v3 REST API with
one refresh token per broker account. Every error it raises carries the broker
account id, so fan-out warnings and tool errors say which account failed.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

RATE_LIMIT_RETRY_STATUS_CODES = frozenset({429, 503})
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
# Google caps calendarList and events pages at 250 items.
GOOGLE_MAX_PAGE_SIZE = 250
DEFAULT_EVENT_LIMIT = 250
ERROR_MESSAGE_MAX_CHARS = 200

# Access tokens are renewed this long before Google says they expire.
TOKEN_EXPIRY_MARGIN_SECONDS = 60.0
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600.0

_STATUS_LABELS = {
    400: "Bad request",
    403: "Access denied",
    404: "Not found",
    409: "Conflict",
    410: "Gone",
    412: "Precondition failed",
    429: "Rate limit exceeded",
}

_CREDENTIAL_FIELDS = ("client_id", "client_secret", "refresh_token")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CalendarClientError(RuntimeError):
    """Failure talking to the calendar service on behalf of one account."""

    def __init__(self, message: str, *, account_id: str | None = None) -> None:
        self.account_id = account_id
        prefix = f'Account "{account_id}": ' if account_id else ""
        super().__init__(f"{prefix}{message}")


class CalendarCredentialError(CalendarClientError):
    """Credential JSON for an account is missing or malformed."""


class CalendarTokenRefreshError(CalendarClientError):
    """The refresh token could not be exchanged for an access token."""


class CalendarRequestError(CalendarClientError):
    """The Calendar API answered with a non-success status."""

    def __init__(self, *, status_code: int, message: str, account_id: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        label = _STATUS_LABELS.get(status_code, "Google Calendar API request failed")
        super().__init__(f"{label} ({status_code}): {message}", account_id=account_id)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|id_token|token"
_QUOTED_SECRET = re.compile(rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""")
_PLAIN_SECRET = re.compile(rf"(?i)\b({_SECRET_KEYS})(\s*[=:]\s*)([^\s,;]+)")
_BEARER_TOKEN = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+")


def redact_credential_values(message: str) -> str:
    """Replace token and secret values in ``message`` with ``[REDACTED]``."""
    redacted = _QUOTED_SECRET.sub(r'\1"[REDACTED]"', message)
    redacted = _PLAIN_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}[REDACTED]", redacted)
    return _BEARER_TOKEN.sub("Bearer [REDACTED]", redacted)


def sanitize_error_message(value: BaseException | str) -> str:
    """Redacted, single-line and bounded text safe to hand back to an agent."""
    text = value if isinstance(value, str) else (str(value) or type(value).__name__)
    return " ".join(redact_credential_values(text).split())[:ERROR_MESSAGE_MAX_CHARS]


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _response_error_detail(response: httpx.Response) -> str:
    payload = _json_or_none(response)
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        error = error.get("message")
    detail = error if isinstance(error, str) and error.strip() else response.text
    return sanitize_error_message(detail) or "no error details returned"


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


def _text(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _dict_items(payload: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = payload.get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


class GoogleOAuthCredentials(BaseModel):
    """Client id, client secret and refresh token for one account."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator(*_CREDENTIAL_FIELDS)
    @classmethod
    def _strip(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be a non-empty string")
        return value.strip()

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        """Parse Google's client JSON.

        The client fields may sit at the top level or under ``installed`` /
        ``web`` (the shapes Google's console downloads); the refresh token is
        usually added at the top level.
        """
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        sections = [payload] + [
            payload[key] for key in ("installed", "web") if isinstance(payload.get(key), dict)
        ]
        values = {
            name: next((section[name] for section in sections if name in section), None)
            for name in _CREDENTIAL_FIELDS
        }

        missing = [name for name, value in values.items() if value is None]
        if missing:
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )
        blank = [
            name
            for name, value in values.items()
            if not isinstance(value, str) or not value.strip()
        ]
        if blank:
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(blank)}"
            )
        return cls(**values)


class CalendarListEntry(BaseModel):
    """The parts of a calendar list row the registry and tools use."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    summary: str | None = None
    summary_override: str | None = None
    access_role: str | None = None
    primary: bool = False
    time_zone: str | None = None

    @classmethod
    def from_google(cls, payload: dict[str, Any]) -> CalendarListEntry:
        return cls(
            id=_text(payload, "id"),
            summary=_text(payload, "summary"),
            summary_override=_text(payload, "summaryOverride"),
            access_role=_text(payload, "accessRole"),
            primary=payload.get("primary") is True,
            time_zone=_text(payload, "timeZone"),
        )


class BusyPeriod(BaseModel):
    start: str
    end: str


class FreeBusyError(BaseModel):
    domain: str | None = None
    reason: str | None = None


class FreeBusyCalendar(BaseModel):
    """Busy periods for one calendar; ``errors`` is ``None`` when the service reported none."""

    busy: list[BusyPeriod] = Field(default_factory=list)
    errors: list[FreeBusyError] | None = None

    @classmethod
    def not_found(cls) -> FreeBusyCalendar:
        return cls(busy=[], errors=[FreeBusyError(reason="notFound")])

    @classmethod
    def from_google(cls, payload: Any) -> FreeBusyCalendar:
        if not isinstance(payload, dict):
            return cls()
        busy = [
            BusyPeriod(start=slot["start"], end=slot["end"])
            for slot in _dict_items(payload, "busy")
            if isinstance(slot.get("start"), str) and isinstance(slot.get("end"), str)
        ]
        errors = [
            FreeBusyError(domain=_text(err, "domain"), reason=_text(err, "reason"))
            for err in _dict_items(payload, "errors")
        ]
        return cls(busy=busy, errors=errors or None)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _token_lifetime_seconds(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    return float(value)


class _AccountToken:
    """Access token for one broker account, renewed from its refresh token."""

    def __init__(
        self,
        account_id: str,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.account_id = account_id
        self._credentials = credentials
        self._http_client = http_client
        self._clock = clock
        self._value: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def is_fresh(self) -> bool:
        return self._value is not None and self._clock() < self._expires_at

    async def get(self, *, force_refresh: bool = False) -> str:
        async with self._lock:
            if force_refresh or not self.is_fresh:
                await self._refresh()
            assert self._value is not None
            return self._value

    async def _refresh(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"token refresh request failed: {exc}", account_id=self.account_id
            ) from exc

        payload = _json_or_none(response)
        if not 200 <= response.status_code < 300:
            if isinstance(payload, dict) and payload.get("error") == "invalid_grant":
                raise CalendarTokenRefreshError(
                    "refresh token was revoked or has expired (invalid_grant); "
                    "re-authorize this account",
                    account_id=self.account_id,
                )
            raise CalendarTokenRefreshError(
                f"token refresh failed ({response.status_code}): "
                f"{_response_error_detail(response)}",
                account_id=self.account_id,
            )

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token.strip():
            raise CalendarTokenRefreshError(
                "token endpoint returned no access_token", account_id=self.account_id
            )
        lifetime = _token_lifetime_seconds(payload.get("expires_in"))
        self._value = token.strip()
        self._expires_at = self._clock() + max(lifetime - TOKEN_EXPIRY_MARGIN_SECONDS, 30.0)
        logger.debug("Refreshed access token for account %s", self.account_id)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class CalendarClient(abc.ABC):
    """Capability one authenticated account offers to the registry, router and tools."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[CalendarListEntry]:
        """Return every calendar on the account's calendar list."""
        ...

    @abc.abstractmethod
    async def query_free_busy(
        self,
        *,
        calendar_ids: Sequence[str],
        time_min: datetime,
        time_max: datetime,
        time_zone: str | None = None,
    ) -> dict[str, FreeBusyCalendar]:
        """Return busy periods keyed by calendar id."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        calendar_id: str,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        query: str | None = None,
        time_zone: str | None = None,
        limit: int = DEFAULT_EVENT_LIMIT,
    ) -> list[dict[str, Any]]:
        """Return raw event resources, expanded to single instances, ordered by start.

        A non-empty ``query`` turns the listing into a free-text search.
        """
        ...

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def insert_event(
        self, *, calendar_id: str, body: dict[str, Any], send_updates: str | None = None
    ) -> dict[str, Any]: ...

    @abc.abstractmethod
    async def patch_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> dict[str, Any]:
        """Apply a partial update; fields absent from ``body`` are left unchanged."""
        ...

    @abc.abstractmethod
    async def delete_event(
        self, *, calendar_id: str, event_id: str, send_updates: str | None = None
    ) -> None: ...

    @abc.abstractmethod
    async def get_colors(self) -> dict[str, Any]:
        """Return the service's ``event`` and ``calendar`` color palettes."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release client resources."""
        ...


def _events_path(calendar_id: str, event_id: str | None = None) -> str:
    path = f"/calendars/{quote(calendar_id, safe='')}/events"
    return path if event_id is None else f"{path}/{quote(event_id, safe='')}"


def _retry_delay(response: httpx.Response, attempt: int) -> float:
    if response.status_code == 429:
        try:
            return float(response.headers.get("Retry-After", ""))
        except ValueError:
            pass
    return RATE_LIMIT_BASE_BACKOFF_SECONDS * 2**attempt


class GoogleCalendarClient(CalendarClient):
    """Calendar v3 REST client for one broker account.

    A 401 triggers one forced token refresh; 429 and 503 are retried with
    exponential backoff (honouring ``Retry-After`` on 429). A shared
    ``http_client`` is borrowed and never closed here.
    """

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
        *,
        account_id: str = "default",
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.account_id = account_id
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._token = _AccountToken(account_id, credentials, self._http_client)

    @property
    def name(self) -> str:
        return "google"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call_api(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one API call; returns the JSON object, or ``{}`` for an empty success."""
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        response = await self._send(method, url, params=params, json_body=json_body)
        if not 200 <= response.status_code < 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_response_error_detail(response),
                account_id=self.account_id,
            )
        if response.status_code == 204:
            return {}
        payload = _json_or_none(response)
        if not isinstance(payload, dict):
            raise CalendarClientError(
                f"{method} {path} returned a non-object JSON body", account_id=self.account_id
            )
        return payload

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        response = await self._send_once(method, url, params, json_body)
        if response.status_code == 401:
            logger.info("Access token rejected for account %s; refreshing once", self.account_id)
            response = await self._send_once(method, url, params, json_body, force_refresh=True)

        for attempt in range(RATE_LIMIT_MAX_RETRIES):
            if response.status_code not in RATE_LIMIT_RETRY_STATUS_CODES:
                break
            delay = _retry_delay(response, attempt)
            logger.warning(
                "Calendar API returned %d for account %s; retry %d/%d in %.1fs",
                response.status_code,
                self.account_id,
                attempt + 1,
                RATE_LIMIT_MAX_RETRIES,
                delay,
            )
            await asyncio.sleep(delay)
            response = await self._send_once(method, url, params, json_body)
        return response

    async def _send_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        *,
        force_refresh: bool = False,
    ) -> httpx.Response:
        token = await self._token.get(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarClientError(
                f"{method} request to Google Calendar failed: {exc}", account_id=self.account_id
            ) from exc

    async def _paged_items(
        self, path: str, params: dict[str, Any], *, limit: int | None = None
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while limit is None or len(items) < limit:
            remaining = GOOGLE_MAX_PAGE_SIZE if limit is None else limit - len(items)
            page_params = dict(params, maxResults=min(remaining, GOOGLE_MAX_PAGE_SIZE))
            if page_token is not None:
                page_params["pageToken"] = page_token
            payload = await self._call_api("GET", path, params=page_params)
            page = payload.get("items", [])
            if not isinstance(page, list):
                raise CalendarClientError(
                    f"GET {path} returned a non-list items field", account_id=self.account_id
                )
            items.extend(item for item in page if isinstance(item, dict))
            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token
        return items if limit is None else items[:limit]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_calendars(self) -> list[CalendarListEntry]:
        items = await self._paged_items("/users/me/calendarList", {})
        return [CalendarListEntry.from_google(item) for item in items]

    async def query_free_busy(
        self,
        *,
        calendar_ids: Sequence[str],
        time_min: datetime,
        time_max: datetime,
        time_zone: str | None = None,
    ) -> dict[str, FreeBusyCalendar]:
        body: dict[str, Any] = {
            "timeMin": google_rfc3339(time_min),
            "timeMax": google_rfc3339(time_max),
            "items": [{"id": calendar_id} for calendar_id in calendar_ids],
        }
        if time_zone:
            body["timeZone"] = time_zone

        payload = await self._call_api("POST", "/freeBusy", json_body=body)
        calendars = payload.get("calendars")
        if not isinstance(calendars, dict):
            raise CalendarClientError(
                "freeBusy response has no calendars object", account_id=self.account_id
            )
        return {
            calendar_id: FreeBusyCalendar.from_google(data)
            for calendar_id, data in calendars.items()
        }

    async def list_events(
        self,
        *,
        calendar_id: str,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        query: str | None = None,
        time_zone: str | None = None,
        limit: int = DEFAULT_EVENT_LIMIT,
    ) -> list[dict[str, Any]]:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
        }
        if time_min is not None:
            params["timeMin"] = google_rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = google_rfc3339(time_max)
        if query:
            params["q"] = query
        if time_zone:
            params["timeZone"] = time_zone
        return await self._paged_items(_events_path(calendar_id), params, limit=limit)

    async def get_event(self, *, calendar_id: str, event_id: str) -> dict[str, Any]:
        return await self._call_api("GET", _events_path(calendar_id, event_id))

    async def get_colors(self) -> dict[str, Any]:
        return await self._call_api("GET", "/colors")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_event(
        self, *, calendar_id: str, body: dict[str, Any], send_updates: str | None = None
    ) -> dict[str, Any]:
        params = {"sendUpdates": send_updates} if send_updates else None
        return await self._call_api(
            "POST", _events_path(calendar_id), params=params, json_body=body
        )

    async def patch_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
        send_updates: str | None = None,
    ) -> dict[str, Any]:
        params = {"sendUpdates": send_updates} if send_updates else None
        return await self._call_api(
            "PATCH", _events_path(calendar_id, event_id), params=params, json_body=body
        )

    async def delete_event(
        self, *, calendar_id: str, event_id: str, send_updates: str | None = None
    ) -> None:
        params = {"sendUpdates": send_updates} if send_updates else None
        await self._call_api("DELETE", _events_path(calendar_id, event_id), params=params)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
