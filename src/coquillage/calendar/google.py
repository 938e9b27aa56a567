"""Google Calendar provider.

Talks to the Google Calendar v3 REST API over ``httpx`` using an OAuth
refresh token.  Appointment fields travel in the event's
``extendedProperties.private`` map so they never need to be parsed back out
of the event title or description.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from coquillage.calendar.base import (
    CalendarCredentialError,
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventNotFoundError,
    CalendarEventUpdate,
    CalendarProvider,
    CalendarRejectedError,
    CalendarTokenRefreshError,
    CalendarUnavailableError,
    EventStatus,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_CREDENTIALS_ENV = "GOOGLE_CALENDAR_CREDENTIALS_JSON"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential
# backoff.  Google did not apply the request in either case.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# 4xx responses that mean "try again later" rather than "bad payload".
_UNAVAILABLE_CLIENT_STATUS_CODES = {401, 408, 429}


class _GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> _GoogleOAuthCredentials:
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        credential_data = {
            "client_id": _extract_google_credential_value(payload, "client_id"),
            "client_secret": _extract_google_credential_value(payload, "client_secret"),
            "refresh_token": _extract_google_credential_value(payload, "refresh_token"),
        }

        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            field_list = ", ".join(missing)
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {field_list}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            field_list = ", ".join(invalid)
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {field_list}"
            )

        return cls(
            client_id=str(credential_data["client_id"]),
            client_secret=str(credential_data["client_secret"]),
            refresh_token=str(credential_data["refresh_token"]),
        )


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: _GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
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
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def _extract_google_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


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
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _raise_for_google_status(response: httpx.Response, *, event_id: str | None = None) -> None:
    """Translate a non-2xx Google response into the calendar error hierarchy."""
    status_code = response.status_code
    if 200 <= status_code < 300:
        return
    if status_code in (404, 410) and event_id is not None:
        raise CalendarEventNotFoundError(event_id)
    message = _safe_google_error_message(response)
    if status_code >= 500 or status_code in _UNAVAILABLE_CLIENT_STATUS_CODES:
        raise CalendarUnavailableError(
            f"Google Calendar API unavailable ({status_code}): {message}"
        )
    raise CalendarRejectedError(status_code=status_code, message=message)


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
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value.strip())
    except ValueError:
        return None


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> tuple[datetime, str]:
    date_time = payload.get("dateTime")
    timezone_raw = payload.get("timeZone")
    timezone = (
        timezone_raw.strip()
        if isinstance(timezone_raw, str) and timezone_raw.strip()
        else fallback_timezone
    )
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone
    raise ValueError("Google Calendar event is missing start/end dateTime values")


def _parse_google_event_status(value: Any) -> EventStatus | None:
    if not isinstance(value, str):
        return None
    try:
        return EventStatus(value.strip().lower())
    except ValueError:
        return None


def _extract_google_attendees(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    emails: list[str] = []
    for entry in payload:
        if isinstance(entry, dict):
            email = _normalize_optional_text(entry.get("email"))
            if email is not None:
                emails.append(email)
    return emails


def _extract_google_private_metadata(payload: Any) -> dict[str, str]:
    if not isinstance(payload, dict):
        return {}
    private_payload = payload.get("private")
    if not isinstance(private_payload, dict):
        return {}
    return {str(key): str(value) for key, value in private_payload.items() if value is not None}


def _google_event_to_calendar_event(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> CalendarEvent:
    event_id_raw = payload.get("id")
    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    event_id = event_id_raw.strip()

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_at, start_timezone = _parse_google_event_boundary(
        start_payload, fallback_timezone=fallback_timezone
    )
    end_at, _ = _parse_google_event_boundary(end_payload, fallback_timezone=fallback_timezone)

    return CalendarEvent(
        event_id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or "(untitled)",
        start_at=start_at,
        end_at=end_at,
        timezone=start_timezone or fallback_timezone,
        description=_normalize_optional_text(payload.get("description")),
        attendees=_extract_google_attendees(payload.get("attendees")),
        status=_parse_google_event_status(payload.get("status")),
        private_metadata=_extract_google_private_metadata(payload.get("extendedProperties")),
        etag=_normalize_optional_text(payload.get("etag")),
        created_at=_parse_google_rfc3339_optional(payload.get("created")),
        updated_at=_parse_google_rfc3339_optional(payload.get("updated")),
    )


def _google_boundary(value: datetime, timezone: str | None) -> dict[str, str]:
    if timezone is None:
        return {"dateTime": _google_rfc3339(value)}
    return {"dateTime": value.isoformat(), "timeZone": timezone}


def _build_google_event_body(payload: CalendarEventCreate) -> dict[str, Any]:
    """Translate a CalendarEventCreate payload into a Google Calendar API event body."""
    body: dict[str, Any] = {
        "summary": payload.title,
        "start": _google_boundary(payload.start_at, payload.timezone),
        "end": _google_boundary(payload.end_at, payload.timezone),
        "status": (payload.status or EventStatus.confirmed).value,
    }
    if payload.description:
        body["description"] = payload.description
    if payload.attendees:
        body["attendees"] = [{"email": email} for email in payload.attendees]
    if payload.private_metadata:
        body["extendedProperties"] = {"private": dict(payload.private_metadata)}
    return body


def _build_google_event_patch_body(patch: CalendarEventUpdate) -> dict[str, Any]:
    """Translate a CalendarEventUpdate into a Google PATCH body with only the set fields."""
    body: dict[str, Any] = {}
    if patch.title is not None:
        body["summary"] = patch.title
    if patch.start_at is not None:
        body["start"] = _google_boundary(patch.start_at, patch.timezone)
    if patch.end_at is not None:
        body["end"] = _google_boundary(patch.end_at, patch.timezone)
    if patch.description is not None:
        body["description"] = patch.description
    if patch.attendees is not None:
        body["attendees"] = [{"email": email} for email in patch.attendees]
    if patch.status is not None:
        body["status"] = patch.status.value
    if patch.private_metadata is not None:
        body["extendedProperties"] = {"private": dict(patch.private_metadata)}
    return body


class GoogleCalendarProvider(CalendarProvider):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        *,
        credentials: _GoogleOAuthCredentials,
        timezone: str = "UTC",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timezone = timezone
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    @classmethod
    def from_env(
        cls,
        *,
        credentials_env: str = GOOGLE_CALENDAR_CREDENTIALS_ENV,
        timezone: str = "UTC",
        http_client: httpx.AsyncClient | None = None,
    ) -> GoogleCalendarProvider:
        """Build a provider from the credential JSON stored in *credentials_env*."""
        raw = os.environ.get(credentials_env)
        if raw is None or not raw.strip():
            raise CalendarCredentialError(
                f"Environment variable {credentials_env} is not set; "
                "Google Calendar credentials are required"
            )
        credentials = _GoogleOAuthCredentials.from_json(raw)
        return cls(credentials=credentials, timezone=timezone, http_client=http_client)

    @property
    def name(self) -> str:
        return "google"

    def _to_event(self, payload: dict[str, Any], fallback_timezone: str) -> CalendarEvent:
        try:
            return _google_event_to_calendar_event(payload, fallback_timezone=fallback_timezone)
        except ValueError as exc:
            raise CalendarUnavailableError(
                f"Google Calendar returned a malformed event: {exc}"
            ) from exc

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
        event_id: str | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        _raise_for_google_status(response, event_id=event_id)

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarUnavailableError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarUnavailableError(
                "Google Calendar API returned an unexpected JSON payload shape"
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
            force_refresh=False,
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=True,
            )

        # Honour Retry-After on 429, exponential backoff on 503.
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
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
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

    @staticmethod
    def _event_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is None:
            return path
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{path}/{quote(normalized_event_id, safe='')}"

    async def list_events(
        self,
        *,
        calendar_id: str,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = 250,
    ) -> list[CalendarEvent]:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": min(limit, 2500),
        }
        if start_at is not None:
            params["timeMin"] = _google_rfc3339(start_at)
        if end_at is not None:
            params["timeMax"] = _google_rfc3339(end_at)

        events: list[CalendarEvent] = []
        while True:
            payload = await self._request_google_json(
                "GET", self._event_path(calendar_id), params=params
            )
            items = payload.get("items")
            if not isinstance(items, list):
                raise CalendarUnavailableError(
                    "Google Calendar list_events response missing items array"
                )
            for item in items:
                if not isinstance(item, dict):
                    continue
                events.append(self._to_event(item, self._timezone))
                if len(events) >= limit:
                    return events

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                return events
            params = {**params, "pageToken": next_page_token}

    async def get_event(self, *, calendar_id: str, event_id: str) -> CalendarEvent | None:
        try:
            payload = await self._request_google_json(
                "GET", self._event_path(calendar_id, event_id), event_id=event_id
            )
        except CalendarEventNotFoundError:
            return None
        event = self._to_event(payload, self._timezone)
        if event.status == EventStatus.cancelled:
            return None
        return event

    async def create_event(
        self,
        *,
        calendar_id: str,
        payload: CalendarEventCreate,
    ) -> CalendarEvent:
        response_payload = await self._request_google_json(
            "POST",
            self._event_path(calendar_id),
            json_body=_build_google_event_body(payload),
        )
        return self._to_event(response_payload, payload.timezone or self._timezone)

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        patch: CalendarEventUpdate,
    ) -> CalendarEvent:
        extra_headers: dict[str, str] | None = None
        if patch.etag is not None:
            extra_headers = {"If-Match": patch.etag}

        response_payload = await self._request_google_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            json_body=_build_google_event_patch_body(patch),
            extra_headers=extra_headers,
            event_id=event_id,
        )
        return self._to_event(response_payload, patch.timezone or self._timezone)

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete a Google Calendar event.

        A 404/410 response is treated as success (the event was already
        deleted).  Attendees are not notified.
        """
        response = await self._request_with_bearer(
            method="DELETE",
            path=self._event_path(calendar_id, event_id),
            params={"sendUpdates": "none"},
        )
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )
            return
        _raise_for_google_status(response)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
