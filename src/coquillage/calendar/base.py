"""Provider-agnostic calendar contracts.

This module defines:
- the error hierarchy every calendar provider raises
- ``CalendarEvent``: canonical event shape shared across providers
- ``CalendarEventCreate`` / ``CalendarEventUpdate``: write payloads
- ``CalendarProvider``: the interface the synchronizer depends on
"""

from __future__ import annotations

import abc
from datetime import datetime
from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class CalendarError(RuntimeError):
    """Base error raised by calendar providers."""


class CalendarUnavailableError(CalendarError):
    """The provider could not be reached, authenticated, or answered 5xx."""


class CalendarCredentialError(CalendarUnavailableError):
    """Raised when provider credentials are missing or invalid."""


class CalendarTokenRefreshError(CalendarUnavailableError):
    """Raised when refresh-token exchange fails."""


class CalendarRejectedError(CalendarError):
    """The provider rejected the request payload (4xx other than 404)."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar request rejected ({status_code}): {message}")


class CalendarEventNotFoundError(CalendarError):
    """The addressed event does not exist."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event {event_id!r} not found")


class EventStatus(StrEnum):
    """Event lifecycle states as tracked by the provider."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"


def ensure_valid_timezone(value: str) -> None:
    try:
        ZoneInfo(value)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Unknown timezone: {value!r}") from exc


def _normalize_timezone(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    ensure_valid_timezone(normalized)
    return normalized


class CalendarEvent(BaseModel):
    """Canonical event shape shared across provider implementations."""

    event_id: str
    title: str
    start_at: datetime
    end_at: datetime
    timezone: str
    description: str | None = None
    attendees: list[str] = Field(default_factory=list)
    status: EventStatus | None = None
    private_metadata: dict[str, str] = Field(default_factory=dict)
    etag: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CalendarEventCreate(BaseModel):
    """Payload for creating a calendar event."""

    title: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    timezone: str | None = None
    description: str | None = None
    attendees: list[str] = Field(default_factory=list)
    status: EventStatus | None = None
    private_metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("timezone")
    @classmethod
    def _normalize_timezone(cls, value: str | None) -> str | None:
        return _normalize_timezone(value)

    @model_validator(mode="after")
    def _validate_window(self) -> CalendarEventCreate:
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class CalendarEventUpdate(BaseModel):
    """Patch payload for updating a calendar event."""

    title: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    timezone: str | None = None
    description: str | None = None
    attendees: list[str] | None = None
    status: EventStatus | None = None
    private_metadata: dict[str, str] | None = None
    # Etag from the existing event for optimistic concurrency (sent as If-Match header).
    etag: str | None = None

    @field_validator("timezone")
    @classmethod
    def _normalize_timezone(cls, value: str | None) -> str | None:
        return _normalize_timezone(value)

    @model_validator(mode="after")
    def _validate_window(self) -> CalendarEventUpdate:
        if self.start_at is not None and self.end_at is not None:
            if self.end_at <= self.start_at:
                raise ValueError("end_at must be after start_at")
        return self


class CalendarProvider(abc.ABC):
    """Provider abstraction used by the appointment synchronizer."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        calendar_id: str,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        limit: int = 250,
    ) -> list[CalendarEvent]:
        """Return events in a time window."""
        ...

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> CalendarEvent | None:
        """Fetch a single event by id, or ``None`` when it does not exist."""
        ...

    @abc.abstractmethod
    async def create_event(
        self,
        *,
        calendar_id: str,
        payload: CalendarEventCreate,
    ) -> CalendarEvent:
        """Create an event and return it with its provider-assigned ``event_id``."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        patch: CalendarEventUpdate,
    ) -> CalendarEvent:
        """Update an event.  Raises ``CalendarEventNotFoundError`` when it is gone."""
        ...

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete an event.  Deleting an already-deleted event succeeds."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...
