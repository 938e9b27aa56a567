"""Calendar provider contracts and the Google Calendar implementation."""

from coquillage.calendar.base import (
    CalendarCredentialError,
    CalendarError,
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
from coquillage.calendar.google import GoogleCalendarProvider

__all__ = [
    "CalendarCredentialError",
    "CalendarError",
    "CalendarEvent",
    "CalendarEventCreate",
    "CalendarEventNotFoundError",
    "CalendarEventUpdate",
    "CalendarProvider",
    "CalendarRejectedError",
    "CalendarTokenRefreshError",
    "CalendarUnavailableError",
    "EventStatus",
    "GoogleCalendarProvider",
]
