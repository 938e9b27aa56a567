"""Translation between appointments and calendar event payloads.

Appointment fields are carried as first-class private metadata on the event
(``appointment_type``, ``appointment_date``, ``appointment_time`` and the
patient fields) so they can be read back without parsing the title or
description.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from typing import Any
from zoneinfo import ZoneInfo

from coquillage.calendar.base import (
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    EventStatus,
)
from coquillage.models import (
    DEFAULT_APPOINTMENT_TYPE,
    AppointmentStatus,
    NewAppointment,
)

SOURCE_KEY = "source"
SOURCE_VALUE = "coquillage"

TYPE_KEY = "appointment_type"
DATE_KEY = "appointment_date"
TIME_KEY = "appointment_time"
PATIENT_KEYS = ("patient_name", "patient_email", "patient_phone")


class EventMetadataError(ValueError):
    """Raised when an event does not carry the metadata of an appointment."""


def is_managed_event(event: CalendarEvent) -> bool:
    """Return True when *event* was written by this service."""
    return event.private_metadata.get(SOURCE_KEY) == SOURCE_VALUE


def event_title(appointment_type: str, patient_name: str, patient_email: str) -> str:
    who = patient_name or patient_email or "patient"
    return f"{appointment_type.capitalize()}: {who}"


def event_window(
    date: dt.date,
    time: dt.time,
    *,
    timezone: str,
    duration_minutes: int,
) -> tuple[dt.datetime, dt.datetime]:
    """Return the (start, end) of an appointment in *timezone*."""
    start_at = dt.datetime.combine(date, time, tzinfo=ZoneInfo(timezone))
    return start_at, start_at + dt.timedelta(minutes=duration_minutes)


def appointment_metadata(fields: Mapping[str, Any]) -> dict[str, str]:
    """Build the private metadata map for an appointment's fields."""
    metadata = {
        SOURCE_KEY: SOURCE_VALUE,
        TYPE_KEY: str(fields.get("appointment_type") or DEFAULT_APPOINTMENT_TYPE),
        DATE_KEY: fields["date"].isoformat(),
        TIME_KEY: fields["time"].isoformat(),
    }
    for key in PATIENT_KEYS:
        value = fields.get(key) or ""
        if value:
            metadata[key] = str(value)
    return metadata


def build_event_create(
    fields: Mapping[str, Any],
    *,
    timezone: str,
    duration_minutes: int,
) -> CalendarEventCreate:
    """Build the calendar create payload for a new appointment."""
    start_at, end_at = event_window(
        fields["date"], fields["time"], timezone=timezone, duration_minutes=duration_minutes
    )
    email = fields.get("patient_email") or ""
    return CalendarEventCreate(
        title=event_title(
            str(fields.get("appointment_type") or DEFAULT_APPOINTMENT_TYPE),
            fields.get("patient_name") or "",
            email,
        ),
        start_at=start_at,
        end_at=end_at,
        timezone=timezone,
        description=fields.get("notes") or None,
        attendees=[email] if email else [],
        status=EventStatus.confirmed,
        private_metadata=appointment_metadata(fields),
    )


def build_event_update(
    merged: Mapping[str, Any],
    *,
    timezone: str,
    duration_minutes: int | None,
) -> CalendarEventUpdate:
    """Build a calendar patch carrying the full merged state of an appointment.

    The event window is only rewritten when *duration_minutes* is given, so an
    update that leaves date and time alone keeps the event's original length.
    """
    start_at: dt.datetime | None = None
    end_at: dt.datetime | None = None
    if duration_minutes is not None:
        start_at, end_at = event_window(
            merged["date"], merged["time"], timezone=timezone, duration_minutes=duration_minutes
        )
    email = merged.get("patient_email") or ""
    status = (
        EventStatus.cancelled
        if merged.get("status") == AppointmentStatus.cancelled
        else EventStatus.confirmed
    )
    return CalendarEventUpdate(
        title=event_title(
            str(merged.get("appointment_type") or DEFAULT_APPOINTMENT_TYPE),
            merged.get("patient_name") or "",
            email,
        ),
        start_at=start_at,
        end_at=end_at,
        timezone=timezone,
        description=merged.get("notes") or "",
        attendees=[email] if email else [],
        status=status,
        private_metadata=appointment_metadata(merged),
    )


def appointment_from_event(event: CalendarEvent) -> NewAppointment:
    """Rebuild the row of an appointment from its event's private metadata.

    Raises:
        EventMetadataError: The event lacks the date/time metadata.
    """
    metadata = event.private_metadata
    raw_date = metadata.get(DATE_KEY)
    raw_time = metadata.get(TIME_KEY)
    if not raw_date or not raw_time:
        raise EventMetadataError(
            f"Event {event.event_id!r} carries no {DATE_KEY}/{TIME_KEY} metadata"
        )
    try:
        date = dt.date.fromisoformat(raw_date)
        time = dt.time.fromisoformat(raw_time)
    except ValueError as exc:
        raise EventMetadataError(
            f"Event {event.event_id!r} has malformed appointment metadata: {exc}"
        ) from exc

    return NewAppointment(
        external_event_id=event.event_id,
        patient_name=metadata.get("patient_name", ""),
        patient_email=metadata.get("patient_email", ""),
        patient_phone=metadata.get("patient_phone", ""),
        date=date,
        time=time,
        appointment_type=metadata.get(TYPE_KEY) or DEFAULT_APPOINTMENT_TYPE,
        status=AppointmentStatus.confirmed,
        notes=event.description or "",
    )
