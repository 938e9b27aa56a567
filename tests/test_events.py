"""Tests for the appointment <-> calendar event translation."""

from __future__ import annotations

import datetime as dt
from zoneinfo import ZoneInfo

import pytest

from coquillage.calendar.base import CalendarEvent, EventStatus
from coquillage.events import (
    EventMetadataError,
    appointment_from_event,
    build_event_create,
    build_event_update,
    event_window,
    is_managed_event,
)
from coquillage.models import AppointmentStatus

pytestmark = pytest.mark.unit


def _fields(**overrides) -> dict:
    fields = {
        "patient_name": "Ada Lovelace",
        "patient_email": "ada@example.com",
        "patient_phone": "",
        "date": dt.date(2026, 10, 20),
        "time": dt.time(14, 30),
        "appointment_type": "consultation",
        "notes": "First visit",
    }
    fields.update(overrides)
    return fields


def _event(**overrides) -> CalendarEvent:
    fields = {
        "event_id": "evt-1",
        "title": "Consultation: Ada Lovelace",
        "start_at": dt.datetime(2026, 10, 20, 14, 30, tzinfo=dt.UTC),
        "end_at": dt.datetime(2026, 10, 20, 15, 0, tzinfo=dt.UTC),
        "timezone": "UTC",
        "private_metadata": {
            "source": "coquillage",
            "appointment_type": "follow-up",
            "appointment_date": "2026-10-20",
            "appointment_time": "14:30:00",
            "patient_name": "Ada Lovelace",
            "patient_email": "ada@example.com",
        },
    }
    fields.update(overrides)
    return CalendarEvent.model_validate(fields)


class TestEventWindow:
    def test_window_in_local_timezone(self):
        start, end = event_window(
            dt.date(2026, 10, 20), dt.time(9, 0), timezone="Europe/Paris", duration_minutes=45
        )
        assert start == dt.datetime(2026, 10, 20, 9, 0, tzinfo=ZoneInfo("Europe/Paris"))
        assert end - start == dt.timedelta(minutes=45)


class TestBuildEventCreate:
    def test_payload(self):
        payload = build_event_create(_fields(), timezone="UTC", duration_minutes=30)

        assert payload.title == "Consultation: Ada Lovelace"
        assert payload.end_at - payload.start_at == dt.timedelta(minutes=30)
        assert payload.attendees == ["ada@example.com"]
        assert payload.description == "First visit"
        assert payload.status == EventStatus.confirmed
        assert payload.private_metadata == {
            "source": "coquillage",
            "appointment_type": "consultation",
            "appointment_date": "2026-10-20",
            "appointment_time": "14:30:00",
            "patient_name": "Ada Lovelace",
            "patient_email": "ada@example.com",
        }

    def test_title_falls_back_to_email(self):
        payload = build_event_create(
            _fields(patient_name=""), timezone="UTC", duration_minutes=30
        )
        assert payload.title == "Consultation: ada@example.com"

    def test_no_email_means_no_attendees(self):
        payload = build_event_create(
            _fields(patient_email=""), timezone="UTC", duration_minutes=30
        )
        assert payload.attendees == []


class TestBuildEventUpdate:
    def test_window_untouched_without_duration(self):
        patch = build_event_update(
            {**_fields(), "status": "confirmed"}, timezone="UTC", duration_minutes=None
        )
        assert patch.start_at is None
        assert patch.end_at is None
        assert patch.status == EventStatus.confirmed

    def test_window_rewritten_with_duration(self):
        patch = build_event_update(
            {**_fields(time=dt.time(16, 0)), "status": "confirmed"},
            timezone="UTC",
            duration_minutes=30,
        )
        assert patch.start_at == dt.datetime(2026, 10, 20, 16, 0, tzinfo=ZoneInfo("UTC"))
        assert patch.end_at == dt.datetime(2026, 10, 20, 16, 30, tzinfo=ZoneInfo("UTC"))

    def test_cancelled_status_cancels_event(self):
        patch = build_event_update(
            {**_fields(), "status": AppointmentStatus.cancelled.value},
            timezone="UTC",
            duration_minutes=None,
        )
        assert patch.status == EventStatus.cancelled

    def test_cleared_notes_clear_description(self):
        patch = build_event_update(
            {**_fields(notes=""), "status": "confirmed"}, timezone="UTC", duration_minutes=None
        )
        assert patch.description == ""


class TestManagedEvents:
    def test_managed_event(self):
        assert is_managed_event(_event())

    def test_foreign_event(self):
        assert not is_managed_event(_event(private_metadata={}))


class TestAppointmentFromEvent:
    def test_rebuilds_confirmed_row(self):
        row = appointment_from_event(_event(description="Bring results"))

        assert row.external_event_id == "evt-1"
        assert row.date == dt.date(2026, 10, 20)
        assert row.time == dt.time(14, 30)
        assert row.appointment_type == "follow-up"
        assert row.patient_email == "ada@example.com"
        assert row.status == AppointmentStatus.confirmed
        assert row.notes == "Bring results"

    def test_round_trip_through_create_payload(self):
        payload = build_event_create(_fields(), timezone="UTC", duration_minutes=30)
        event = _event(private_metadata=payload.private_metadata, description=payload.description)

        row = appointment_from_event(event)

        assert row.patient_name == "Ada Lovelace"
        assert row.appointment_type == "consultation"
        assert row.notes == "First visit"

    def test_missing_metadata(self):
        with pytest.raises(EventMetadataError, match="evt-1"):
            appointment_from_event(_event(private_metadata={"source": "coquillage"}))

    def test_malformed_metadata(self):
        metadata = {"appointment_date": "20/10/2026", "appointment_time": "14:30:00"}
        with pytest.raises(EventMetadataError, match="malformed"):
            appointment_from_event(_event(private_metadata=metadata))
