"""Tests for the orphan sweep and its repair actions."""

from __future__ import annotations

import datetime as dt

import pytest

from coquillage.calendar.base import CalendarUnavailableError
from coquillage.errors import (
    AdapterUnavailableError,
    NotFoundError,
    PartialWriteFailureError,
    ValidationRejectedError,
)
from coquillage.models import AppointmentStatus
from coquillage.reconcile import AppointmentReconciler
from coquillage.store.base import RecordStoreUnavailableError

pytestmark = pytest.mark.unit

WINDOW_START = dt.datetime(2026, 10, 1, tzinfo=dt.UTC)
WINDOW_END = dt.datetime(2026, 10, 31, tzinfo=dt.UTC)


async def _partial_create(synchronizer, store, details) -> str:
    """Create an appointment whose row insert fails; return the orphaned event id."""
    store.failures["insert"] = RecordStoreUnavailableError("down")
    try:
        await synchronizer.create_appointment(details)
    except PartialWriteFailureError as exc:
        return exc.external_event_id
    finally:
        store.failures.pop("insert", None)
    raise AssertionError("expected a partial write")


class TestFindOrphans:
    async def test_consistent_stores(self, synchronizer, reconciler, appointment_details):
        await synchronizer.create_appointment(appointment_details)

        report = await reconciler.find_orphans(WINDOW_START, WINDOW_END)

        assert report.consistent
        assert report.events_checked == 1
        assert report.records_checked == 1

    async def test_finds_both_orphan_kinds(
        self, synchronizer, reconciler, calendar, store, appointment_details
    ):
        orphan_event_id = await _partial_create(synchronizer, store, appointment_details)
        survivor = await synchronizer.create_appointment(
            {**appointment_details, "time": "16:00"}
        )
        del calendar.events[survivor.external_event_id]

        report = await reconciler.find_orphans(WINDOW_START, WINDOW_END)

        assert not report.consistent
        assert [event.event_id for event in report.calendar_orphans] == [orphan_event_id]
        assert [row.id for row in report.record_orphans] == [survivor.id]

    async def test_ignores_foreign_events(self, reconciler, calendar):
        calendar.seed(
            title="Staff meeting",
            start_at=dt.datetime(2026, 10, 5, 9, tzinfo=dt.UTC),
            end_at=dt.datetime(2026, 10, 5, 10, tzinfo=dt.UTC),
        )

        report = await reconciler.find_orphans(WINDOW_START, WINDOW_END)

        assert report.consistent
        assert report.events_checked == 0

    async def test_ignores_consultations_and_cancelled_rows(
        self, synchronizer, reconciler, store, appointment_details
    ):
        await synchronizer.book_consultation({"date": "2026-10-20", "time": "10:00"})
        created = await synchronizer.create_appointment(appointment_details)
        await synchronizer.update_appointment(created.external_event_id, {"status": "cancelled"})

        report = await reconciler.find_orphans(WINDOW_START, WINDOW_END)

        assert report.consistent
        assert report.records_checked == 2

    async def test_event_outside_window_is_not_a_record_orphan(
        self, synchronizer, reconciler, calendar, appointment_details
    ):
        created = await synchronizer.create_appointment(appointment_details)
        event = calendar.events[created.external_event_id]
        # Event moved out of the window by hand; the row still says the 20th.
        calendar.events[event.event_id] = event.model_copy(
            update={
                "start_at": dt.datetime(2026, 12, 1, 9, tzinfo=dt.UTC),
                "end_at": dt.datetime(2026, 12, 1, 10, tzinfo=dt.UTC),
            }
        )

        report = await reconciler.find_orphans(WINDOW_START, WINDOW_END)

        assert report.record_orphans == []

    async def test_inverted_window_rejected(self, reconciler):
        with pytest.raises(ValidationRejectedError):
            await reconciler.find_orphans(WINDOW_END, WINDOW_START)

    async def test_calendar_failure(self, reconciler, calendar):
        calendar.failures["list_events"] = CalendarUnavailableError("down")

        with pytest.raises(AdapterUnavailableError) as exc_info:
            await reconciler.find_orphans(WINDOW_START, WINDOW_END)

        assert exc_info.value.store == "calendar"

    async def test_unconfigured(self, store):
        reconciler = AppointmentReconciler(calendar=None, store=store)

        with pytest.raises(AdapterUnavailableError):
            await reconciler.find_orphans(WINDOW_START, WINDOW_END)


class TestRepairActions:
    async def test_adopt_restores_bijection(
        self, synchronizer, reconciler, store, appointment_details
    ):
        orphan_event_id = await _partial_create(synchronizer, store, appointment_details)

        adopted = await reconciler.adopt_calendar_orphan(orphan_event_id)

        assert adopted.external_event_id == orphan_event_id
        assert adopted.status == AppointmentStatus.confirmed
        assert adopted.patient_email == "ada@example.com"
        assert adopted.date == dt.date(2026, 10, 20)
        assert adopted.time == dt.time(14, 30)
        assert adopted.notes == "First visit"
        assert (await reconciler.find_orphans(WINDOW_START, WINDOW_END)).consistent

        # The adopted row is managed like any other appointment.
        await synchronizer.delete_appointment(orphan_event_id)
        assert store.rows == {}

    async def test_adopt_refuses_mapped_event(
        self, synchronizer, reconciler, appointment_details
    ):
        created = await synchronizer.create_appointment(appointment_details)

        with pytest.raises(ValidationRejectedError, match="already mapped"):
            await reconciler.adopt_calendar_orphan(created.external_event_id)

    async def test_adopt_missing_event(self, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.adopt_calendar_orphan("evt-404")

    async def test_adopt_foreign_event_without_metadata(self, reconciler, calendar):
        event = calendar.seed(
            title="Lunch",
            start_at=dt.datetime(2026, 10, 5, 12, tzinfo=dt.UTC),
            end_at=dt.datetime(2026, 10, 5, 13, tzinfo=dt.UTC),
        )

        with pytest.raises(ValidationRejectedError):
            await reconciler.adopt_calendar_orphan(event.event_id)

    async def test_discard_deletes_orphaned_event(
        self, synchronizer, reconciler, calendar, store, appointment_details
    ):
        orphan_event_id = await _partial_create(synchronizer, store, appointment_details)

        await reconciler.discard_calendar_orphan(orphan_event_id)

        assert orphan_event_id not in calendar.events
        assert store.rows == {}

    async def test_discard_refuses_mapped_event(
        self, synchronizer, reconciler, calendar, appointment_details
    ):
        created = await synchronizer.create_appointment(appointment_details)

        with pytest.raises(ValidationRejectedError):
            await reconciler.discard_calendar_orphan(created.external_event_id)

        assert created.external_event_id in calendar.events
