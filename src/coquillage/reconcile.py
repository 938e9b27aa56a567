"""Orphan sweep for cross-store inconsistencies.

A :class:`PartialWriteFailureError` leaves either a calendar event with no
row (calendar orphan) or a row whose event is gone (record orphan).
:meth:`AppointmentReconciler.find_orphans` is read-only; the two repair
actions only run when an operator invokes them.
"""

from __future__ import annotations

import datetime as dt
import logging

from pydantic import BaseModel, Field

from coquillage.calendar.base import (
    CalendarError,
    CalendarEvent,
    CalendarEventNotFoundError,
    CalendarProvider,
)
from coquillage.core.telemetry import sync_span
from coquillage.errors import AdapterUnavailableError, NotFoundError, ValidationRejectedError
from coquillage.events import EventMetadataError, appointment_from_event, is_managed_event
from coquillage.mapping import AppointmentMapping
from coquillage.models import Appointment, AppointmentFilter, AppointmentStatus
from coquillage.store.base import RecordStore, RecordStoreError
from coquillage.sync import CALENDAR, RECORD_STORE, calendar_failure, store_failure

logger = logging.getLogger(__name__)

_LIST_LIMIT = 2500


class ReconciliationReport(BaseModel):
    """Result of one orphan sweep over ``[window_start, window_end]``."""

    window_start: dt.datetime
    window_end: dt.datetime
    calendar_orphans: list[CalendarEvent] = Field(default_factory=list)
    record_orphans: list[Appointment] = Field(default_factory=list)
    events_checked: int = 0
    records_checked: int = 0

    @property
    def consistent(self) -> bool:
        return not self.calendar_orphans and not self.record_orphans


class AppointmentReconciler:
    """Detects and repairs calendar/record-store divergence."""

    def __init__(
        self,
        *,
        calendar: CalendarProvider | None,
        store: RecordStore | None,
        calendar_id: str = "primary",
    ) -> None:
        self._calendar = calendar
        self._store = store
        self._calendar_id = calendar_id

    def _adapters(self) -> tuple[CalendarProvider, AppointmentMapping]:
        if self._calendar is None:
            raise AdapterUnavailableError(
                "Calendar provider is not configured", store=CALENDAR, step="configure"
            )
        if self._store is None:
            raise AdapterUnavailableError(
                "Record store is not configured", store=RECORD_STORE, step="configure"
            )
        return self._calendar, AppointmentMapping(self._store)

    async def _mapped_row(self, mapping: AppointmentMapping, event_id: str) -> Appointment | None:
        try:
            return await mapping.lookup_by_external_id(event_id)
        except RecordStoreError as exc:
            raise store_failure(exc, step="query_by_external_id") from exc

    async def _event_exists(self, calendar: CalendarProvider, event_id: str) -> bool:
        try:
            event = await calendar.get_event(calendar_id=self._calendar_id, event_id=event_id)
        except CalendarError as exc:
            raise calendar_failure(exc, step="get_event") from exc
        return event is not None

    async def find_orphans(self, start: dt.datetime, end: dt.datetime) -> ReconciliationReport:
        """List orphans of both kinds whose appointment falls in ``[start, end]``.

        Only events written by this service are considered.  Candidates are
        confirmed with a point lookup, so an event or row that merely sits
        outside the window is not reported.  Cancelled rows are skipped: their
        event is cancelled on purpose.
        """
        if end < start:
            raise ValidationRejectedError("window end must not be before window start")

        with sync_span("find_orphans"):
            calendar, mapping = self._adapters()
            assert self._store is not None

            try:
                events = await calendar.list_events(
                    calendar_id=self._calendar_id, start_at=start, end_at=end, limit=_LIST_LIMIT
                )
            except CalendarError as exc:
                raise calendar_failure(exc, step="list_events") from exc
            try:
                rows = await self._store.query_all(
                    AppointmentFilter(date_from=start.date(), date_to=end.date())
                )
            except RecordStoreError as exc:
                raise store_failure(exc, step="query_all") from exc

            managed = [event for event in events if is_managed_event(event)]
            listed_ids = {event.event_id for event in events}
            mapped_ids = {row.external_event_id for row in rows if row.external_event_id}

            calendar_orphans: list[CalendarEvent] = []
            for event in managed:
                if event.event_id in mapped_ids:
                    continue
                if await self._mapped_row(mapping, event.event_id) is None:
                    calendar_orphans.append(event)

            record_orphans: list[Appointment] = []
            for row in rows:
                if row.external_event_id is None or row.external_event_id in listed_ids:
                    continue
                if row.status == AppointmentStatus.cancelled:
                    continue
                if not await self._event_exists(calendar, row.external_event_id):
                    record_orphans.append(row)

            report = ReconciliationReport(
                window_start=start,
                window_end=end,
                calendar_orphans=calendar_orphans,
                record_orphans=record_orphans,
                events_checked=len(managed),
                records_checked=len(rows),
            )
            if report.consistent:
                logger.info("Orphan sweep found no inconsistencies (%s to %s)", start, end)
            else:
                logger.warning(
                    "Orphan sweep found %d calendar orphan(s) and %d record orphan(s)",
                    len(calendar_orphans),
                    len(record_orphans),
                )
            return report

    async def discard_calendar_orphan(self, external_event_id: str) -> None:
        """Delete a calendar event that no row is mapped to."""
        with sync_span("discard_calendar_orphan"):
            calendar, mapping = self._adapters()
            row = await self._mapped_row(mapping, external_event_id)
            if row is not None:
                raise ValidationRejectedError(
                    f"Event {external_event_id!r} is mapped to appointment {row.id}; "
                    "delete the appointment instead",
                    store=RECORD_STORE,
                    step="query_by_external_id",
                )
            try:
                await calendar.delete_event(
                    calendar_id=self._calendar_id, event_id=external_event_id
                )
            except CalendarEventNotFoundError:
                logger.info("Calendar orphan %s already deleted", external_event_id)
                return
            except CalendarError as exc:
                raise calendar_failure(exc, step="delete_event") from exc
            logger.info("Discarded calendar orphan %s", external_event_id)

    async def adopt_calendar_orphan(self, external_event_id: str) -> Appointment:
        """Store the row for a calendar event whose persistence step failed.

        The row is rebuilt from the event's private metadata with status
        ``confirmed``.
        """
        with sync_span("adopt_calendar_orphan"):
            calendar, mapping = self._adapters()
            row = await self._mapped_row(mapping, external_event_id)
            if row is not None:
                raise ValidationRejectedError(
                    f"Event {external_event_id!r} is already mapped to appointment {row.id}",
                    store=RECORD_STORE,
                    step="query_by_external_id",
                )
            try:
                event = await calendar.get_event(
                    calendar_id=self._calendar_id, event_id=external_event_id
                )
            except CalendarError as exc:
                raise calendar_failure(exc, step="get_event") from exc
            if event is None:
                raise NotFoundError(
                    f"Calendar event {external_event_id!r} does not exist",
                    store=CALENDAR,
                    step="get_event",
                )
            try:
                new_row = appointment_from_event(event)
            except EventMetadataError as exc:
                raise ValidationRejectedError(
                    str(exc), store=CALENDAR, step="read_metadata"
                ) from exc
            try:
                stored = await mapping.record(event.event_id, new_row)
            except RecordStoreError as exc:
                raise store_failure(exc, step="insert") from exc
            logger.info(
                "Adopted calendar orphan %s as appointment id=%s", event.event_id, stored.id
            )
            return stored
