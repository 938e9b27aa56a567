"""Appointment dual-write synchronizer.

Every mutating operation writes to the calendar first and to the record
store second, strictly in sequence.  There is no cross-store transaction:
when the second write fails after the first one succeeded, the operation
raises :class:`PartialWriteFailureError` carrying the surviving identifier
instead of hiding the inconsistency.  Nothing in here retries.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any, TypeVar

from opentelemetry import trace
from pydantic import BaseModel, ValidationError

from coquillage.calendar.base import (
    CalendarError,
    CalendarEventNotFoundError,
    CalendarProvider,
    CalendarRejectedError,
)
from coquillage.core.metrics import SyncMetrics
from coquillage.core.telemetry import sync_span
from coquillage.errors import (
    AdapterUnavailableError,
    NotFoundError,
    NotModifiableError,
    PartialWriteFailureError,
    SyncError,
    ValidationRejectedError,
)
from coquillage.events import build_event_create, build_event_update
from coquillage.mapping import AppointmentMapping
from coquillage.models import (
    Appointment,
    AppointmentStatus,
    ConsultationInput,
    CreateAppointmentInput,
    NewAppointment,
    UpdateAppointmentInput,
    can_transition,
)
from coquillage.store.base import (
    RecordNotFoundError,
    RecordRejectedError,
    RecordStore,
    RecordStoreError,
)

logger = logging.getLogger(__name__)

CALENDAR = "calendar"
RECORD_STORE = "record_store"

_ModelT = TypeVar("_ModelT", bound=BaseModel)


def validation_message(exc: ValidationError) -> str:
    """Flatten a pydantic ValidationError into one readable line."""
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid input"


def validate_input(model: type[_ModelT], data: _ModelT | Mapping[str, Any]) -> _ModelT:
    """Validate *data* into *model* or raise ``ValidationRejectedError``."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ValidationRejectedError(validation_message(exc), step="validate") from exc


def calendar_failure(exc: CalendarError, *, step: str) -> SyncError:
    """Wrap a calendar adapter error with the failing step."""
    if isinstance(exc, CalendarEventNotFoundError):
        return NotFoundError(str(exc), store=CALENDAR, step=step)
    if isinstance(exc, CalendarRejectedError):
        return ValidationRejectedError(str(exc), store=CALENDAR, step=step)
    return AdapterUnavailableError(str(exc), store=CALENDAR, step=step)


def store_failure(exc: RecordStoreError, *, step: str) -> SyncError:
    """Wrap a record store adapter error with the failing step."""
    if isinstance(exc, RecordNotFoundError):
        return NotFoundError(str(exc), store=RECORD_STORE, step=step)
    if isinstance(exc, RecordRejectedError):
        return ValidationRejectedError(str(exc), store=RECORD_STORE, step=step)
    return AdapterUnavailableError(str(exc), store=RECORD_STORE, step=step)


class AppointmentSynchronizer:
    """Creates, updates and deletes appointments across calendar and record store.

    Adapters are injected at construction time.  ``None`` means the adapter
    is not configured; operations that need it raise
    ``AdapterUnavailableError`` before any I/O.
    """

    def __init__(
        self,
        *,
        calendar: CalendarProvider | None,
        store: RecordStore | None,
        calendar_id: str = "primary",
        timezone: str = "UTC",
        default_duration_minutes: int = 30,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._calendar = calendar
        self._store = store
        self._mapping = AppointmentMapping(store) if store is not None else None
        self._calendar_id = calendar_id
        self._timezone = timezone
        self._default_duration_minutes = default_duration_minutes
        self._metrics = metrics or SyncMetrics()

    @property
    def calendar_configured(self) -> bool:
        return self._calendar is not None

    @property
    def store_configured(self) -> bool:
        return self._store is not None

    # ------------------------------------------------------------------
    # Adapter access
    # ------------------------------------------------------------------

    def _require_calendar(self) -> CalendarProvider:
        if self._calendar is None:
            raise AdapterUnavailableError(
                "Calendar provider is not configured", store=CALENDAR, step="configure"
            )
        return self._calendar

    def _require_store(self) -> RecordStore:
        if self._store is None:
            raise AdapterUnavailableError(
                "Record store is not configured", store=RECORD_STORE, step="configure"
            )
        return self._store

    def _require_mapping(self) -> AppointmentMapping:
        self._require_store()
        assert self._mapping is not None
        return self._mapping

    async def _lookup(self, external_event_id: str) -> Appointment:
        mapping = self._require_mapping()
        try:
            current = await mapping.lookup_by_external_id(external_event_id)
        except RecordStoreError as exc:
            raise store_failure(exc, step="query_by_external_id") from exc
        if current is None:
            raise NotFoundError(
                f"No appointment is mapped to external_event_id {external_event_id!r}",
                store=RECORD_STORE,
                step="query_by_external_id",
            )
        return current

    @contextmanager
    def _observe(self, operation: str) -> Iterator[trace.Span]:
        """Run *operation* inside a span and record its outcome metric."""
        started = time.monotonic()
        outcome = "ok"
        with sync_span(operation) as span:
            try:
                yield span
            except SyncError as exc:
                outcome = exc.kind.value
                span.set_attribute("coquillage.error_kind", outcome)
                if isinstance(exc, PartialWriteFailureError):
                    self._metrics.partial_write_failure(operation)
                raise
            except Exception:
                outcome = "error"
                raise
            finally:
                elapsed_ms = (time.monotonic() - started) * 1000
                self._metrics.record_operation(operation, outcome, elapsed_ms)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_appointment(
        self, details: CreateAppointmentInput | Mapping[str, Any]
    ) -> Appointment:
        """Create the calendar event, then persist a confirmed row bound to it.

        Raises:
            ValidationRejectedError: *details* is invalid, or the calendar
                rejected the event payload.  No row is created.
            AdapterUnavailableError: an adapter is not configured or the
                calendar could not be reached.  No row is created.
            PartialWriteFailureError: the event exists but the row could not
                be stored.  ``external_event_id`` names the orphaned event.
        """
        with self._observe("create_appointment") as span:
            calendar = self._require_calendar()
            mapping = self._require_mapping()
            payload = validate_input(CreateAppointmentInput, details)

            fields = payload.model_dump(exclude={"duration_minutes"})
            duration = payload.duration_minutes or self._default_duration_minutes
            try:
                event_payload = build_event_create(
                    fields, timezone=self._timezone, duration_minutes=duration
                )
            except ValueError as exc:
                raise ValidationRejectedError(str(exc), step="build_event") from exc

            try:
                event = await calendar.create_event(
                    calendar_id=self._calendar_id, payload=event_payload
                )
            except CalendarError as exc:
                raise calendar_failure(exc, step="create_event") from exc
            span.set_attribute("coquillage.external_event_id", event.event_id)

            row = NewAppointment(
                **fields,
                external_event_id=event.event_id,
                status=AppointmentStatus.confirmed,
            )
            try:
                stored = await mapping.record(event.event_id, row)
            except Exception as exc:
                logger.error(
                    "Partial write on create: calendar event %s has no appointment row",
                    event.event_id,
                    exc_info=True,
                )
                raise PartialWriteFailureError(
                    f"Calendar event {event.event_id} was created but the appointment "
                    f"could not be stored: {exc}",
                    external_event_id=event.event_id,
                    completed_step="calendar.create_event",
                    guidance=(
                        "Retry storing the appointment for this event, or delete the "
                        "orphaned calendar event. Do not re-create the appointment."
                    ),
                    store=RECORD_STORE,
                    step="insert",
                ) from exc

            logger.info(
                "Created appointment id=%s external_event_id=%s", stored.id, event.event_id
            )
            return stored

    async def update_appointment(
        self,
        external_event_id: str,
        changes: UpdateAppointmentInput | Mapping[str, Any],
    ) -> Appointment:
        """Patch the calendar event, then update the mapped row in place.

        Raises:
            NotFoundError: no row is mapped to *external_event_id* (the
                calendar is left untouched), or the event is gone.
            NotModifiableError: the row is cancelled or the requested status
                change is not allowed.  Nothing is written.
            PartialWriteFailureError: the event was updated but the row was
                not.  Re-sync the row; do not re-create it.
        """
        with self._observe("update_appointment") as span:
            span.set_attribute("coquillage.external_event_id", external_event_id)
            calendar = self._require_calendar()
            store = self._require_store()
            update = validate_input(UpdateAppointmentInput, changes)

            current = await self._lookup(external_event_id)
            requested = update.status.value if update.status is not None else None
            if current.status == AppointmentStatus.cancelled:
                raise NotModifiableError(
                    "Cancelled appointments cannot be modified",
                    current_status=current.status,
                    requested_status=requested,
                    store=RECORD_STORE,
                    step="check_transition",
                )
            if requested is not None and not can_transition(current.status, requested):
                raise NotModifiableError(
                    f"Cannot change status from {current.status} to {requested}",
                    current_status=current.status,
                    requested_status=requested,
                    store=RECORD_STORE,
                    step="check_transition",
                )

            patch = update.changes()
            merged = {**current.model_dump(), **patch}
            moved = "date" in patch or "time" in patch
            try:
                event_patch = build_event_update(
                    merged,
                    timezone=self._timezone,
                    duration_minutes=self._default_duration_minutes if moved else None,
                )
            except ValueError as exc:
                raise ValidationRejectedError(str(exc), step="build_event") from exc

            try:
                await calendar.update_event(
                    calendar_id=self._calendar_id,
                    event_id=external_event_id,
                    patch=event_patch,
                )
            except CalendarError as exc:
                raise calendar_failure(exc, step="update_event") from exc

            try:
                updated = await store.update_by_id(current.id, patch)
            except Exception as exc:
                logger.error(
                    "Partial write on update: calendar event %s updated, appointment %s not",
                    external_event_id,
                    current.id,
                    exc_info=True,
                )
                raise PartialWriteFailureError(
                    f"Calendar event {external_event_id} was updated but appointment "
                    f"{current.id} could not be updated: {exc}",
                    external_event_id=external_event_id,
                    record_id=current.id,
                    completed_step="calendar.update_event",
                    guidance=(
                        "Re-sync the appointment from the calendar event by retrying "
                        "the update. Do not re-create the appointment."
                    ),
                    store=RECORD_STORE,
                    step="update_by_id",
                ) from exc

            logger.info(
                "Updated appointment id=%s external_event_id=%s fields=%s",
                updated.id,
                external_event_id,
                sorted(patch),
            )
            return updated

    async def delete_appointment(self, external_event_id: str) -> None:
        """Delete the calendar event, then the mapped row.

        A calendar event that is already gone counts as deleted.

        Raises:
            NotFoundError: no row is mapped to *external_event_id*.
            AdapterUnavailableError / ValidationRejectedError: the calendar
                delete failed.  The row is left untouched.
            PartialWriteFailureError: the event is gone but the row could not
                be deleted.  ``record_id`` names the dangling row.
        """
        with self._observe("delete_appointment") as span:
            span.set_attribute("coquillage.external_event_id", external_event_id)
            calendar = self._require_calendar()
            store = self._require_store()
            current = await self._lookup(external_event_id)

            try:
                await calendar.delete_event(
                    calendar_id=self._calendar_id, event_id=external_event_id
                )
            except CalendarEventNotFoundError:
                logger.info(
                    "Calendar event %s already deleted; removing appointment %s",
                    external_event_id,
                    current.id,
                )
            except CalendarError as exc:
                raise calendar_failure(exc, step="delete_event") from exc

            try:
                await store.delete_by_id(current.id)
            except Exception as exc:
                logger.error(
                    "Partial write on delete: calendar event %s deleted, appointment %s remains",
                    external_event_id,
                    current.id,
                    exc_info=True,
                )
                raise PartialWriteFailureError(
                    f"Calendar event {external_event_id} was deleted but appointment "
                    f"{current.id} could not be deleted: {exc}",
                    external_event_id=external_event_id,
                    record_id=current.id,
                    completed_step="calendar.delete_event",
                    guidance="Delete the appointment by record id to finish the deletion.",
                    store=RECORD_STORE,
                    step="delete_by_id",
                ) from exc

            logger.info(
                "Deleted appointment id=%s external_event_id=%s", current.id, external_event_id
            )

    async def book_consultation(
        self, details: ConsultationInput | Mapping[str, Any]
    ) -> Appointment:
        """Store a pending appointment without touching the calendar."""
        with self._observe("book_consultation"):
            store = self._require_store()
            payload = validate_input(ConsultationInput, details)
            row = NewAppointment(
                **payload.model_dump(),
                external_event_id=None,
                status=AppointmentStatus.pending,
            )
            try:
                stored = await store.insert(row)
            except RecordStoreError as exc:
                raise store_failure(exc, step="insert") from exc
            logger.info("Booked consultation id=%s", stored.id)
            return stored
