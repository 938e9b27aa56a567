"""In-memory adapters for tests and local development.

Both fakes record every adapter call in ``calls`` and can be told to fail a
given method through ``failures`` (method name -> exception instance).  A
configured failure is raised on every call until it is removed.
"""

from __future__ import annotations

import datetime as dt
import itertools
from collections.abc import Callable, Sequence
from typing import Any

from coquillage.calendar.base import (
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventNotFoundError,
    CalendarEventUpdate,
    CalendarProvider,
    EventStatus,
)
from coquillage.models import (
    DEFAULT_ORDER,
    Appointment,
    AppointmentFilter,
    NewAppointment,
    NewPayment,
    PaymentRecord,
    SortKey,
)
from coquillage.store.base import (
    RecordNotFoundError,
    RecordRejectedError,
    RecordStore,
    validate_order,
    validate_patch,
)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class _FailureInjection:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        failure = self.failures.get(method)
        if failure is not None:
            raise failure


class InMemoryRecordStore(_FailureInjection, RecordStore):
    """Dict-backed record store with the same semantics as the Postgres one."""

    def __init__(self, *, clock: Callable[[], dt.datetime] | None = None) -> None:
        super().__init__()
        self.rows: dict[int, Appointment] = {}
        self.payments: list[PaymentRecord] = []
        self._clock = clock or _utcnow
        self._ids = itertools.count(1)
        self._payment_ids = itertools.count(1)

    def seed(self, **fields: Any) -> Appointment:
        """Insert a row directly, bypassing failure injection and call recording."""
        now = self._clock()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", fields["created_at"])
        row = Appointment.model_validate({"id": next(self._ids), **fields})
        self.rows[row.id] = row
        return row

    async def insert(self, appointment: NewAppointment) -> Appointment:
        self._enter("insert")
        if appointment.external_event_id is not None:
            for row in self.rows.values():
                if row.external_event_id == appointment.external_event_id:
                    raise RecordRejectedError(
                        f"duplicate key value violates unique constraint on "
                        f"external_event_id={appointment.external_event_id!r}"
                    )
        now = self._clock()
        row = Appointment.model_validate(
            {
                **appointment.model_dump(),
                "status": appointment.status.value,
                "id": next(self._ids),
                "created_at": now,
                "updated_at": now,
            }
        )
        self.rows[row.id] = row
        return row

    async def update_by_id(self, record_id: int, patch: dict[str, Any]) -> Appointment:
        self._enter("update_by_id")
        validate_patch(patch)
        current = self.rows.get(record_id)
        if current is None:
            raise RecordNotFoundError(record_id)
        updated = current.model_copy(update={**patch, "updated_at": self._clock()})
        self.rows[record_id] = updated
        return updated

    async def delete_by_id(self, record_id: int) -> None:
        self._enter("delete_by_id")
        if self.rows.pop(record_id, None) is None:
            raise RecordNotFoundError(record_id)

    async def get_by_id(self, record_id: int) -> Appointment | None:
        self._enter("get_by_id")
        return self.rows.get(record_id)

    async def query_by_external_id(self, external_event_id: str) -> Appointment | None:
        self._enter("query_by_external_id")
        matches = [row for row in self.rows.values() if row.external_event_id == external_event_id]
        if len(matches) > 1:
            raise RecordRejectedError(
                f"{len(matches)} rows share external_event_id {external_event_id!r}"
            )
        return matches[0] if matches else None

    async def query_all(
        self,
        filter: AppointmentFilter | None = None,
        order_by: Sequence[SortKey] = DEFAULT_ORDER,
    ) -> list[Appointment]:
        self._enter("query_all")
        validate_order(order_by)
        rows = [row for row in self.rows.values() if filter is None or filter.matches(row)]
        # Stable sorts applied from the least significant key.
        for column, direction in reversed(order_by):
            rows.sort(key=lambda row, c=column: getattr(row, c), reverse=direction == "desc")
        return rows

    async def insert_payment(self, payment: NewPayment) -> PaymentRecord:
        self._enter("insert_payment")
        if any(p.stripe_payment_id == payment.stripe_payment_id for p in self.payments):
            raise RecordRejectedError(
                f"payment {payment.stripe_payment_id!r} is already recorded"
            )
        record = PaymentRecord(
            **payment.model_dump(), id=next(self._payment_ids), created_at=self._clock()
        )
        self.payments.append(record)
        return record


class FakeCalendarProvider(_FailureInjection, CalendarProvider):
    """Dict-backed calendar.  Cancelled events are kept but hidden from reads."""

    def __init__(self, *, timezone: str = "UTC") -> None:
        super().__init__()
        self.events: dict[str, CalendarEvent] = {}
        self._timezone = timezone
        self._ids = itertools.count(1)
        self.shutdown_called = False

    @property
    def name(self) -> str:
        return "fake"

    def seed(self, **fields: Any) -> CalendarEvent:
        fields.setdefault("event_id", f"evt-{next(self._ids)}")
        fields.setdefault("timezone", self._timezone)
        event = CalendarEvent.model_validate(fields)
        self.events[event.event_id] = event
        return event

    def _visible(self, event: CalendarEvent) -> bool:
        return event.status != EventStatus.cancelled

    async def list_events(
        self,
        *,
        calendar_id: str,
        start_at: dt.datetime | None = None,
        end_at: dt.datetime | None = None,
        limit: int = 250,
    ) -> list[CalendarEvent]:
        self._enter("list_events")
        events = []
        for event in self.events.values():
            if not self._visible(event):
                continue
            if start_at is not None and event.end_at <= start_at:
                continue
            if end_at is not None and event.start_at >= end_at:
                continue
            events.append(event)
        events.sort(key=lambda event: event.start_at)
        return events[:limit]

    async def get_event(self, *, calendar_id: str, event_id: str) -> CalendarEvent | None:
        self._enter("get_event")
        event = self.events.get(event_id)
        if event is None or not self._visible(event):
            return None
        return event

    async def create_event(
        self,
        *,
        calendar_id: str,
        payload: CalendarEventCreate,
    ) -> CalendarEvent:
        self._enter("create_event")
        now = _utcnow()
        event = CalendarEvent(
            event_id=f"evt-{next(self._ids)}",
            title=payload.title,
            start_at=payload.start_at,
            end_at=payload.end_at,
            timezone=payload.timezone or self._timezone,
            description=payload.description,
            attendees=list(payload.attendees),
            status=payload.status or EventStatus.confirmed,
            private_metadata=dict(payload.private_metadata),
            etag=f'"{now.timestamp()}"',
            created_at=now,
            updated_at=now,
        )
        self.events[event.event_id] = event
        return event

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        patch: CalendarEventUpdate,
    ) -> CalendarEvent:
        self._enter("update_event")
        current = self.events.get(event_id)
        if current is None:
            raise CalendarEventNotFoundError(event_id)
        changes = patch.model_dump(exclude_none=True, exclude={"etag"})
        if "title" in changes and not changes["title"]:
            changes.pop("title")
        updated = current.model_copy(update={**changes, "updated_at": _utcnow()})
        self.events[event_id] = updated
        return updated

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        self._enter("delete_event")
        self.events.pop(event_id, None)

    async def shutdown(self) -> None:
        self.shutdown_called = True
