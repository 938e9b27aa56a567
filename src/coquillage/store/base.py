"""Record store contract for appointment rows and payment records."""

from __future__ import annotations

import abc
from collections.abc import Sequence
from typing import Any

from coquillage.models import (
    DEFAULT_ORDER,
    Appointment,
    AppointmentFilter,
    NewAppointment,
    NewPayment,
    PaymentRecord,
    SortKey,
)

# Columns a caller may patch through update_by_id.
MUTABLE_FIELDS = frozenset(
    {
        "patient_name",
        "patient_email",
        "patient_phone",
        "date",
        "time",
        "appointment_type",
        "status",
        "notes",
    }
)

# Columns a caller may order by.
SORTABLE_FIELDS = frozenset({"id", "created_at", "updated_at", "date", "time", "status"})


class RecordStoreError(RuntimeError):
    """Base error raised by record store adapters."""


class RecordStoreUnavailableError(RecordStoreError):
    """The store could not be reached or timed out."""


class RecordRejectedError(RecordStoreError):
    """The store rejected the payload (constraint or type violation)."""


class RecordNotFoundError(RecordStoreError):
    """The addressed row does not exist."""

    def __init__(self, record_id: int) -> None:
        self.record_id = record_id
        super().__init__(f"Appointment {record_id} not found")


def validate_patch(patch: dict[str, Any]) -> None:
    """Reject patches that touch identity or store-assigned columns."""
    unknown = sorted(set(patch) - MUTABLE_FIELDS)
    if unknown:
        raise RecordRejectedError(f"Cannot patch column(s): {', '.join(unknown)}")
    if not patch:
        raise RecordRejectedError("Patch must change at least one column")


def validate_order(order_by: Sequence[SortKey]) -> None:
    for column, direction in order_by:
        if column not in SORTABLE_FIELDS:
            raise RecordRejectedError(f"Cannot order by column {column!r}")
        if direction not in ("asc", "desc"):
            raise RecordRejectedError(f"Invalid sort direction {direction!r}")


class RecordStore(abc.ABC):
    """Persistence of appointment rows.

    Every method may raise :class:`RecordStoreUnavailableError` or
    :class:`RecordRejectedError`.  ``created_at`` and ``updated_at`` are
    assigned by the store.
    """

    @abc.abstractmethod
    async def insert(self, appointment: NewAppointment) -> Appointment:
        """Persist a new row and return it with its generated ``id``."""
        ...

    @abc.abstractmethod
    async def update_by_id(self, record_id: int, patch: dict[str, Any]) -> Appointment:
        """Apply *patch* to a row in place and refresh ``updated_at``.

        Raises ``RecordNotFoundError`` when the row does not exist.
        """
        ...

    @abc.abstractmethod
    async def delete_by_id(self, record_id: int) -> None:
        """Delete a row.  Raises ``RecordNotFoundError`` when it does not exist."""
        ...

    @abc.abstractmethod
    async def get_by_id(self, record_id: int) -> Appointment | None:
        ...

    @abc.abstractmethod
    async def query_by_external_id(self, external_event_id: str) -> Appointment | None:
        """Return the row mapped to *external_event_id*, or ``None``."""
        ...

    @abc.abstractmethod
    async def query_all(
        self,
        filter: AppointmentFilter | None = None,
        order_by: Sequence[SortKey] = DEFAULT_ORDER,
    ) -> list[Appointment]:
        """Return every row matching *filter*, sorted by *order_by*."""
        ...

    @abc.abstractmethod
    async def insert_payment(self, payment: NewPayment) -> PaymentRecord:
        """Record a completed payment."""
        ...

    async def close(self) -> None:
        """Release store resources."""
        return None
