"""Appointment data model, validated operation inputs and derived snapshots."""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_APPOINTMENT_TYPE = "consultation"


class AppointmentStatus(StrEnum):
    """Lifecycle states of an appointment."""

    pending = "pending"
    confirmed = "confirmed"
    cancelled = "cancelled"


# Allowed status changes; cancelled is terminal.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    AppointmentStatus.pending: frozenset(
        {AppointmentStatus.confirmed, AppointmentStatus.cancelled}
    ),
    AppointmentStatus.confirmed: frozenset({AppointmentStatus.cancelled}),
    AppointmentStatus.cancelled: frozenset(),
}


def can_transition(current: str, requested: str) -> bool:
    """Return whether a row in *current* status may move to *requested*."""
    if current == requested:
        return current != AppointmentStatus.cancelled
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


class Appointment(BaseModel):
    """A stored appointment row.

    ``status`` is kept as a plain string: rows written by this service always
    hold an :class:`AppointmentStatus` value, but the record store is the
    source of truth for business data and may contain legacy values.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    external_event_id: str | None = None
    patient_name: str = ""
    patient_email: str = ""
    patient_phone: str = ""
    date: dt.date
    time: dt.time
    appointment_type: str = Field(default=DEFAULT_APPOINTMENT_TYPE, alias="type")
    status: str = AppointmentStatus.pending.value
    notes: str = ""
    created_at: dt.datetime
    updated_at: dt.datetime


class NewAppointment(BaseModel):
    """Row payload handed to :meth:`RecordStore.insert`."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    external_event_id: str | None = None
    patient_name: str = ""
    patient_email: str = ""
    patient_phone: str = ""
    date: dt.date
    time: dt.time
    appointment_type: str = Field(default=DEFAULT_APPOINTMENT_TYPE, alias="type")
    status: AppointmentStatus
    notes: str = ""


class _PatientFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    patient_name: str = ""
    patient_email: str = ""
    patient_phone: str = ""
    appointment_type: str = Field(default=DEFAULT_APPOINTMENT_TYPE, alias="type")
    notes: str = ""

    @field_validator("patient_name", "patient_email", "patient_phone", "notes", mode="before")
    @classmethod
    def _normalize_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return _strip(value)

    @field_validator("appointment_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        value = _strip(value)
        if value is None or value == "":
            return DEFAULT_APPOINTMENT_TYPE
        return value


class CreateAppointmentInput(_PatientFields):
    """Validated input for ``create_appointment``.

    ``date``, ``time`` and an attendee identity (patient name or email) are
    required before any network call is attempted.
    """

    date: dt.date
    time: dt.time
    duration_minutes: int | None = Field(default=None, gt=0, le=24 * 60)

    @model_validator(mode="after")
    def _require_attendee(self) -> CreateAppointmentInput:
        if not self.patient_name and not self.patient_email:
            raise ValueError("an attendee identity is required: patient_name or patient_email")
        return self


class ConsultationInput(_PatientFields):
    """Validated input for ``book_consultation`` (record store only)."""

    date: dt.date
    time: dt.time


class UpdateAppointmentInput(BaseModel):
    """Validated input for ``update_appointment``.

    Only the fields explicitly provided are applied.  ``null`` is accepted for
    the free-text fields (cleared to ``""``) but not for ``date``, ``time`` or
    ``status``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    patient_name: str | None = None
    patient_email: str | None = None
    patient_phone: str | None = None
    date: dt.date | None = None
    time: dt.time | None = None
    appointment_type: str | None = Field(default=None, alias="type")
    status: AppointmentStatus | None = None
    notes: str | None = None

    @field_validator("patient_name", "patient_email", "patient_phone", "notes", mode="before")
    @classmethod
    def _normalize_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("appointment_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        value = _strip(value)
        if value == "":
            raise ValueError("type must be a non-empty string when set")
        return value

    @model_validator(mode="after")
    def _validate_fields_set(self) -> UpdateAppointmentInput:
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        for name in ("date", "time", "status", "appointment_type"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        """Return the explicitly provided fields as a record-store patch."""
        patch: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None:
                value = ""
            if isinstance(value, AppointmentStatus):
                value = value.value
            patch[name] = value
        return patch


SortDirection = Literal["asc", "desc"]
SortKey = tuple[str, SortDirection]

# Most recent first; equal timestamps tie-break on id.
DEFAULT_ORDER: tuple[SortKey, ...] = (("created_at", "desc"), ("id", "desc"))


class AppointmentFilter(BaseModel):
    """Conjunctive filter for appointment listings.  Every option is optional."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    date_from: dt.date | None = None
    date_to: dt.date | None = None
    status: str | None = None
    appointment_type: str | None = Field(default=None, alias="type")
    # True keeps only calendar-backed rows; False keeps only rows without an event.
    has_event: bool | None = None

    @model_validator(mode="after")
    def _validate_range(self) -> AppointmentFilter:
        if self.date_from is not None and self.date_to is not None:
            if self.date_from > self.date_to:
                raise ValueError("date_from must not be after date_to")
        return self

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None) -> AppointmentFilter:
        """Build a filter from ``{dateRange: [start, end], status, type}`` options."""
        if not options:
            return cls()
        data = dict(options)
        date_range = data.pop("dateRange", None)
        if date_range is not None:
            if not isinstance(date_range, list | tuple) or len(date_range) != 2:
                raise ValueError("dateRange must be a [start, end] pair")
            data["date_from"], data["date_to"] = date_range
        return cls.model_validate(data)

    def matches(self, appointment: Appointment) -> bool:
        """Return True when *appointment* satisfies every set option."""
        if self.date_from is not None and appointment.date < self.date_from:
            return False
        if self.date_to is not None and appointment.date > self.date_to:
            return False
        if self.status is not None and appointment.status != self.status:
            return False
        if (
            self.appointment_type is not None
            and appointment.appointment_type != self.appointment_type
        ):
            return False
        if self.has_event is not None:
            if (appointment.external_event_id is not None) != self.has_event:
                return False
        return True


class StatsSnapshot(BaseModel):
    """Aggregate counts recomputed on demand over all appointments."""

    total_appointments: int = 0
    confirmed_appointments: int = 0
    pending_appointments: int = 0
    cancelled_appointments: int = 0
    this_week_appointments: int = 0
    this_month_appointments: int = 0
    computed_at: dt.datetime


class PaymentStatus(StrEnum):
    completed = "completed"


class NewPayment(BaseModel):
    """Completed charge to be recorded."""

    stripe_payment_id: str = Field(min_length=1)
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.completed


class PaymentRecord(NewPayment):
    id: int
    created_at: dt.datetime
