"""PostgreSQL record store backed by an asyncpg pool.

The ``appointments`` table is created by the core alembic revision.  The
mapping invariant (at most one row per ``external_event_id``) is enforced by
a partial unique index, so a duplicate insert surfaces as
:class:`RecordRejectedError` rather than silently corrupting the mapping.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import asyncpg

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
    RecordStoreUnavailableError,
    validate_order,
    validate_patch,
)

logger = logging.getLogger(__name__)

_APPOINTMENT_COLUMNS = (
    "id, external_event_id, patient_name, patient_email, patient_phone, "
    "date, time, appointment_type, status, notes, created_at, updated_at"
)
_PAYMENT_COLUMNS = "id, stripe_payment_id, amount, currency, status, created_at"


@contextmanager
def _translate_errors(step: str) -> Iterator[None]:
    """Map asyncpg and transport failures onto the record store errors."""
    try:
        yield
    except (asyncpg.IntegrityConstraintViolationError, asyncpg.DataError) as exc:
        raise RecordRejectedError(f"{step} rejected: {exc}") from exc
    except asyncpg.PostgresError as exc:
        raise RecordStoreUnavailableError(f"{step} failed: {exc}") from exc
    except (asyncpg.InterfaceError, OSError, TimeoutError) as exc:
        raise RecordStoreUnavailableError(f"{step} failed: {exc}") from exc


def _row_to_appointment(row: asyncpg.Record) -> Appointment:
    return Appointment.model_validate(dict(row))


def _order_clause(order_by: Sequence[SortKey]) -> str:
    validate_order(order_by)
    if not order_by:
        return ""
    # Columns and directions are whitelisted by validate_order.
    parts = [f"{column} {direction.upper()}" for column, direction in order_by]
    return " ORDER BY " + ", ".join(parts)


def _where_clause(filter: AppointmentFilter | None) -> tuple[str, list[Any]]:
    if filter is None:
        return "", []
    conditions: list[str] = []
    args: list[Any] = []
    idx = 1
    if filter.date_from is not None:
        conditions.append(f"date >= ${idx}")
        args.append(filter.date_from)
        idx += 1
    if filter.date_to is not None:
        conditions.append(f"date <= ${idx}")
        args.append(filter.date_to)
        idx += 1
    if filter.status is not None:
        conditions.append(f"status = ${idx}")
        args.append(filter.status)
        idx += 1
    if filter.appointment_type is not None:
        conditions.append(f"appointment_type = ${idx}")
        args.append(filter.appointment_type)
        idx += 1
    if filter.has_event is not None:
        conditions.append(
            "external_event_id IS NOT NULL" if filter.has_event else "external_event_id IS NULL"
        )
    if not conditions:
        return "", []
    return " WHERE " + " AND ".join(conditions), args


class PostgresRecordStore(RecordStore):
    """Record store over an asyncpg pool.

    ``pool`` may be any object exposing the asyncpg pool query methods
    (``fetch``, ``fetchrow``, ``execute``).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert(self, appointment: NewAppointment) -> Appointment:
        with _translate_errors("insert"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO appointments (
                    external_event_id, patient_name, patient_email, patient_phone,
                    date, time, appointment_type, status, notes
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING {_APPOINTMENT_COLUMNS}
                """,
                appointment.external_event_id,
                appointment.patient_name,
                appointment.patient_email,
                appointment.patient_phone,
                appointment.date,
                appointment.time,
                appointment.appointment_type,
                appointment.status.value,
                appointment.notes,
            )
        stored = _row_to_appointment(row)
        logger.debug(
            "Inserted appointment id=%s external_event_id=%s", stored.id, stored.external_event_id
        )
        return stored

    async def update_by_id(self, record_id: int, patch: dict[str, Any]) -> Appointment:
        validate_patch(patch)
        columns = sorted(patch)
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=2))
        with _translate_errors("update_by_id"):
            row = await self._pool.fetchrow(
                f"""
                UPDATE appointments
                SET {assignments}, updated_at = now()
                WHERE id = $1
                RETURNING {_APPOINTMENT_COLUMNS}
                """,
                record_id,
                *(patch[column] for column in columns),
            )
        if row is None:
            raise RecordNotFoundError(record_id)
        return _row_to_appointment(row)

    async def delete_by_id(self, record_id: int) -> None:
        with _translate_errors("delete_by_id"):
            result = await self._pool.execute("DELETE FROM appointments WHERE id = $1", record_id)
        if result == "DELETE 0":
            raise RecordNotFoundError(record_id)

    async def get_by_id(self, record_id: int) -> Appointment | None:
        with _translate_errors("get_by_id"):
            row = await self._pool.fetchrow(
                f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments WHERE id = $1",
                record_id,
            )
        return _row_to_appointment(row) if row is not None else None

    async def query_by_external_id(self, external_event_id: str) -> Appointment | None:
        with _translate_errors("query_by_external_id"):
            rows = await self._pool.fetch(
                f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments WHERE external_event_id = $1",
                external_event_id,
            )
        if len(rows) > 1:
            # Only reachable if the unique index was dropped out-of-band.
            raise RecordRejectedError(
                f"{len(rows)} rows share external_event_id {external_event_id!r}"
            )
        return _row_to_appointment(rows[0]) if rows else None

    async def query_all(
        self,
        filter: AppointmentFilter | None = None,
        order_by: Sequence[SortKey] = DEFAULT_ORDER,
    ) -> list[Appointment]:
        where, args = _where_clause(filter)
        order = _order_clause(order_by)
        with _translate_errors("query_all"):
            rows = await self._pool.fetch(
                f"SELECT {_APPOINTMENT_COLUMNS} FROM appointments{where}{order}",
                *args,
            )
        return [_row_to_appointment(row) for row in rows]

    async def insert_payment(self, payment: NewPayment) -> PaymentRecord:
        with _translate_errors("insert_payment"):
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO payments (stripe_payment_id, amount, currency, status)
                VALUES ($1, $2, $3, $4)
                RETURNING {_PAYMENT_COLUMNS}
                """,
                payment.stripe_payment_id,
                payment.amount,
                payment.currency,
                payment.status.value,
            )
        return PaymentRecord.model_validate(dict(row))
