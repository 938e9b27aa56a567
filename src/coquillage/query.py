"""Filtered appointment listings and derived statistics.

Reads only from the record store; the calendar is never consulted.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from coquillage.core.telemetry import sync_span
from coquillage.errors import AdapterUnavailableError, ValidationRejectedError
from coquillage.models import (
    DEFAULT_ORDER,
    Appointment,
    AppointmentFilter,
    AppointmentStatus,
    StatsSnapshot,
)
from coquillage.store.base import RecordStore, RecordStoreError
from coquillage.sync import RECORD_STORE, store_failure, validation_message

logger = logging.getLogger(__name__)


def week_start(today: dt.date) -> dt.date:
    """Return the most recent Sunday on or before *today*."""
    # date.weekday(): Monday == 0 ... Sunday == 6
    return today - dt.timedelta(days=(today.weekday() + 1) % 7)


def month_start(today: dt.date) -> dt.date:
    return today.replace(day=1)


def summarize_appointments(
    appointments: Iterable[Appointment],
    now: dt.datetime,
) -> StatsSnapshot:
    """Compute the statistics snapshot over *appointments* as of *now*.

    ``now`` must already be expressed in the local timezone: its date is
    "today" for the week and month windows.  An appointment counts toward a
    window when ``window_start <= appointment.date <= today``.  Status counts
    are exact matches; unknown statuses only count toward the total.
    """
    today = now.date()
    this_week = week_start(today)
    this_month = month_start(today)

    total = confirmed = pending = cancelled = in_week = in_month = 0
    for appointment in appointments:
        total += 1
        if appointment.status == AppointmentStatus.confirmed:
            confirmed += 1
        elif appointment.status == AppointmentStatus.pending:
            pending += 1
        elif appointment.status == AppointmentStatus.cancelled:
            cancelled += 1
        if this_week <= appointment.date <= today:
            in_week += 1
        if this_month <= appointment.date <= today:
            in_month += 1

    return StatsSnapshot(
        total_appointments=total,
        confirmed_appointments=confirmed,
        pending_appointments=pending,
        cancelled_appointments=cancelled,
        this_week_appointments=in_week,
        this_month_appointments=in_month,
        computed_at=now,
    )


class AppointmentQueryEngine:
    """Read-side operations over the record store."""

    def __init__(
        self,
        *,
        store: RecordStore | None,
        timezone: str = "UTC",
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._store = store
        self._zone = ZoneInfo(timezone)
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    def _require_store(self) -> RecordStore:
        if self._store is None:
            raise AdapterUnavailableError(
                "Record store is not configured", store=RECORD_STORE, step="configure"
            )
        return self._store

    async def list_appointments(
        self,
        filter: AppointmentFilter | Mapping[str, Any] | None = None,
    ) -> list[Appointment]:
        """Return matching appointments, newest first (ties broken by id, descending).

        *filter* is an :class:`AppointmentFilter` or the options mapping
        ``{"dateRange": [start, end], "status": ..., "type": ...}``.
        """
        with sync_span("list_appointments"):
            store = self._require_store()
            if filter is None or isinstance(filter, AppointmentFilter):
                criteria = filter
            else:
                try:
                    criteria = AppointmentFilter.from_options(filter)
                except ValidationError as exc:
                    raise ValidationRejectedError(
                        validation_message(exc), step="validate"
                    ) from exc
                except ValueError as exc:
                    raise ValidationRejectedError(str(exc), step="validate") from exc
            try:
                return await store.query_all(criteria, DEFAULT_ORDER)
            except RecordStoreError as exc:
                raise store_failure(exc, step="query_all") from exc

    async def compute_statistics(self, now: dt.datetime | None = None) -> StatsSnapshot:
        """Recompute the statistics snapshot over every stored appointment."""
        with sync_span("compute_statistics"):
            store = self._require_store()
            current = now or self._clock()
            # Naive values are wall-clock time in the configured zone.
            if current.tzinfo is None:
                current = current.replace(tzinfo=self._zone)
            current = current.astimezone(self._zone)
            try:
                appointments = await store.query_all(None, DEFAULT_ORDER)
            except RecordStoreError as exc:
                raise store_failure(exc, step="query_all") from exc
            snapshot = summarize_appointments(appointments, current)
            logger.debug(
                "Computed statistics over %d appointment(s)", snapshot.total_appointments
            )
            return snapshot
