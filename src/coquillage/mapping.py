"""Bijective mapping between appointment rows and calendar events.

The mapping is not a separate table: it is the ``external_event_id`` column
of the appointment row, unique among non-null values.  This module is the
only place that binds a row to an event; everything else updates rows in
place through :meth:`RecordStore.update_by_id`.
"""

from __future__ import annotations

import logging

from coquillage.models import Appointment, NewAppointment
from coquillage.store.base import RecordStore

logger = logging.getLogger(__name__)


class AppointmentMapping:
    """Lookups and inserts for the ``external_event_id <-> id`` association."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def lookup_by_external_id(self, external_event_id: str) -> Appointment | None:
        """Return the single row bound to *external_event_id*, or ``None``."""
        normalized = external_event_id.strip()
        if not normalized:
            return None
        return await self._store.query_by_external_id(normalized)

    async def lookup_by_record_id(self, record_id: int) -> Appointment | None:
        """Return the row with primary key *record_id*, or ``None``."""
        return await self._store.get_by_id(record_id)

    async def record(self, external_event_id: str, appointment: NewAppointment) -> Appointment:
        """Insert *appointment* bound to an event that is known to exist.

        Raises:
            ValueError: *external_event_id* is blank.
        """
        normalized = external_event_id.strip()
        if not normalized:
            raise ValueError("external_event_id must be a non-empty string")
        bound = appointment.model_copy(update={"external_event_id": normalized})
        stored = await self._store.insert(bound)
        logger.debug("Mapped external_event_id=%s to appointment id=%s", normalized, stored.id)
        return stored
