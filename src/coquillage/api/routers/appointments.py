"""Appointment endpoints, mounted at ``/api/appointments``.

Writes go through the synchronizer (calendar first, record store second);
reads come from the record store only.
"""

from __future__ import annotations

import datetime as dt

from fastapi import APIRouter, Depends, Query, Response

from coquillage.api.deps import get_query_engine, get_synchronizer
from coquillage.api.models import ApiResponse
from coquillage.models import (
    Appointment,
    CreateAppointmentInput,
    StatsSnapshot,
    UpdateAppointmentInput,
)
from coquillage.query import AppointmentQueryEngine
from coquillage.sync import AppointmentSynchronizer

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


@router.get("", response_model=ApiResponse[list[Appointment]])
async def list_appointments(
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
    status: str | None = None,
    appointment_type: str | None = Query(default=None, alias="type"),
    query: AppointmentQueryEngine = Depends(get_query_engine),
) -> ApiResponse[list[Appointment]]:
    """List appointments, newest first, optionally filtered."""
    options = {
        "date_from": date_from,
        "date_to": date_to,
        "status": status,
        "type": appointment_type,
    }
    rows = await query.list_appointments(
        {key: value for key, value in options.items() if value is not None}
    )
    return ApiResponse[list[Appointment]](data=rows)


@router.post("", response_model=ApiResponse[Appointment], status_code=201)
async def create_appointment(
    body: CreateAppointmentInput,
    sync: AppointmentSynchronizer = Depends(get_synchronizer),
) -> ApiResponse[Appointment]:
    appointment = await sync.create_appointment(body)
    return ApiResponse[Appointment](data=appointment)


# Declared before the ``/{external_event_id}`` routes.
@router.get("/statistics", response_model=ApiResponse[StatsSnapshot])
async def appointment_statistics(
    query: AppointmentQueryEngine = Depends(get_query_engine),
) -> ApiResponse[StatsSnapshot]:
    snapshot = await query.compute_statistics()
    return ApiResponse[StatsSnapshot](data=snapshot)


@router.patch("/{external_event_id}", response_model=ApiResponse[Appointment])
async def update_appointment(
    external_event_id: str,
    body: UpdateAppointmentInput,
    sync: AppointmentSynchronizer = Depends(get_synchronizer),
) -> ApiResponse[Appointment]:
    appointment = await sync.update_appointment(external_event_id, body)
    return ApiResponse[Appointment](data=appointment)


@router.delete("/{external_event_id}", status_code=204, response_class=Response)
async def delete_appointment(
    external_event_id: str,
    sync: AppointmentSynchronizer = Depends(get_synchronizer),
) -> Response:
    await sync.delete_appointment(external_event_id)
    return Response(status_code=204)
