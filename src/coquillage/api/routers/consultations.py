"""Consultation booking endpoints, mounted at ``/api/consultations``.

A consultation is a ``pending`` appointment stored without a calendar event.
Nothing links it to a calendar event later, and the appointment endpoints
address rows by event id, so a consultation stays in the record store as
booked.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from coquillage.api.deps import get_query_engine, get_synchronizer
from coquillage.api.models import ApiResponse
from coquillage.models import Appointment, AppointmentFilter, ConsultationInput
from coquillage.query import AppointmentQueryEngine
from coquillage.sync import AppointmentSynchronizer

router = APIRouter(prefix="/api/consultations", tags=["consultations"])


@router.get("", response_model=ApiResponse[list[Appointment]])
async def list_consultations(
    query: AppointmentQueryEngine = Depends(get_query_engine),
) -> ApiResponse[list[Appointment]]:
    rows = await query.list_appointments(AppointmentFilter(has_event=False))
    return ApiResponse[list[Appointment]](data=rows)


@router.post("", response_model=ApiResponse[Appointment], status_code=201)
async def book_consultation(
    body: ConsultationInput,
    sync: AppointmentSynchronizer = Depends(get_synchronizer),
) -> ApiResponse[Appointment]:
    appointment = await sync.book_consultation(body)
    return ApiResponse[Appointment](data=appointment)
