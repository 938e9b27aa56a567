"""Request/response envelopes for the HTTP API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "...", "details": {...}}}``.
"""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class ServicesStatus(BaseModel):
    calendar: bool
    record_store: bool
    payments: bool


class HealthResponse(BaseModel):
    status: str
    timestamp: dt.datetime
    environment: str
    services: ServicesStatus


class ConfirmPaymentRequest(BaseModel):
    """Body of ``POST /api/payments/confirm``."""

    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: str = Field(alias="paymentIntentId")
