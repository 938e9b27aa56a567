"""Payment confirmation endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from coquillage.api.deps import get_payment_recorder
from coquillage.api.models import ApiResponse, ConfirmPaymentRequest
from coquillage.payments import PaymentConfirmation, PaymentRecorder

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/confirm", response_model=ApiResponse[PaymentConfirmation])
async def confirm_payment(
    body: ConfirmPaymentRequest,
    recorder: PaymentRecorder = Depends(get_payment_recorder),
) -> ApiResponse[PaymentConfirmation]:
    """Record the payment if the intent succeeded."""
    confirmation = await recorder.confirm_payment(body.payment_intent_id)
    return ApiResponse[PaymentConfirmation](data=confirmation)
