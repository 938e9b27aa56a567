"""Tests for payment confirmation and recording."""

from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from coquillage.errors import AdapterUnavailableError, NotFoundError, ValidationRejectedError
from coquillage.payments import (
    PaymentIntent,
    PaymentIntentNotFoundError,
    PaymentProvider,
    PaymentProviderUnavailableError,
    PaymentRecorder,
    PaymentRejectedError,
    StripePaymentProvider,
)
from coquillage.store.base import RecordStoreUnavailableError
from coquillage.testing import InMemoryRecordStore

pytestmark = pytest.mark.unit


def _stripe_client(*, intent=None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    retrieve = AsyncMock(return_value=intent, side_effect=error)
    client.v1.payment_intents.retrieve_async = retrieve
    return client


def _intent(**overrides) -> SimpleNamespace:
    fields = {"id": "pi_123", "status": "succeeded", "amount": 5000, "currency": "usd"}
    fields.update(overrides)
    return SimpleNamespace(**fields)


class _StaticProvider(PaymentProvider):
    """Minimal provider returning a fixed intent."""

    name = "static"

    def __init__(self, intent: PaymentIntent) -> None:
        self.intent = intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        return self.intent

    async def shutdown(self) -> None:
        return None


# ---------------------------------------------------------------------------
# PaymentIntent
# ---------------------------------------------------------------------------


class TestPaymentIntent:
    def test_major_amount(self):
        intent = PaymentIntent(id="pi_1", status="succeeded", amount=1999, currency="eur")
        assert intent.major_amount() == Decimal("19.99")

    def test_zero_decimal_currency(self):
        intent = PaymentIntent(id="pi_1", status="succeeded", amount=5000, currency="JPY")
        assert intent.major_amount() == Decimal(5000)

    def test_succeeded(self):
        assert PaymentIntent(id="pi", status="succeeded", amount=1, currency="usd").succeeded
        assert not PaymentIntent(
            id="pi", status="requires_payment_method", amount=1, currency="usd"
        ).succeeded


# ---------------------------------------------------------------------------
# StripePaymentProvider
# ---------------------------------------------------------------------------


class TestStripePaymentProvider:
    async def test_retrieve(self):
        client = _stripe_client(intent=_intent())
        provider = StripePaymentProvider(client=client)

        intent = await provider.retrieve_payment_intent("pi_123")

        client.v1.payment_intents.retrieve_async.assert_awaited_once_with("pi_123")
        assert intent == PaymentIntent(id="pi_123", status="succeeded", amount=5000, currency="usd")

    async def test_not_found(self):
        error = stripe.InvalidRequestError("No such payment_intent", "intent", http_status=404)
        provider = StripePaymentProvider(client=_stripe_client(error=error))

        with pytest.raises(PaymentIntentNotFoundError):
            await provider.retrieve_payment_intent("pi_missing")

    async def test_rejected(self):
        error = stripe.InvalidRequestError("Invalid id", "intent", http_status=400)
        provider = StripePaymentProvider(client=_stripe_client(error=error))

        with pytest.raises(PaymentRejectedError):
            await provider.retrieve_payment_intent("bogus")

    async def test_connection_error_is_unavailable(self):
        error = stripe.APIConnectionError("Network unreachable")
        provider = StripePaymentProvider(client=_stripe_client(error=error))

        with pytest.raises(PaymentProviderUnavailableError):
            await provider.retrieve_payment_intent("pi_123")

    def test_from_env_requires_key(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("CLINIC_STRIPE_KEY", raising=False)

        with pytest.raises(PaymentProviderUnavailableError, match="CLINIC_STRIPE_KEY"):
            StripePaymentProvider.from_env("CLINIC_STRIPE_KEY")

    async def test_injected_client_is_not_closed(self):
        provider = StripePaymentProvider(client=_stripe_client(intent=_intent()))
        await provider.shutdown()


# ---------------------------------------------------------------------------
# PaymentRecorder
# ---------------------------------------------------------------------------


class TestPaymentRecorder:
    async def test_records_completed_payment(self, store: InMemoryRecordStore):
        provider = StripePaymentProvider(client=_stripe_client(intent=_intent()))
        recorder = PaymentRecorder(provider=provider, store=store)

        confirmation = await recorder.confirm_payment(" pi_123 ")

        assert confirmation.recorded is True
        assert confirmation.payment_intent_id == "pi_123"
        assert confirmation.payment is not None
        assert confirmation.payment.amount == Decimal("50")
        assert confirmation.payment.currency == "usd"
        assert confirmation.payment.status == "completed"
        assert [p.stripe_payment_id for p in store.payments] == ["pi_123"]

    async def test_unsucceeded_payment_rejected(self, store: InMemoryRecordStore):
        intent = PaymentIntent(id="pi_1", status="processing", amount=100, currency="usd")
        recorder = PaymentRecorder(provider=_StaticProvider(intent), store=store)

        with pytest.raises(ValidationRejectedError, match="not confirmed"):
            await recorder.confirm_payment("pi_1")

        assert store.payments == []

    async def test_without_store_confirms_but_does_not_record(self):
        intent = PaymentIntent(id="pi_1", status="succeeded", amount=100, currency="usd")
        recorder = PaymentRecorder(provider=_StaticProvider(intent), store=None)

        confirmation = await recorder.confirm_payment("pi_1")

        assert confirmation.recorded is False
        assert confirmation.payment is None
        assert "not configured" in confirmation.message

    async def test_missing_provider(self, store: InMemoryRecordStore):
        recorder = PaymentRecorder(provider=None, store=store)

        with pytest.raises(AdapterUnavailableError) as exc_info:
            await recorder.confirm_payment("pi_1")

        assert exc_info.value.store == "payments"

    async def test_blank_id_rejected(self, store: InMemoryRecordStore):
        intent = PaymentIntent(id="pi_1", status="succeeded", amount=100, currency="usd")
        recorder = PaymentRecorder(provider=_StaticProvider(intent), store=store)

        with pytest.raises(ValidationRejectedError):
            await recorder.confirm_payment("  ")

    async def test_unknown_intent_is_not_found(self, store: InMemoryRecordStore):
        error = stripe.InvalidRequestError("No such payment_intent", "intent", http_status=404)
        provider = StripePaymentProvider(client=_stripe_client(error=error))
        recorder = PaymentRecorder(provider=provider, store=store)

        with pytest.raises(NotFoundError) as exc_info:
            await recorder.confirm_payment("pi_missing")

        assert exc_info.value.step == "retrieve_payment_intent"

    async def test_duplicate_confirmation_rejected(self, store: InMemoryRecordStore):
        intent = PaymentIntent(id="pi_1", status="succeeded", amount=100, currency="usd")
        recorder = PaymentRecorder(provider=_StaticProvider(intent), store=store)
        await recorder.confirm_payment("pi_1")

        with pytest.raises(ValidationRejectedError):
            await recorder.confirm_payment("pi_1")

        assert len(store.payments) == 1

    async def test_store_failure(self, store: InMemoryRecordStore):
        intent = PaymentIntent(id="pi_1", status="succeeded", amount=100, currency="usd")
        store.failures["insert_payment"] = RecordStoreUnavailableError("down")
        recorder = PaymentRecorder(provider=_StaticProvider(intent), store=store)

        with pytest.raises(AdapterUnavailableError) as exc_info:
            await recorder.confirm_payment("pi_1")

        assert exc_info.value.step == "insert_payment"
