"""Completed-payment recording.

Confirms a payment intent with the payment provider and, when it succeeded,
records a ``completed`` payment row in the record store.  Creating payment
intents is left to the client-facing checkout flow.
"""

from __future__ import annotations

import abc
import logging
import os
from decimal import Decimal

import stripe
from pydantic import BaseModel

from coquillage.core.telemetry import sync_span
from coquillage.errors import (
    AdapterUnavailableError,
    NotFoundError,
    SyncError,
    ValidationRejectedError,
)
from coquillage.models import NewPayment, PaymentRecord
from coquillage.store.base import RecordStore, RecordStoreError
from coquillage.sync import store_failure

logger = logging.getLogger(__name__)

PAYMENTS = "payments"
STRIPE_SECRET_KEY_ENV = "STRIPE_SECRET_KEY"

# Currencies Stripe expresses in major units (no cents).
_ZERO_DECIMAL_CURRENCIES = frozenset(
    "bif clp djf gnf jpy kmf krw mga pyg rwf ugx vnd vuv xaf xof xpf".split()
)


class PaymentProviderError(RuntimeError):
    """Base error raised by payment providers."""


class PaymentProviderUnavailableError(PaymentProviderError):
    """The provider could not be reached or refused our credentials."""


class PaymentIntentNotFoundError(PaymentProviderError):
    def __init__(self, payment_intent_id: str) -> None:
        self.payment_intent_id = payment_intent_id
        super().__init__(f"Payment intent {payment_intent_id!r} not found")


class PaymentRejectedError(PaymentProviderError):
    """The provider rejected the request."""


class PaymentIntent(BaseModel):
    """Provider-agnostic view of a payment intent."""

    id: str
    status: str
    amount: int
    currency: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def major_amount(self) -> Decimal:
        """Return the amount in major currency units."""
        if self.currency.lower() in _ZERO_DECIMAL_CURRENCIES:
            return Decimal(self.amount)
        return Decimal(self.amount) / Decimal(100)


class PaymentConfirmation(BaseModel):
    payment_intent_id: str
    status: str
    recorded: bool
    payment: PaymentRecord | None = None
    message: str


class PaymentProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Fetch a payment intent by id."""
        ...

    async def shutdown(self) -> None:
        return None


class StripePaymentProvider(PaymentProvider):
    """Stripe provider using the async methods of ``stripe.StripeClient``."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: stripe.StripeClient | None = None,
    ) -> None:
        self._http_client: stripe.HTTPXClient | None = None
        if client is None:
            if not api_key:
                raise PaymentProviderUnavailableError("Stripe secret key is required")
            self._http_client = stripe.HTTPXClient(timeout=30)
            client = stripe.StripeClient(api_key, http_client=self._http_client)
        self._client = client

    @classmethod
    def from_env(cls, secret_key_env: str = STRIPE_SECRET_KEY_ENV) -> StripePaymentProvider:
        api_key = os.environ.get(secret_key_env, "").strip()
        if not api_key:
            raise PaymentProviderUnavailableError(
                f"Environment variable {secret_key_env} is not set; Stripe is not configured"
            )
        return cls(api_key)

    @property
    def name(self) -> str:
        return "stripe"

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        try:
            intent = await self._client.v1.payment_intents.retrieve_async(payment_intent_id)
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404:
                raise PaymentIntentNotFoundError(payment_intent_id) from exc
            raise PaymentRejectedError(exc.user_message or str(exc)) from exc
        except stripe.StripeError as exc:
            raise PaymentProviderUnavailableError(
                f"Stripe request failed: {exc.user_message or exc}"
            ) from exc
        return PaymentIntent(
            id=intent.id,
            status=intent.status,
            amount=intent.amount,
            currency=intent.currency,
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.close_async()


def _provider_failure(exc: PaymentProviderError, *, step: str) -> SyncError:
    if isinstance(exc, PaymentIntentNotFoundError):
        return NotFoundError(str(exc), store=PAYMENTS, step=step)
    if isinstance(exc, PaymentRejectedError):
        return ValidationRejectedError(str(exc), store=PAYMENTS, step=step)
    return AdapterUnavailableError(str(exc), store=PAYMENTS, step=step)


class PaymentRecorder:
    """Confirms payment intents and records completed charges."""

    def __init__(self, *, provider: PaymentProvider | None, store: RecordStore | None) -> None:
        self._provider = provider
        self._store = store

    async def confirm_payment(self, payment_intent_id: str) -> PaymentConfirmation:
        """Record the payment behind *payment_intent_id* if it succeeded.

        Raises:
            AdapterUnavailableError: no payment provider is configured.
            ValidationRejectedError: the intent id is blank or the payment
                has not succeeded.
        """
        with sync_span("confirm_payment"):
            if self._provider is None:
                raise AdapterUnavailableError(
                    "Payment provider is not configured", store=PAYMENTS, step="configure"
                )
            payment_intent_id = payment_intent_id.strip()
            if not payment_intent_id:
                raise ValidationRejectedError("paymentIntentId is required", step="validate")

            try:
                intent = await self._provider.retrieve_payment_intent(payment_intent_id)
            except PaymentProviderError as exc:
                raise _provider_failure(exc, step="retrieve_payment_intent") from exc

            if not intent.succeeded:
                raise ValidationRejectedError(
                    f"Payment not confirmed (status: {intent.status})",
                    store=PAYMENTS,
                    step="check_status",
                )

            if self._store is None:
                logger.warning(
                    "Payment %s succeeded but no record store is configured; not recorded",
                    intent.id,
                )
                return PaymentConfirmation(
                    payment_intent_id=intent.id,
                    status=intent.status,
                    recorded=False,
                    message="Payment confirmed (record store not configured)",
                )

            try:
                payment = await self._store.insert_payment(
                    NewPayment(
                        stripe_payment_id=intent.id,
                        amount=intent.major_amount(),
                        currency=intent.currency.lower(),
                    )
                )
            except RecordStoreError as exc:
                raise store_failure(exc, step="insert_payment") from exc

            logger.info("Recorded payment %s (%s %s)", intent.id, payment.amount, payment.currency)
            return PaymentConfirmation(
                payment_intent_id=intent.id,
                status=intent.status,
                recorded=True,
                payment=payment,
                message="Payment confirmed",
            )
