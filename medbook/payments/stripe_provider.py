"""Stripe payment provider."""

import asyncio
import logging
from typing import Optional

import stripe

from medbook.config import Settings, get_settings
from medbook.payments.base import (
    IntentVerification,
    PaymentConnectionError,
    PaymentIntent,
    PaymentProvider,
    PaymentProviderError,
    RefundResult,
    WebhookEvent,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
IN_FLIGHT = {"processing", "requires_action", "requires_confirmation", "requires_capture"}


def _translate(e: stripe.StripeError) -> PaymentProviderError:
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return PaymentConnectionError(str(e))
    if isinstance(e, stripe.APIError):
        # 5xx on Stripe's side
        return PaymentConnectionError(str(e))
    return PaymentProviderError(str(e))


class StripePaymentProvider(PaymentProvider):
    """PaymentIntent-based provider backed by the ``stripe`` SDK.

    The SDK is synchronous, so every call runs in a worker thread.
    """

    name = "STRIPE"

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.api_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; booking start will fail until configured")
        else:
            logger.info("Stripe provider initialized")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntent:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create payment intent ({idempotency_key}): {e}")
            raise _translate(e) from e

        return PaymentIntent(id=intent.id, client_secret=intent.client_secret, status=intent.status)

    async def verify_intent(self, intent_id: str) -> IntentVerification:
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve payment intent {intent_id}: {e}")
            raise _translate(e) from e

        return IntentVerification(
            intent_id=intent.id,
            status=intent.status,
            succeeded=intent.status == SUCCEEDED,
            pending=intent.status in IN_FLIGHT,
            amount_cents=intent.amount_received,
        )

    async def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self.api_key,
                payment_intent=intent_id,
                amount=amount_cents,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to refund payment intent {intent_id}: {e}")
            raise _translate(e) from e

        return RefundResult(refund_id=refund.id, status=refund.status, amount_cents=refund.amount)

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if not self.webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}") from e

        obj = event["data"]["object"]
        intent_id = obj["id"] if event["type"].startswith("payment_intent.") else None
        return WebhookEvent(id=event["id"], type=event["type"], intent_id=intent_id, data=dict(obj))
