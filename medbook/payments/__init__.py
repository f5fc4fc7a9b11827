"""Payment providers."""

from medbook.payments.base import (
    IntentVerification,
    PaymentConnectionError,
    PaymentIntent,
    PaymentProvider,
    PaymentProviderError,
    RefundResult,
    WebhookEvent,
    WebhookSignatureError,
    to_minor_units,
)
from medbook.payments.gateway import PaymentGateway
from medbook.payments.stripe_provider import StripePaymentProvider

__all__ = [
    "IntentVerification",
    "PaymentConnectionError",
    "PaymentIntent",
    "PaymentGateway",
    "PaymentProvider",
    "PaymentProviderError",
    "RefundResult",
    "StripePaymentProvider",
    "WebhookEvent",
    "WebhookSignatureError",
    "to_minor_units",
]
