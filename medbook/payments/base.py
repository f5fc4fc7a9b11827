"""Abstract payment provider interface."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (e.g. dollars) to integer cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class PaymentIntent:
    """A provider-side intent the client completes."""

    id: str
    client_secret: str
    status: str = "requires_payment_method"


@dataclass
class IntentVerification:
    """Server-side view of an intent."""

    intent_id: str
    status: str
    succeeded: bool
    # Still moving (processing, requires_action); neither paid nor failed yet
    pending: bool = False
    amount_cents: Optional[int] = None


@dataclass
class RefundResult:
    refund_id: str
    status: str
    amount_cents: int


@dataclass
class WebhookEvent:
    """Verified provider callback."""

    id: str
    type: str
    intent_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


class PaymentProviderError(Exception):
    """Base exception for payment provider errors."""

    pass


class PaymentConnectionError(PaymentProviderError):
    """Transient failure talking to the provider; safe to retry."""

    pass


class WebhookSignatureError(PaymentProviderError):
    """Webhook payload failed signature verification."""

    pass


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    name: str = "base"

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> PaymentIntent:
        """Create a payment intent for the given amount."""
        pass

    @abstractmethod
    async def verify_intent(self, intent_id: str) -> IntentVerification:
        """Fetch the intent and report whether it succeeded."""
        pass

    @abstractmethod
    async def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:
        """Refund a captured intent."""
        pass

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify and decode a webhook payload."""
        pass
