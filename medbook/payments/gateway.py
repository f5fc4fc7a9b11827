"""Bounded, observable calls into a payment provider.

Every call gets a timeout; transient failures are retried with exponential
backoff. Only idempotent calls go through here: verification is a read and
every write carries an idempotency key.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from medbook.config import BookingPolicy
from medbook.observability import ObservabilityLogger, get_observability_logger
from medbook.payments.base import (
    IntentVerification,
    PaymentConnectionError,
    PaymentIntent,
    PaymentProvider,
    RefundResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PaymentGateway:
    """Wraps a ``PaymentProvider`` with timeouts, retries and telemetry."""

    def __init__(
        self,
        provider: PaymentProvider,
        policy: BookingPolicy,
        observability: Optional[ObservabilityLogger] = None,
    ):
        self.provider = provider
        self.policy = policy
        self.obs = observability or get_observability_logger()

    @property
    def name(self) -> str:
        return self.provider.name

    @property
    def is_configured(self) -> bool:
        return self.provider.is_configured

    async def _call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        intent_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        **kwargs: Any,
    ) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(PaymentConnectionError),
            stop=stop_after_attempt(self.policy.payment_max_retries),
            wait=wait_exponential(multiplier=self.policy.payment_retry_backoff_seconds, max=10),
            reraise=True,
        )
        with self.obs.payment_call(
            self.provider.name,
            operation,
            intent_id=intent_id,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        ) as event:
            async for attempt in retrying:
                with attempt:
                    event.attempts += 1
                    try:
                        return await asyncio.wait_for(
                            fn(*args, **kwargs), timeout=self.policy.payment_timeout_seconds
                        )
                    except asyncio.TimeoutError as e:
                        logger.warning(f"Payment {operation} timed out (attempt {event.attempts})")
                        raise PaymentConnectionError(f"{operation} timed out") from e
                    except PaymentConnectionError as e:
                        logger.warning(f"Payment {operation} transient failure (attempt {event.attempts}): {e}")
                        raise

    async def create_intent(
        self, amount_cents: int, currency: str, metadata: dict[str, str], idempotency_key: str
    ) -> PaymentIntent:
        return await self._call(
            "create_intent",
            self.provider.create_intent,
            amount_cents,
            currency,
            metadata,
            idempotency_key,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )

    async def verify_intent(self, intent_id: str) -> IntentVerification:
        return await self._call("verify_intent", self.provider.verify_intent, intent_id, intent_id=intent_id)

    async def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:
        return await self._call(
            "refund",
            self.provider.refund,
            intent_id,
            amount_cents,
            idempotency_key,
            intent_id=intent_id,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )
