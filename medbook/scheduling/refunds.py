"""Refunding captured payments after an appointment is released."""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbook.core.models import AppointmentPaymentStatus, PaymentStatus
from medbook.core.repository import AppointmentRepository, AuditRepository, PaymentRepository
from medbook.notifications.notifier import REFUND_FAILED, Notifier
from medbook.payments import PaymentGateway, PaymentProviderError, to_minor_units
from medbook.scheduling.commission import CommissionCalculator

logger = logging.getLogger(__name__)


class RefundProcessor:
    """Moves a payment through REFUND_PENDING to REFUNDED or REFUND_FAILED.

    The provider call happens between two short transactions. A failed
    refund is recorded and reported, never raised: the cancellation that
    triggered it stands.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        commission: CommissionCalculator,
        notifier: Notifier,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.commission = commission
        self.notifier = notifier

    async def refund(
        self,
        payment_id: uuid.UUID,
        appointment_id: uuid.UUID,
        amount: Decimal,
        reason: str,
    ) -> str:
        """Refund ``amount`` of a payment. Returns the payment's final status."""
        async with self.session_factory() as session:
            payment = await PaymentRepository(session).get_by_id(payment_id)
            if payment is None:
                logger.error(f"Refund requested for unknown payment {payment_id}")
                return PaymentStatus.REFUND_FAILED.value
            if payment.status == PaymentStatus.REFUNDED.value:
                return payment.status
            intent_id = payment.provider_intent_id
            await PaymentRepository(session).update_status(payment_id, PaymentStatus.REFUND_PENDING.value)
            await session.commit()

        refund_id = None
        error = None
        # Cash and wallet payments have no intent; they are settled at the front desk
        if intent_id:
            try:
                result = await self.gateway.refund(
                    intent_id, to_minor_units(amount), idempotency_key=f"refund-{appointment_id}"
                )
                refund_id = result.refund_id
            except PaymentProviderError as e:
                error = e
        async with self.session_factory() as session:
            payments = PaymentRepository(session)
            if error is None:
                await payments.update_status(
                    payment_id,
                    PaymentStatus.REFUNDED.value,
                    refund_id=refund_id,
                    refund_amount=amount,
                    refunded_at=datetime.now(timezone.utc),
                )
                await AppointmentRepository(session).set_payment_status(
                    appointment_id, AppointmentPaymentStatus.REFUNDED.value
                )
                await self.commission.cancel_for_payment(session, payment_id)
                status = PaymentStatus.REFUNDED.value
            else:
                await payments.update_status(payment_id, PaymentStatus.REFUND_FAILED.value)
                status = PaymentStatus.REFUND_FAILED.value

            await AuditRepository(session).log_action(
                action="payment.refund",
                resource_type="payment",
                resource_id=str(payment_id),
                details={
                    "appointment_id": str(appointment_id),
                    "amount": str(amount),
                    "status": status,
                    "reason": reason,
                    "error": str(error) if error else None,
                },
            )
            await session.commit()

        if error is not None:
            logger.error(f"Refund failed for payment {payment_id} (appointment {appointment_id}): {error}")
            try:
                await self.notifier.notify(
                    REFUND_FAILED,
                    {"payment_id": str(payment_id), "appointment_id": str(appointment_id), "error": str(error)},
                )
            except Exception as e:
                logger.warning(f"Refund failure notification not sent: {e}")
        else:
            logger.info(f"Refunded {amount} for appointment {appointment_id} ({reason})")
        return status
