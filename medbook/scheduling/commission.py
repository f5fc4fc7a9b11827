"""Platform commission snapshots.

A commission is computed once, when a payment completes, from the doctor's
rate at that moment. Later rate changes never touch existing rows.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from medbook.config import BookingPolicy
from medbook.core.models import Commission, CommissionStatus, Payment, PaymentStatus
from medbook.core.repository import CommissionRepository, CommissionSettingsRepository, DoctorRepository
from medbook.scheduling.errors import NotFoundError, ValidationError
from medbook.scheduling.models import CommissionBreakdown, CommissionStats

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_decimal(value, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{name} must be a number") from e


def calculate_commission(appointment_amount, commission_rate) -> CommissionBreakdown:
    """Split an appointment amount into platform commission and doctor payout.

    Both figures are rounded half-up to cents; the payout is the amount
    minus the already-rounded commission so the two always sum exactly.
    """
    amount = _to_decimal(appointment_amount, "Appointment amount")
    rate = _to_decimal(commission_rate, "Commission rate")

    if amount <= 0:
        raise ValidationError("Appointment amount must be greater than 0")
    if rate < 0 or rate > 1:
        raise ValidationError("Commission rate must be between 0 and 1 (0% to 100%)")

    commission_amount = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    payout = (amount - commission_amount).quantize(CENT, rounding=ROUND_HALF_UP)
    return CommissionBreakdown(
        appointment_amount=amount.quantize(CENT, rounding=ROUND_HALF_UP),
        commission_rate=rate,
        commission_amount=commission_amount,
        doctor_payout_amount=payout,
    )


class CommissionCalculator:
    """Resolves per-doctor terms and persists commission snapshots."""

    def __init__(self, policy: BookingPolicy):
        self.policy = policy

    async def terms_for(self, session: AsyncSession, doctor_id: uuid.UUID) -> tuple[Decimal, Decimal]:
        """(commission_rate, appointment_price) for a doctor, with policy defaults."""
        settings = await CommissionSettingsRepository(session).get_by_doctor(doctor_id)
        if settings is None:
            return self.policy.default_commission_rate, self.policy.default_appointment_price
        return Decimal(str(settings.commission_rate)), Decimal(str(settings.appointment_price))

    async def price_for(self, session: AsyncSession, doctor_id: uuid.UUID) -> Decimal:
        _, price = await self.terms_for(session, doctor_id)
        return price

    async def record(
        self,
        session: AsyncSession,
        payment: Payment,
        doctor_id: uuid.UUID,
    ) -> Commission:
        """Create the commission for a completed payment, or return the existing one."""
        repo = CommissionRepository(session)
        existing = await repo.get_by_payment_id(payment.id)
        if existing is not None:
            return existing
        if payment.status != PaymentStatus.COMPLETED.value:
            raise ValidationError("Commission can only be created for completed payments")

        rate, _ = await self.terms_for(session, doctor_id)
        breakdown = calculate_commission(payment.amount, rate)
        commission = await repo.create(
            payment_id=payment.id,
            appointment_id=payment.appointment_id,
            doctor_id=doctor_id,
            appointment_amount=breakdown.appointment_amount,
            commission_rate=breakdown.commission_rate,
            commission_amount=breakdown.commission_amount,
            doctor_payout_amount=breakdown.doctor_payout_amount,
            status=CommissionStatus.PENDING.value,
        )
        logger.info(
            f"Commission {commission.id} recorded for payment {payment.id}: "
            f"{breakdown.commission_amount} of {breakdown.appointment_amount}"
        )
        return commission

    async def cancel(self, session: AsyncSession, commission_id: uuid.UUID) -> Commission:
        repo = CommissionRepository(session)
        commission = await repo.get_by_id(commission_id)
        if commission is None:
            raise NotFoundError("Commission not found", details={"commission_id": str(commission_id)})
        if commission.status == CommissionStatus.PAID.value:
            raise ValidationError("Cannot cancel a commission that has already been paid")
        if commission.status == CommissionStatus.CANCELLED.value:
            return commission

        await repo.transition(commission.id, CommissionStatus.CANCELLED.value, [CommissionStatus.PENDING.value])
        logger.info(f"Commission {commission.id} cancelled (payment {commission.payment_id})")
        return await repo.get_by_id(commission.id)

    async def cancel_for_payment(self, session: AsyncSession, payment_id: uuid.UUID) -> Optional[Commission]:
        """Cancel the pending commission of a refunded payment, if any."""
        commission = await CommissionRepository(session).get_by_payment_id(payment_id)
        if commission is None or commission.status != CommissionStatus.PENDING.value:
            return commission
        return await self.cancel(session, commission.id)

    async def mark_paid(self, session: AsyncSession, commission_id: uuid.UUID) -> Commission:
        """Record that the doctor payout for this commission was made."""
        repo = CommissionRepository(session)
        commission = await repo.get_by_id(commission_id)
        if commission is None:
            raise NotFoundError("Commission not found", details={"commission_id": str(commission_id)})
        if commission.status == CommissionStatus.PAID.value:
            raise ValidationError("Commission has already been paid")
        if commission.status == CommissionStatus.CANCELLED.value:
            raise ValidationError("Cannot payout a cancelled commission")

        moved = await repo.transition(
            commission.id,
            CommissionStatus.PAID.value,
            [CommissionStatus.PENDING.value],
            paid_at=datetime.now(timezone.utc),
        )
        if not moved:
            raise ValidationError("Commission is no longer pending")
        return await repo.get_by_id(commission.id)

    async def update_settings(
        self,
        session: AsyncSession,
        doctor_id: uuid.UUID,
        commission_rate,
        appointment_price,
    ):
        rate = _to_decimal(commission_rate, "Commission rate")
        price = _to_decimal(appointment_price, "Appointment price")
        if rate < 0 or rate > 1:
            raise ValidationError("Commission rate must be between 0 and 1 (0% to 100%)")
        if price <= 0:
            raise ValidationError("Appointment price must be greater than 0")
        if await DoctorRepository(session).get_by_id(doctor_id) is None:
            raise NotFoundError("Doctor not found", details={"doctor_id": str(doctor_id)})
        return await CommissionSettingsRepository(session).upsert(doctor_id, rate, price)

    async def stats(self, session: AsyncSession, doctor_id: Optional[uuid.UUID] = None) -> CommissionStats:
        totals = await CommissionRepository(session).totals_by_status(doctor_id)
        stats = CommissionStats(by_status={s.value: 0 for s in CommissionStatus})
        for status, row in totals.items():
            stats.by_status[status] = row["count"]
            stats.total_commissions += row["commission_amount"]
            if status == CommissionStatus.PAID.value:
                stats.total_payouts += row["doctor_payout_amount"]
            elif status == CommissionStatus.PENDING.value:
                stats.pending_payouts += row["doctor_payout_amount"]
        return stats
