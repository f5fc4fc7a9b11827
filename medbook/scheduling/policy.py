"""Cancellation, refund and status-transition rules.

All comparisons are done on UTC datetimes so clinics in any zone get the
same hour arithmetic.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from medbook.config import BookingPolicy
from medbook.core.models import AppointmentStatus
from medbook.scheduling.errors import CancellationWindowError, ValidationError
from medbook.scheduling.models import ActorRole, RefundDecision, RefundType, as_utc

_TERMINAL = {AppointmentStatus.CANCELLED.value, AppointmentStatus.COMPLETED.value}


def hours_until(start: datetime, now: datetime) -> float:
    return (as_utc(start) - as_utc(now)).total_seconds() / 3600


def assert_patient_can_cancel(start: datetime, now: datetime, policy: BookingPolicy) -> None:
    """Patients must act at least ``patient_cancel_min_hours`` before start."""
    if as_utc(now) + timedelta(hours=policy.patient_cancel_min_hours) > as_utc(start):
        raise CancellationWindowError(
            f"Appointments can only be changed at least {policy.patient_cancel_min_hours} hours in advance",
            details={"hours_until_start": round(hours_until(start, now), 2)},
        )


def compute_refund_decision(
    cancelled_by: ActorRole,
    cancelled_at: datetime,
    appointment_start: datetime,
    amount: Decimal,
    policy: BookingPolicy,
) -> RefundDecision:
    """Decide how much of a captured payment goes back to the patient.

    Doctor, admin and system cancellations are always refunded in full. A
    patient gets a full refund only when cancelling at least
    ``patient_cancel_min_hours`` before the appointment.
    """
    if cancelled_by in (ActorRole.DOCTOR, ActorRole.ADMIN, ActorRole.SYSTEM):
        return RefundDecision(
            type=RefundType.FULL,
            amount=amount,
            reason="Doctor or clinic cancellation: full refund per policy.",
        )

    if hours_until(appointment_start, cancelled_at) >= policy.patient_cancel_min_hours:
        return RefundDecision(
            type=RefundType.FULL,
            amount=amount,
            reason=f"Cancelled at least {policy.patient_cancel_min_hours} hours before appointment: full refund.",
        )
    return RefundDecision(
        type=RefundType.NONE,
        reason=f"Cancelled less than {policy.patient_cancel_min_hours} hours before appointment: no refund per policy.",
    )


def assert_valid_status_transition(
    current: str,
    nxt: str,
    appointment_start: datetime,
    appointment_end: datetime,
    now: datetime,
) -> None:
    """Raise ValidationError when ``current -> nxt`` is not an allowed move."""
    if current in _TERMINAL:
        raise ValidationError(f"Cannot update a {current.lower()} appointment.")
    if current == nxt:
        return

    if nxt == AppointmentStatus.CONFIRMED.value:
        if as_utc(now) > as_utc(appointment_end):
            raise ValidationError("Cannot confirm a past appointment.")
        return

    if nxt == AppointmentStatus.COMPLETED.value:
        if current != AppointmentStatus.CONFIRMED.value:
            raise ValidationError("Cannot complete an unconfirmed appointment.")
        if as_utc(now) < as_utc(appointment_start):
            raise ValidationError("Cannot complete an appointment that hasn't started.")
        return

    if nxt == AppointmentStatus.CANCELLED.value:
        return

    raise ValidationError(f"Invalid status transition from {current} to {nxt}.")
