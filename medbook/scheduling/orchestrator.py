"""Booking orchestrator: reserve, pay, confirm, expire.

A booking is a short reservation transaction, a payment call made with no
transaction open, and a conditional confirmation. Capacity is only ever
claimed by ``AppointmentRepository.reserve`` and released by a conditional
status transition, so concurrent callers cannot overbook a window.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbook.config import BookingPolicy
from medbook.core.models import (
    Appointment,
    AppointmentPaymentStatus,
    AppointmentStatus,
    CancelledBy,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    Schedule,
)
from medbook.core.repository import (
    AppointmentRepository,
    AuditRepository,
    PatientRepository,
    PaymentRepository,
    ScheduleRepository,
)
from medbook.notifications.notifier import (
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_EXPIRED,
    LoggingNotifier,
    Notifier,
)
from medbook.observability import ObservabilityLogger, get_observability_logger
from medbook.payments import (
    PaymentConnectionError,
    PaymentGateway,
    PaymentProvider,
    PaymentProviderError,
    to_minor_units,
)
from medbook.scheduling.commission import CommissionCalculator
from medbook.scheduling.errors import (
    CapacityExceededError,
    ConflictError,
    NotFoundError,
    PaymentConfigurationError,
    PaymentVerificationError,
    ValidationError,
)
from medbook.scheduling.models import BookingStart, as_utc, window_bounds
from medbook.scheduling.refunds import RefundProcessor
from medbook.scheduling.resolver import AvailabilityResolver

logger = logging.getLogger(__name__)

RESERVATION_EXPIRED = "reservation_expired"
PAYMENT_INTENT_FAILED = "payment_intent_failed"
PAYMENT_FAILED = "payment_failed"

MANUAL_PROVIDERS = {PaymentProviderName.CASH.value, PaymentProviderName.ESEWA.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def appointment_payload(appointment: Appointment) -> dict[str, Any]:
    """Notification body describing an appointment."""
    return {
        "appointment_id": str(appointment.id),
        "patient_id": str(appointment.patient_id),
        "doctor_id": str(appointment.doctor_id),
        "schedule_id": str(appointment.schedule_id) if appointment.schedule_id else None,
        "start_time": as_utc(appointment.start_time).isoformat(),
        "end_time": as_utc(appointment.end_time).isoformat(),
        "status": appointment.status,
        "queue_number": appointment.queue_number,
    }


def owns_pending_payment(appointment: Appointment, payment: Payment) -> bool:
    """True while the appointment is the unpaid hold its payment was opened for."""
    return (
        appointment.payment_status == AppointmentPaymentStatus.UNPAID.value
        and payment.appointment_id == appointment.id
        and payment.status == PaymentStatus.PENDING.value
    )


class BookingOrchestrator:
    """Runs the booking lifecycle against a session factory and a payment provider."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentProvider,
        policy: BookingPolicy,
        notifier: Optional[Notifier] = None,
        commission: Optional[CommissionCalculator] = None,
        observability: Optional[ObservabilityLogger] = None,
        resolver: Optional[AvailabilityResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.policy = policy
        self.notifier = notifier or LoggingNotifier()
        self.commission = commission or CommissionCalculator(policy)
        self.obs = observability or get_observability_logger()
        self.resolver = resolver or AvailabilityResolver(policy)
        self.gateway = PaymentGateway(payments, policy, self.obs)
        self.refunds = RefundProcessor(session_factory, self.gateway, self.commission, self.notifier)
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return as_utc(self._clock())

    async def _notify(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self.notifier.notify(event, payload)
        except Exception as e:
            logger.warning(f"Notification {event} not sent: {e}")

    async def _check_bookable(
        self,
        session: AsyncSession,
        schedule_id: uuid.UUID,
        patient_id: uuid.UUID,
        now: datetime,
    ) -> tuple[Schedule, datetime, datetime]:
        """Shared pre-checks for any new reservation on a schedule."""
        schedule = await ScheduleRepository(session).get_by_id(schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule not found", details={"schedule_id": str(schedule_id)})
        if await PatientRepository(session).get_by_id(patient_id) is None:
            raise NotFoundError("Patient not found", details={"patient_id": str(patient_id)})

        if not await self.resolver.is_offered(session, schedule):
            raise ValidationError(
                "Schedule is not available on this date",
                details={"schedule_id": str(schedule_id), "date": schedule.date.isoformat()},
            )

        starts_at, ends_at = window_bounds(
            schedule.date, schedule.start_time, schedule.end_time, self.policy.clinic_timezone
        )
        if ends_at <= now:
            raise ValidationError("Schedule window has already ended", details={"schedule_id": str(schedule_id)})
        return schedule, starts_at, ends_at

    async def _lock_and_check_duplicate(
        self, session: AsyncSession, schedule: Schedule, patient_id: uuid.UUID
    ) -> Schedule:
        locked = await ScheduleRepository(session).lock(schedule.id)
        if locked is None:
            raise NotFoundError("Schedule not found", details={"schedule_id": str(schedule.id)})
        existing = await AppointmentRepository(session).find_active_for_patient(schedule.id, patient_id)
        if existing is not None:
            raise ConflictError(
                "Patient already has a booking in this window",
                details={"appointment_id": str(existing.id)},
                retryable=False,
            )
        return locked

    # Start

    async def start(self, schedule_id: uuid.UUID, patient_id: uuid.UUID) -> BookingStart:
        """Reserve one unit in a window and open a payment intent for it."""
        with self.obs.booking_operation("start", schedule_id=schedule_id, patient_id=patient_id) as event:
            if not self.gateway.is_configured:
                raise PaymentConfigurationError("Payment provider is not configured")

            now = self.now()
            async with self.session_factory() as session:
                schedule, starts_at, ends_at = await self._check_bookable(session, schedule_id, patient_id, now)
                price = await self.commission.price_for(session, schedule.doctor_id)
                if price <= 0:
                    raise ValidationError("Appointment price must be greater than 0")
                doctor_id = schedule.doctor_id

                locked = await self._lock_and_check_duplicate(session, schedule, patient_id)
                appointment_id = await AppointmentRepository(session).reserve(
                    locked, patient_id, start_time=starts_at, end_time=ends_at, created_at=now
                )
                if appointment_id is None:
                    await session.rollback()
                    raise CapacityExceededError(
                        "This window is fully booked",
                        details={"schedule_id": str(schedule_id), "max_patients": schedule.max_patients},
                    )
                await AuditRepository(session).log_action(
                    action="appointment.reserved",
                    resource_type="appointment",
                    resource_id=str(appointment_id),
                    user_id=str(patient_id),
                    details={"schedule_id": str(schedule_id)},
                )
                await session.commit()

            event.appointment_id = str(appointment_id)
            event.doctor_id = str(doctor_id)
            self.obs.log_transition(appointment_id, None, AppointmentStatus.PENDING_PAYMENT.value, actor="PATIENT")
            logger.info(f"Reserved appointment {appointment_id} on schedule {schedule_id}")

            amount_cents = to_minor_units(price)
            metadata = {
                "schedule_id": str(schedule_id),
                "patient_id": str(patient_id),
                "doctor_id": str(doctor_id),
                "appointment_id": str(appointment_id),
            }
            try:
                intent = await self.gateway.create_intent(
                    amount_cents, self.policy.currency, metadata, idempotency_key=f"booking-{appointment_id}"
                )
            except PaymentProviderError as e:
                await self._release(appointment_id, PAYMENT_INTENT_FAILED)
                raise PaymentVerificationError(
                    "Could not create payment intent",
                    details={"appointment_id": str(appointment_id), "provider_error": str(e)},
                    retryable=isinstance(e, PaymentConnectionError),
                ) from e

            async with self.session_factory() as session:
                payment = await PaymentRepository(session).create(
                    appointment_id=appointment_id,
                    provider=self.gateway.name,
                    provider_intent_id=intent.id,
                    amount=price,
                    currency=self.policy.currency,
                    status=PaymentStatus.PENDING.value,
                )
                await AppointmentRepository(session).set_payment(appointment_id, payment.id)
                await session.commit()

            event.outcome = AppointmentStatus.PENDING_PAYMENT.value
            return BookingStart(
                appointment_id=appointment_id,
                client_secret=intent.client_secret,
                payment_intent_id=intent.id,
                amount=price,
                currency=self.policy.currency,
                expires_at=now + timedelta(minutes=self.policy.reservation_ttl_minutes),
            )

    async def _release(self, appointment_id: uuid.UUID, reason: str) -> bool:
        """Give a held unit back (PENDING_PAYMENT -> CANCELLED by the system)."""
        async with self.session_factory() as session:
            won = await AppointmentRepository(session).transition(
                appointment_id,
                AppointmentStatus.CANCELLED.value,
                expected=[AppointmentStatus.PENDING_PAYMENT.value],
                cancelled_by=CancelledBy.SYSTEM.value,
                cancelled_at=self.now(),
                cancel_reason=reason,
            )
            if won:
                await AuditRepository(session).log_action(
                    action="appointment.released",
                    resource_type="appointment",
                    resource_id=str(appointment_id),
                    details={"reason": reason},
                )
            await session.commit()
        if won:
            self.obs.log_transition(
                appointment_id,
                AppointmentStatus.PENDING_PAYMENT.value,
                AppointmentStatus.CANCELLED.value,
                actor=CancelledBy.SYSTEM.value,
                reason=reason,
            )
            logger.info(f"Released appointment {appointment_id} ({reason})")
        return won

    # Confirm

    async def confirm(self, appointment_id: uuid.UUID) -> Appointment:
        """Verify payment server-side and confirm the reservation."""
        with self.obs.booking_operation("confirm", appointment_id=appointment_id) as event:
            async with self.session_factory() as session:
                appointment = await AppointmentRepository(session).get_by_id(appointment_id)
                if appointment is None:
                    raise NotFoundError("Appointment not found", details={"appointment_id": str(appointment_id)})
                if appointment.status == AppointmentStatus.CONFIRMED.value:
                    event.outcome = "already_confirmed"
                    return appointment
                if appointment.status not in (
                    AppointmentStatus.PENDING_PAYMENT.value,
                    AppointmentStatus.CANCELLED.value,
                ):
                    raise ConflictError(
                        f"Appointment is {appointment.status}, not awaiting payment",
                        details={"status": appointment.status},
                        retryable=False,
                    )
                payment = (
                    await PaymentRepository(session).get_by_id(appointment.payment_id)
                    if appointment.payment_id
                    else None
                )
                if payment is None or not payment.provider_intent_id:
                    raise ConflictError(
                        "No payment intent recorded for this appointment",
                        details={"appointment_id": str(appointment_id)},
                        retryable=False,
                    )
                schedule_id = appointment.schedule_id
                doctor_id = appointment.doctor_id
                was_cancelled = appointment.status == AppointmentStatus.CANCELLED.value
                if was_cancelled and not owns_pending_payment(appointment, payment):
                    # Rescheduled or compensated: the payment belongs to a live booking now
                    event.outcome = "cancelled"
                    raise ConflictError(
                        "Appointment was cancelled and no longer holds a payment",
                        details={"appointment_id": str(appointment_id), "cancel_reason": appointment.cancel_reason},
                        retryable=False,
                    )

            try:
                verification = await self.gateway.verify_intent(payment.provider_intent_id)
            except PaymentConnectionError as e:
                raise PaymentVerificationError(
                    "Payment provider unavailable; try again",
                    details={"appointment_id": str(appointment_id)},
                    retryable=True,
                ) from e
            except PaymentProviderError as e:
                raise PaymentVerificationError(
                    "Payment could not be verified",
                    details={"appointment_id": str(appointment_id), "provider_error": str(e)},
                ) from e

            if was_cancelled:
                # Hold already released; a late payment must go back
                if verification.succeeded:
                    await self.refunds.refund(payment.id, appointment_id, payment.amount, RESERVATION_EXPIRED)
                event.outcome = "lost_to_expiry"
                raise ConflictError(
                    "Reservation expired before payment was confirmed",
                    details={"appointment_id": str(appointment_id), "refunded": verification.succeeded},
                    retryable=False,
                )

            if verification.pending:
                raise PaymentVerificationError(
                    "Payment is still processing",
                    details={"appointment_id": str(appointment_id), "intent_status": verification.status},
                    retryable=True,
                )

            if not verification.succeeded:
                await self._fail(appointment_id, payment.id, PAYMENT_FAILED)
                event.outcome = "payment_failed"
                raise PaymentVerificationError(
                    "Payment was not completed",
                    details={"appointment_id": str(appointment_id), "intent_status": verification.status},
                )

            confirmed = await self._apply_confirmation(appointment_id, schedule_id, doctor_id, payment.id)
            if confirmed is not None:
                event.outcome = AppointmentStatus.CONFIRMED.value
                await self._notify(APPOINTMENT_CONFIRMED, appointment_payload(confirmed))
                return confirmed

            async with self.session_factory() as session:
                current = await AppointmentRepository(session).refresh(appointment_id)
            if current is not None and current.status == AppointmentStatus.CONFIRMED.value:
                event.outcome = "already_confirmed"
                return current

            await self.refunds.refund(payment.id, appointment_id, payment.amount, RESERVATION_EXPIRED)
            event.outcome = "lost_to_expiry"
            raise ConflictError(
                "Reservation expired before payment was confirmed; payment refunded",
                details={"appointment_id": str(appointment_id)},
                retryable=False,
            )

    async def _apply_confirmation(
        self,
        appointment_id: uuid.UUID,
        schedule_id: Optional[uuid.UUID],
        doctor_id: uuid.UUID,
        payment_id: uuid.UUID,
    ) -> Optional[Appointment]:
        """PENDING_PAYMENT -> CONFIRMED with token, payment and commission in one transaction."""
        async with self.session_factory() as session:
            if schedule_id is not None:
                await ScheduleRepository(session).lock(schedule_id)
            appointments = AppointmentRepository(session)
            won = await appointments.confirm_paid(
                appointment_id,
                schedule_id,
                payment_provider=self.gateway.name,
                paid_at=self.now(),
            )
            if not won:
                await session.rollback()
                return None

            payments = PaymentRepository(session)
            await payments.update_status(payment_id, PaymentStatus.COMPLETED.value)
            payment = await payments.get_by_id(payment_id)
            await self.commission.record(session, payment, doctor_id)
            await AuditRepository(session).log_action(
                action="appointment.confirmed",
                resource_type="appointment",
                resource_id=str(appointment_id),
                details={"payment_id": str(payment_id)},
            )
            await session.commit()
            confirmed = await appointments.refresh(appointment_id)

        self.obs.log_transition(
            appointment_id, AppointmentStatus.PENDING_PAYMENT.value, AppointmentStatus.CONFIRMED.value
        )
        logger.info(f"Confirmed appointment {appointment_id} with token {confirmed.queue_number}")
        return confirmed

    async def _fail(self, appointment_id: uuid.UUID, payment_id: uuid.UUID, reason: str) -> bool:
        async with self.session_factory() as session:
            await PaymentRepository(session).update_status(payment_id, PaymentStatus.FAILED.value)
            await session.commit()
        return await self._release(appointment_id, reason)

    # Webhook entry points

    async def confirm_by_intent(self, intent_id: str) -> Optional[Appointment]:
        async with self.session_factory() as session:
            payment = await PaymentRepository(session).get_by_intent_id(intent_id)
        if payment is None:
            logger.warning(f"No payment recorded for intent {intent_id}; ignoring")
            return None
        return await self.confirm(payment.appointment_id)

    async def fail_by_intent(self, intent_id: str) -> bool:
        async with self.session_factory() as session:
            payment = await PaymentRepository(session).get_by_intent_id(intent_id)
        if payment is None:
            logger.warning(f"No payment recorded for intent {intent_id}; ignoring")
            return False
        if payment.status != PaymentStatus.PENDING.value:
            logger.info(f"Payment {payment.id} already {payment.status}; ignoring failure event")
            return False
        return await self._fail(payment.appointment_id, payment.id, PAYMENT_FAILED)

    # Expiry sweep

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Cancel PENDING_PAYMENT holds older than the reservation TTL."""
        started = _utcnow()
        now = as_utc(now) if now else self.now()
        cutoff = now - timedelta(minutes=self.policy.reservation_ttl_minutes)

        async with self.session_factory() as session:
            candidates = list(await AppointmentRepository(session).list_stale_pending(cutoff))

        expired = 0
        for appointment_id in candidates:
            async with self.session_factory() as session:
                appointments = AppointmentRepository(session)
                won = await appointments.transition(
                    appointment_id,
                    AppointmentStatus.CANCELLED.value,
                    expected=[AppointmentStatus.PENDING_PAYMENT.value],
                    cancelled_by=CancelledBy.SYSTEM.value,
                    cancelled_at=now,
                    cancel_reason=RESERVATION_EXPIRED,
                )
                if not won:
                    # Confirmed or cancelled since the candidate list was read
                    await session.rollback()
                    continue
                await AuditRepository(session).log_action(
                    action="appointment.expired",
                    resource_type="appointment",
                    resource_id=str(appointment_id),
                    details={"cutoff": cutoff.isoformat()},
                )
                await session.commit()
                appointment = await appointments.refresh(appointment_id)

            expired += 1
            self.obs.log_transition(
                appointment_id,
                AppointmentStatus.PENDING_PAYMENT.value,
                AppointmentStatus.CANCELLED.value,
                actor=CancelledBy.SYSTEM.value,
                reason=RESERVATION_EXPIRED,
            )
            await self._notify(APPOINTMENT_EXPIRED, appointment_payload(appointment))

        duration_ms = (_utcnow() - started).total_seconds() * 1000
        self.obs.log_sweep(len(candidates), expired, cutoff, duration_ms)
        if expired:
            logger.info(f"Expired {expired} of {len(candidates)} stale reservations")
        return expired

    # Walk-in bookings

    async def create_manual_booking(
        self,
        schedule_id: uuid.UUID,
        patient_id: uuid.UUID,
        provider: str,
        note: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Appointment:
        """Book a walk-in paid at the desk (cash or eSewa) straight into CONFIRMED."""
        provider = provider.upper()
        if provider not in MANUAL_PROVIDERS:
            raise ValidationError(
                f"Manual bookings accept {sorted(MANUAL_PROVIDERS)}", details={"provider": provider}
            )

        with self.obs.booking_operation(
            "manual_booking", schedule_id=schedule_id, patient_id=patient_id, actor_role="ADMIN"
        ) as event:
            now = self.now()
            async with self.session_factory() as session:
                schedule, starts_at, ends_at = await self._check_bookable(session, schedule_id, patient_id, now)
                price = await self.commission.price_for(session, schedule.doctor_id)
                if price <= 0:
                    raise ValidationError("Appointment price must be greater than 0")

                locked = await self._lock_and_check_duplicate(session, schedule, patient_id)
                appointments = AppointmentRepository(session)
                appointment_id = await appointments.reserve(
                    locked,
                    patient_id,
                    start_time=starts_at,
                    end_time=ends_at,
                    status=AppointmentStatus.CONFIRMED.value,
                    assign_queue_number=True,
                    payment_status=AppointmentPaymentStatus.PAID.value,
                    payment_provider=provider,
                    paid_at=now,
                    notes=note,
                    created_at=now,
                )
                if appointment_id is None:
                    await session.rollback()
                    raise CapacityExceededError(
                        "This window is fully booked",
                        details={"schedule_id": str(schedule_id), "max_patients": schedule.max_patients},
                    )

                payment = await PaymentRepository(session).create(
                    appointment_id=appointment_id,
                    provider=provider,
                    amount=price,
                    currency=self.policy.currency,
                    status=PaymentStatus.COMPLETED.value,
                )
                await appointments.set_payment(appointment_id, payment.id)
                await self.commission.record(session, payment, schedule.doctor_id)
                await AuditRepository(session).log_action(
                    action="appointment.manual_booking",
                    resource_type="appointment",
                    resource_id=str(appointment_id),
                    user_id=created_by,
                    details={"schedule_id": str(schedule_id), "provider": provider},
                )
                await session.commit()
                appointment = await appointments.refresh(appointment_id)

            event.appointment_id = str(appointment_id)
            event.outcome = AppointmentStatus.CONFIRMED.value
            self.obs.log_transition(appointment_id, None, AppointmentStatus.CONFIRMED.value, actor=created_by)
            logger.info(f"Manual booking {appointment_id} ({provider}) token {appointment.queue_number}")
            await self._notify(APPOINTMENT_CONFIRMED, appointment_payload(appointment))
            return appointment
