"""Cancellation and rescheduling of existing appointments."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbook.config import BookingPolicy
from medbook.core.models import Appointment, AppointmentStatus, CancelledBy, PaymentStatus
from medbook.core.repository import (
    AppointmentRepository,
    AuditRepository,
    CommissionRepository,
    PaymentRepository,
    ScheduleRepository,
)
from medbook.notifications.notifier import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_RESCHEDULED,
    LoggingNotifier,
    Notifier,
)
from medbook.observability import ObservabilityLogger, get_observability_logger
from medbook.payments import PaymentGateway, PaymentProvider
from medbook.scheduling.commission import CommissionCalculator
from medbook.scheduling.errors import (
    AuthorizationError,
    CapacityExceededError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from medbook.scheduling.models import Actor, ActorRole, RefundType, as_utc, window_bounds
from medbook.scheduling.orchestrator import appointment_payload
from medbook.scheduling.policy import (
    assert_patient_can_cancel,
    assert_valid_status_transition,
    compute_refund_decision,
)
from medbook.scheduling.refunds import RefundProcessor
from medbook.scheduling.resolver import AvailabilityResolver

logger = logging.getLogger(__name__)

CANCELLABLE = (
    AppointmentStatus.PENDING.value,
    AppointmentStatus.PENDING_PAYMENT.value,
    AppointmentStatus.CONFIRMED.value,
)
RESCHEDULED = "rescheduled"
RESCHEDULE_COMPENSATION = "reschedule_compensation"

SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def authorize(appointment: Appointment, actor: Actor) -> None:
    """Patients and doctors may only touch their own appointments."""
    if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return
    if actor.role == ActorRole.PATIENT and actor.id == str(appointment.patient_id):
        return
    if actor.role == ActorRole.DOCTOR and actor.id == str(appointment.doctor_id):
        return
    raise AuthorizationError(
        "You can only change your own appointments",
        details={"appointment_id": str(appointment.id), "role": actor.role.value},
    )


class RescheduleCancelEngine:
    """Cancels appointments (with refunds) and moves them between windows."""

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

    async def _notify(self, event: str, payload: dict) -> None:
        try:
            await self.notifier.notify(event, payload)
        except Exception as e:
            logger.warning(f"Notification {event} not sent: {e}")

    # Cancel

    async def cancel(
        self, appointment_id: uuid.UUID, actor: Actor, reason: Optional[str] = None
    ) -> Appointment:
        """Cancel an appointment, freeing its unit and refunding per policy.

        Cancelling an already-cancelled appointment returns it unchanged.
        """
        with self.obs.booking_operation(
            "cancel", appointment_id=appointment_id, actor_role=actor.role.value
        ) as event:
            now = self.now()
            async with self.session_factory() as session:
                appointments = AppointmentRepository(session)
                appointment = await appointments.get_by_id(appointment_id)
                if appointment is None:
                    raise NotFoundError("Appointment not found", details={"appointment_id": str(appointment_id)})
                if appointment.status == AppointmentStatus.CANCELLED.value:
                    event.outcome = "already_cancelled"
                    return appointment
                if appointment.status == AppointmentStatus.COMPLETED.value:
                    raise ValidationError("Cannot cancel a completed appointment")

                authorize(appointment, actor)
                if actor.role == ActorRole.PATIENT:
                    assert_patient_can_cancel(appointment.start_time, now, self.policy)

                from_status = appointment.status
                won = await appointments.transition(
                    appointment_id,
                    AppointmentStatus.CANCELLED.value,
                    expected=CANCELLABLE,
                    cancelled_by=CancelledBy(actor.role.value).value,
                    cancelled_at=now,
                    cancel_reason=reason,
                )
                if not won:
                    await session.rollback()
                    current = await appointments.refresh(appointment_id)
                    if current is not None and current.status == AppointmentStatus.CANCELLED.value:
                        event.outcome = "already_cancelled"
                        return current
                    raise ConflictError(
                        "Appointment changed while cancelling; refresh and retry",
                        details={"status": current.status if current else None},
                    )

                await AuditRepository(session).log_action(
                    action="appointment.cancelled",
                    resource_type="appointment",
                    resource_id=str(appointment_id),
                    user_id=actor.id,
                    details={"from_status": from_status, "reason": reason},
                )
                await session.commit()

                payment = (
                    await PaymentRepository(session).get_by_id(appointment.payment_id)
                    if appointment.payment_id
                    else None
                )

            self.obs.log_transition(
                appointment_id, from_status, AppointmentStatus.CANCELLED.value, actor=actor.role.value, reason=reason
            )
            logger.info(f"Cancelled appointment {appointment_id} by {actor.role.value}")

            if payment is not None and payment.status == PaymentStatus.COMPLETED.value:
                decision = compute_refund_decision(
                    actor.role, now, appointment.start_time, payment.amount, self.policy
                )
                event.metadata["refund"] = decision.type.value
                if decision.type == RefundType.FULL:
                    await self.refunds.refund(payment.id, appointment_id, decision.amount, decision.reason)
                else:
                    logger.info(f"No refund for appointment {appointment_id}: {decision.reason}")

            async with self.session_factory() as session:
                cancelled = await AppointmentRepository(session).refresh(appointment_id)

            event.outcome = AppointmentStatus.CANCELLED.value
            payload = appointment_payload(cancelled)
            payload.update({"cancelled_by": actor.role.value, "reason": reason})
            await self._notify(APPOINTMENT_CANCELLED, payload)
            return cancelled

    # Reschedule

    async def reschedule(
        self,
        appointment_id: uuid.UUID,
        new_schedule_id: uuid.UUID,
        actor: Optional[Actor] = None,
    ) -> Appointment:
        """Move a confirmed appointment to another window of the same doctor.

        The new unit is claimed first and the old one released second; if
        the release fails the new claim is cancelled again so the patient
        never ends up with two bookings or none.
        """
        actor = actor or SYSTEM_ACTOR
        with self.obs.booking_operation(
            "reschedule", appointment_id=appointment_id, schedule_id=new_schedule_id, actor_role=actor.role.value
        ) as event:
            now = self.now()
            async with self.session_factory() as session:
                appointments = AppointmentRepository(session)
                source = await appointments.get_by_id(appointment_id)
                if source is None:
                    raise NotFoundError("Appointment not found", details={"appointment_id": str(appointment_id)})
                authorize(source, actor)
                if source.status != AppointmentStatus.CONFIRMED.value:
                    raise ValidationError(
                        "Only confirmed appointments can be rescheduled", details={"status": source.status}
                    )
                if actor.role == ActorRole.PATIENT:
                    assert_patient_can_cancel(source.start_time, now, self.policy)
                if new_schedule_id == source.schedule_id:
                    raise ValidationError("Appointment is already in this window")

                schedules = ScheduleRepository(session)
                target = await schedules.get_by_id(new_schedule_id)
                if target is None:
                    raise NotFoundError("Schedule not found", details={"schedule_id": str(new_schedule_id)})
                if target.doctor_id != source.doctor_id:
                    raise ValidationError("Appointments can only be moved between the same doctor's windows")
                if not await self.resolver.is_offered(session, target):
                    raise ValidationError("Schedule is not available on this date")
                starts_at, ends_at = window_bounds(
                    target.date, target.start_time, target.end_time, self.policy.clinic_timezone
                )
                if ends_at <= now:
                    raise ValidationError("Schedule window has already ended")

                locked = await schedules.lock(target.id)
                duplicate = await appointments.find_active_for_patient(target.id, source.patient_id)
                if duplicate is not None:
                    raise ConflictError(
                        "Patient already has a booking in this window",
                        details={"appointment_id": str(duplicate.id)},
                        retryable=False,
                    )

                new_id = await appointments.reserve(
                    locked,
                    source.patient_id,
                    start_time=starts_at,
                    end_time=ends_at,
                    status=AppointmentStatus.CONFIRMED.value,
                    assign_queue_number=True,
                    payment_id=source.payment_id,
                    payment_status=source.payment_status,
                    payment_provider=source.payment_provider,
                    paid_at=source.paid_at,
                    rescheduled_from_id=source.id,
                    notes=source.notes,
                    created_at=now,
                )
                if new_id is None:
                    await session.rollback()
                    raise CapacityExceededError(
                        "Target window is fully booked",
                        details={"schedule_id": str(new_schedule_id), "max_patients": target.max_patients},
                    )
                await AuditRepository(session).log_action(
                    action="appointment.reschedule_reserved",
                    resource_type="appointment",
                    resource_id=str(new_id),
                    user_id=actor.id,
                    details={"rescheduled_from_id": str(source.id)},
                )
                await session.commit()
                previous = appointment_payload(source)

            event.metadata["new_appointment_id"] = str(new_id)
            try:
                await self._retire_source(source.id, new_id, source.payment_id, actor)
            except Exception:
                await self._compensate(new_id)
                raise

            async with self.session_factory() as session:
                moved = await AppointmentRepository(session).refresh(new_id)

            self.obs.log_transition(new_id, None, AppointmentStatus.CONFIRMED.value, actor=actor.role.value, reason=RESCHEDULED)
            logger.info(f"Rescheduled appointment {appointment_id} -> {new_id}")
            event.outcome = AppointmentStatus.CONFIRMED.value
            payload = appointment_payload(moved)
            payload.update(
                {"previous_start_time": previous["start_time"], "previous_end_time": previous["end_time"]}
            )
            await self._notify(APPOINTMENT_RESCHEDULED, payload)
            return moved

    async def _retire_source(
        self,
        source_id: uuid.UUID,
        new_id: uuid.UUID,
        payment_id: Optional[uuid.UUID],
        actor: Actor,
    ) -> None:
        """Cancel the original appointment and move its payment to the new one."""
        async with self.session_factory() as session:
            won = await AppointmentRepository(session).transition(
                source_id,
                AppointmentStatus.CANCELLED.value,
                expected=[AppointmentStatus.CONFIRMED.value],
                cancelled_by=CancelledBy(actor.role.value).value,
                cancelled_at=self.now(),
                cancel_reason=RESCHEDULED,
            )
            if not won:
                await session.rollback()
                raise ConflictError(
                    "Original appointment changed during reschedule",
                    details={"appointment_id": str(source_id)},
                )
            if payment_id is not None:
                await PaymentRepository(session).repoint(payment_id, new_id)
                await CommissionRepository(session).repoint(payment_id, new_id)
            await AuditRepository(session).log_action(
                action="appointment.rescheduled",
                resource_type="appointment",
                resource_id=str(source_id),
                user_id=actor.id,
                details={"new_appointment_id": str(new_id)},
            )
            await session.commit()

        self.obs.log_transition(
            source_id,
            AppointmentStatus.CONFIRMED.value,
            AppointmentStatus.CANCELLED.value,
            actor=actor.role.value,
            reason=RESCHEDULED,
        )

    async def _compensate(self, new_id: uuid.UUID) -> None:
        try:
            async with self.session_factory() as session:
                won = await AppointmentRepository(session).transition(
                    new_id,
                    AppointmentStatus.CANCELLED.value,
                    expected=[AppointmentStatus.CONFIRMED.value],
                    cancelled_by=CancelledBy.SYSTEM.value,
                    cancelled_at=self.now(),
                    cancel_reason=RESCHEDULE_COMPENSATION,
                )
                await session.commit()
        except Exception as e:
            logger.critical(f"Reschedule compensation failed for appointment {new_id}: {e}")
            raise
        if won:
            self.obs.log_transition(
                new_id,
                AppointmentStatus.CONFIRMED.value,
                AppointmentStatus.CANCELLED.value,
                actor=CancelledBy.SYSTEM.value,
                reason=RESCHEDULE_COMPENSATION,
            )
            logger.warning(f"Reschedule rolled back: appointment {new_id} cancelled")

    # Complete

    async def complete(self, appointment_id: uuid.UUID, actor: Actor) -> Appointment:
        """Mark a confirmed appointment as attended. Doctors and admins only."""
        if actor.role == ActorRole.PATIENT:
            raise AuthorizationError("Patients cannot complete appointments")
        now = self.now()
        async with self.session_factory() as session:
            appointments = AppointmentRepository(session)
            appointment = await appointments.get_by_id(appointment_id)
            if appointment is None:
                raise NotFoundError("Appointment not found", details={"appointment_id": str(appointment_id)})
            authorize(appointment, actor)
            assert_valid_status_transition(
                appointment.status,
                AppointmentStatus.COMPLETED.value,
                appointment.start_time,
                appointment.end_time,
                now,
            )
            won = await appointments.transition(
                appointment_id,
                AppointmentStatus.COMPLETED.value,
                expected=[AppointmentStatus.CONFIRMED.value],
            )
            if not won:
                await session.rollback()
                raise ConflictError("Appointment changed while completing; refresh and retry")
            await AuditRepository(session).log_action(
                action="appointment.completed",
                resource_type="appointment",
                resource_id=str(appointment_id),
                user_id=actor.id,
            )
            await session.commit()
            completed = await appointments.refresh(appointment_id)

        self.obs.log_transition(
            appointment_id, AppointmentStatus.CONFIRMED.value, AppointmentStatus.COMPLETED.value, actor=actor.role.value
        )
        return completed
