"""Booking core entry point for MedBook."""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medbook.config import BookingPolicy, Settings
from medbook.core.models import Appointment, Schedule
from medbook.core.repository import AppointmentRepository
from medbook.notifications.notifier import Notifier, build_notifier
from medbook.observability import ObservabilityLogger, get_observability_logger
from medbook.payments import PaymentProvider, StripePaymentProvider, WebhookEvent
from medbook.scheduling.capacity import CapacityService
from medbook.scheduling.commission import CommissionCalculator
from medbook.scheduling.engine import RescheduleCancelEngine, authorize
from medbook.scheduling.errors import BookingError, NotFoundError, ValidationError
from medbook.scheduling.models import Actor, BookingStart, CapacityWindow, DateRange, as_utc
from medbook.scheduling.orchestrator import BookingOrchestrator
from medbook.scheduling.resolver import AvailabilityResolver
from medbook.scheduling.schedules import ScheduleManager

logger = logging.getLogger(__name__)

INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = {"payment_intent.payment_failed", "payment_intent.canceled"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulingService:
    """Availability, booking, cancellation and rescheduling behind one object.

    Built from one session factory, one payment provider, one notifier and
    one ``BookingPolicy``; nothing here reads global settings.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentProvider,
        policy: BookingPolicy,
        notifier: Optional[Notifier] = None,
        observability: Optional[ObservabilityLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.payments = payments
        self.policy = policy
        self.obs = observability or get_observability_logger()
        self._clock = clock or _utcnow

        self.resolver = AvailabilityResolver(policy)
        self.capacity = CapacityService()
        self.commission = CommissionCalculator(policy)
        self.schedules = ScheduleManager(policy, clock=self._clock)
        self.orchestrator = BookingOrchestrator(
            session_factory,
            payments,
            policy,
            notifier=notifier,
            commission=self.commission,
            observability=self.obs,
            resolver=self.resolver,
            clock=self._clock,
        )
        self.engine = RescheduleCancelEngine(
            session_factory,
            payments,
            policy,
            notifier=self.orchestrator.notifier,
            commission=self.commission,
            observability=self.obs,
            resolver=self.resolver,
            clock=self._clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        payments: Optional[PaymentProvider] = None,
    ) -> "SchedulingService":
        return cls(
            session_factory,
            payments or StripePaymentProvider(settings),
            settings.booking_policy(),
            notifier=build_notifier(settings.notification_webhook_url, settings.notification_timeout_seconds),
        )

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def resolve_availability(self, doctor_id: uuid.UUID, date_range: DateRange) -> list[CapacityWindow]:
        """Windows a doctor offers in the range, with live remaining capacity."""
        async with self.session_factory() as session:
            resolved = await self.resolver.resolve(session, doctor_id, date_range)
            return await self.capacity.enrich(session, resolved, as_utc(self._clock()))

    async def materialize_window(
        self, doctor_id: uuid.UUID, day: date, start_time: str, end_time: str
    ) -> Schedule:
        """Back a resolved weekly or exception window with a dated Schedule."""
        async with self.session_factory() as session:
            resolved = await self.resolver.resolve(session, doctor_id, DateRange(start=day, end=day))
            for window in resolved:
                if window.start_time == start_time and window.end_time == end_time:
                    return await self.schedules.materialize(session, window)
        raise NotFoundError(
            "No such window is offered on this date",
            details={"doctor_id": str(doctor_id), "date": day.isoformat(), "start_time": start_time},
        )

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def start_booking(self, schedule_id: uuid.UUID, patient_id: uuid.UUID) -> BookingStart:
        return await self.orchestrator.start(schedule_id, patient_id)

    async def start_booking_for_window(
        self,
        doctor_id: uuid.UUID,
        day: date,
        start_time: str,
        end_time: str,
        patient_id: uuid.UUID,
    ) -> BookingStart:
        schedule = await self.materialize_window(doctor_id, day, start_time, end_time)
        return await self.orchestrator.start(schedule.id, patient_id)

    async def confirm_booking(self, appointment_id: uuid.UUID) -> Appointment:
        return await self.orchestrator.confirm(appointment_id)

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        return await self.orchestrator.expire_stale(now)

    async def create_manual_booking(
        self,
        schedule_id: uuid.UUID,
        patient_id: uuid.UUID,
        provider: str,
        note: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> Appointment:
        return await self.orchestrator.create_manual_booking(
            schedule_id, patient_id, provider, note=note, created_by=actor.id if actor else None
        )

    async def handle_payment_event(self, event: WebhookEvent) -> str:
        """Apply a verified provider webhook. Returns what happened, for logging."""
        if not event.intent_id:
            return "ignored"
        if event.type == INTENT_SUCCEEDED:
            try:
                appointment = await self.orchestrator.confirm_by_intent(event.intent_id)
            except BookingError as e:
                logger.warning(f"Webhook {event.id} confirm for {event.intent_id} not applied: {e.code} {e.message}")
                return e.code.lower()
            return "confirmed" if appointment is not None else "unknown_intent"
        if event.type in INTENT_FAILED:
            released = await self.orchestrator.fail_by_intent(event.intent_id)
            return "released" if released else "noop"
        logger.debug(f"Ignoring webhook event type {event.type}")
        return "ignored"

    # ------------------------------------------------------------------
    # Existing appointments
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_id: uuid.UUID, actor: Optional[Actor] = None) -> Appointment:
        async with self.session_factory() as session:
            appointment = await AppointmentRepository(session).get_by_id(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found", details={"appointment_id": str(appointment_id)})
        if actor is not None:
            authorize(appointment, actor)
        return appointment

    async def list_patient_appointments(self, patient_id: uuid.UUID) -> list[Appointment]:
        async with self.session_factory() as session:
            return list(await AppointmentRepository(session).list_by_patient(patient_id))

    async def cancel_appointment(
        self, appointment_id: uuid.UUID, actor: Actor, reason: Optional[str] = None
    ) -> Appointment:
        return await self.engine.cancel(appointment_id, actor, reason)

    async def reschedule_appointment(
        self,
        appointment_id: uuid.UUID,
        new_schedule_id: uuid.UUID,
        actor: Optional[Actor] = None,
    ) -> Appointment:
        return await self.engine.reschedule(appointment_id, new_schedule_id, actor)

    async def complete_appointment(self, appointment_id: uuid.UUID, actor: Actor) -> Appointment:
        return await self.engine.complete(appointment_id, actor)

    # ------------------------------------------------------------------
    # Commissions
    # ------------------------------------------------------------------

    async def commission_stats(self, doctor_id: Optional[uuid.UUID] = None):
        async with self.session_factory() as session:
            return await self.commission.stats(session, doctor_id)

    async def mark_commission_paid(self, commission_id: uuid.UUID):
        async with self.session_factory() as session:
            commission = await self.commission.mark_paid(session, commission_id)
            await session.commit()
            return commission

    async def update_commission_settings(self, doctor_id: uuid.UUID, commission_rate, appointment_price):
        if commission_rate is None or appointment_price is None:
            raise ValidationError("Both commission_rate and appointment_price are required")
        async with self.session_factory() as session:
            settings = await self.commission.update_settings(session, doctor_id, commission_rate, appointment_price)
            await session.commit()
            return settings
