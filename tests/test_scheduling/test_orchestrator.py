"""Tests for the booking orchestrator: start, confirm, expire."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from medbook.core.models import AppointmentStatus, PaymentStatus
from medbook.core.repository import AuditRepository, PaymentRepository
from medbook.payments import PaymentConnectionError, PaymentProviderError, WebhookEvent
from medbook.scheduling import (
    Actor,
    ActorRole,
    BookingStart,
    CapacityExceededError,
    ConflictError,
    NotFoundError,
    PaymentConfigurationError,
    PaymentVerificationError,
    ValidationError,
)
from medbook.scheduling.models import DateRange
from tests.conftest import (
    BOOKING_DAY,
    DOCTOR_ID,
    PATIENT_IDS,
    add_schedule,
    book_and_confirm,
    remaining_for,
)

PATIENT_A, PATIENT_B, PATIENT_C = PATIENT_IDS[:3]


class TestCapacityGuard:
    async def test_concurrent_starts_never_overbook(self, service, session_factory):
        schedule = await add_schedule(session_factory, max_patients=3)

        results = await asyncio.gather(
            *(service.start_booking(schedule.id, pid) for pid in PATIENT_IDS[:10]),
            return_exceptions=True,
        )

        started = [r for r in results if isinstance(r, BookingStart)]
        rejected = [r for r in results if isinstance(r, CapacityExceededError)]
        assert len(started) == 3
        assert len(rejected) == 7
        assert all(e.retryable for e in rejected)
        assert await remaining_for(service, schedule.id) == 0

    async def test_two_patients_fill_window_and_cancel_frees_one(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory, max_patients=2)

        first, second = await asyncio.gather(
            service.start_booking(schedule.id, PATIENT_A),
            service.start_booking(schedule.id, PATIENT_B),
        )
        assert first.appointment_id != second.appointment_id
        assert await remaining_for(service, schedule.id) == 0

        with pytest.raises(CapacityExceededError):
            await service.start_booking(schedule.id, PATIENT_C)

        payments.succeed(first.payment_intent_id)
        await service.confirm_booking(first.appointment_id)

        # 48 hours before the 09:00 start
        clock.now = datetime(2025, 1, 18, 9, 0, tzinfo=timezone.utc)
        await service.cancel_appointment(first.appointment_id, Actor(id=str(PATIENT_A), role=ActorRole.PATIENT))
        assert await remaining_for(service, schedule.id) == 1
        assert payments.refunds == [(first.payment_intent_id, 10000, f"refund-{first.appointment_id}")]

        third = await service.start_booking(schedule.id, PATIENT_C)
        assert third.appointment_id is not None
        assert await remaining_for(service, schedule.id) == 0

    async def test_same_patient_cannot_hold_two_units(self, service, session_factory):
        schedule = await add_schedule(session_factory, max_patients=5)
        await service.start_booking(schedule.id, PATIENT_A)

        with pytest.raises(ConflictError) as exc_info:
            await service.start_booking(schedule.id, PATIENT_A)
        assert exc_info.value.retryable is False
        assert await remaining_for(service, schedule.id) == 4


class TestStart:
    async def test_returns_client_secret_and_expiry(self, service, session_factory, clock, policy):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)

        assert started.client_secret.startswith(started.payment_intent_id)
        assert started.amount == Decimal("100.00")
        assert started.currency == "usd"
        assert (started.expires_at - clock.now).total_seconds() == policy.reservation_ttl_minutes * 60

        appointment = await service.get_appointment(started.appointment_id)
        assert appointment.status == AppointmentStatus.PENDING_PAYMENT.value
        assert appointment.payment_id is not None
        assert appointment.queue_number is None

    async def test_intent_metadata_identifies_booking(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)

        metadata = payments.intents[started.payment_intent_id]["metadata"]
        assert metadata["appointment_id"] == str(started.appointment_id)
        assert metadata["schedule_id"] == str(schedule.id)
        assert payments.intents[started.payment_intent_id]["amount"] == 10000

    async def test_unknown_schedule(self, service):
        with pytest.raises(NotFoundError):
            await service.start_booking(PATIENT_A, PATIENT_A)

    async def test_unknown_patient(self, service, session_factory):
        schedule = await add_schedule(session_factory)
        with pytest.raises(NotFoundError):
            await service.start_booking(schedule.id, DOCTOR_ID)

    async def test_ended_window_rejected(self, service, session_factory, clock):
        schedule = await add_schedule(session_factory)
        clock.now = datetime(2025, 1, 20, 10, 0, tzinfo=timezone.utc)

        with pytest.raises(ValidationError):
            await service.start_booking(schedule.id, PATIENT_A)

    async def test_closed_date_rejected(self, service, session_factory):
        schedule = await add_schedule(session_factory)
        async with session_factory() as session:
            await service.schedules.create_exception(
                session, created_by_id="admin", scope="ALL_DOCTORS", date_from=BOOKING_DAY
            )
            await session.commit()

        with pytest.raises(ValidationError):
            await service.start_booking(schedule.id, PATIENT_A)

    async def test_unconfigured_provider(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        payments.configured = False

        with pytest.raises(PaymentConfigurationError):
            await service.start_booking(schedule.id, PATIENT_A)
        assert await remaining_for(service, schedule.id) == 2

    async def test_intent_failure_releases_hold(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory, max_patients=1)
        payments.create_failures.append(PaymentProviderError("card_declined"))

        with pytest.raises(PaymentVerificationError) as exc_info:
            await service.start_booking(schedule.id, PATIENT_A)
        assert exc_info.value.retryable is False
        assert await remaining_for(service, schedule.id) == 1

        # The freed unit is bookable again
        started = await service.start_booking(schedule.id, PATIENT_B)
        assert started.appointment_id is not None

    async def test_transient_intent_failure_is_retried(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        payments.create_failures.extend([PaymentConnectionError("reset"), PaymentConnectionError("reset")])

        started = await service.start_booking(schedule.id, PATIENT_A)
        assert started.payment_intent_id in payments.intents
        assert payments.create_calls == 3

    async def test_exhausted_retries_surface_retryable_error(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        payments.create_failures.extend([PaymentConnectionError("down")] * 3)

        with pytest.raises(PaymentVerificationError) as exc_info:
            await service.start_booking(schedule.id, PATIENT_A)
        assert exc_info.value.retryable is True
        assert await remaining_for(service, schedule.id) == 2


class TestConfirm:
    async def test_confirm_assigns_queue_numbers_in_order(self, service, payments, session_factory, notifier):
        schedule = await add_schedule(session_factory)

        first = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        second = await book_and_confirm(service, payments, schedule.id, PATIENT_B)

        assert first.status == AppointmentStatus.CONFIRMED.value
        assert first.payment_status == "PAID"
        assert first.payment_provider == "STRIPE"
        assert (first.queue_number, second.queue_number) == (1, 2)
        assert notifier.events().count("appointment-confirmed") == 2

    async def test_confirm_is_idempotent(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        confirmed = await book_and_confirm(service, payments, schedule.id, PATIENT_A)

        again = await service.confirm_booking(confirmed.id)
        assert again.status == AppointmentStatus.CONFIRMED.value
        assert again.queue_number == confirmed.queue_number

    async def test_confirm_marks_payment_completed_and_records_commission(
        self, service, payments, session_factory
    ):
        schedule = await add_schedule(session_factory)
        confirmed = await book_and_confirm(service, payments, schedule.id, PATIENT_A)

        async with session_factory() as session:
            payment = await PaymentRepository(session).get_by_id(confirmed.payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value

        stats = await service.commission_stats(DOCTOR_ID)
        assert stats.total_commissions == Decimal("10.00")
        assert stats.pending_payouts == Decimal("90.00")

    async def test_processing_payment_is_retryable(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)
        payments.set_status(started.payment_intent_id, "processing")

        with pytest.raises(PaymentVerificationError) as exc_info:
            await service.confirm_booking(started.appointment_id)
        assert exc_info.value.retryable is True

        appointment = await service.get_appointment(started.appointment_id)
        assert appointment.status == AppointmentStatus.PENDING_PAYMENT.value

    async def test_failed_payment_releases_unit(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory, max_patients=1)
        started = await service.start_booking(schedule.id, PATIENT_A)
        payments.set_status(started.payment_intent_id, "canceled")

        with pytest.raises(PaymentVerificationError):
            await service.confirm_booking(started.appointment_id)

        appointment = await service.get_appointment(started.appointment_id)
        assert appointment.status == AppointmentStatus.CANCELLED.value
        assert appointment.cancel_reason == "payment_failed"
        assert await remaining_for(service, schedule.id) == 1

    async def test_provider_outage_during_verify(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)
        payments.succeed(started.payment_intent_id)
        payments.verify_failures.extend([PaymentConnectionError("timeout")] * 3)

        with pytest.raises(PaymentVerificationError) as exc_info:
            await service.confirm_booking(started.appointment_id)
        assert exc_info.value.retryable is True

        confirmed = await service.confirm_booking(started.appointment_id)
        assert confirmed.status == AppointmentStatus.CONFIRMED.value

    async def test_unknown_appointment(self, service):
        with pytest.raises(NotFoundError):
            await service.confirm_booking(PATIENT_A)

    async def test_late_payment_after_expiry_is_refunded(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)

        clock.advance(minutes=16)
        assert await service.expire_stale() == 1

        payments.succeed(started.payment_intent_id)
        with pytest.raises(ConflictError):
            await service.confirm_booking(started.appointment_id)

        assert len(payments.refunds) == 1
        assert payments.refunds[0][2] == f"refund-{started.appointment_id}"
        async with session_factory() as session:
            payment = await PaymentRepository(session).get_by_intent_id(started.payment_intent_id)
        assert payment.status == PaymentStatus.REFUNDED.value


class TestExpireStale:
    async def test_expires_only_old_holds(self, service, session_factory, clock, notifier):
        schedule = await add_schedule(session_factory, max_patients=3)
        old = await service.start_booking(schedule.id, PATIENT_A)
        clock.advance(minutes=10)
        fresh = await service.start_booking(schedule.id, PATIENT_B)
        clock.advance(minutes=6)

        assert await service.expire_stale() == 1

        assert (await service.get_appointment(old.appointment_id)).status == AppointmentStatus.CANCELLED.value
        assert (await service.get_appointment(fresh.appointment_id)).status == AppointmentStatus.PENDING_PAYMENT.value
        assert "appointment-expired" in notifier.events()
        assert await remaining_for(service, schedule.id) == 2

    async def test_sweep_is_idempotent(self, service, session_factory, clock):
        schedule = await add_schedule(session_factory)
        await service.start_booking(schedule.id, PATIENT_A)
        clock.advance(minutes=20)

        counts = await asyncio.gather(service.expire_stale(), service.expire_stale())
        assert sum(counts) == 1
        assert await service.expire_stale() == 0

    async def test_expiry_is_audited(self, service, session_factory, clock):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)
        clock.advance(minutes=20)
        await service.expire_stale()

        async with session_factory() as session:
            entries = await AuditRepository(session).get_by_resource("appointment", str(started.appointment_id))
        assert "appointment.expired" in [e.action for e in entries]

    async def test_race_with_confirm_has_one_outcome(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)
        payments.succeed(started.payment_intent_id)
        clock.advance(minutes=20)

        expired, confirmed = await asyncio.gather(
            service.expire_stale(),
            service.confirm_booking(started.appointment_id),
            return_exceptions=True,
        )

        appointment = await service.get_appointment(started.appointment_id)
        if appointment.status == AppointmentStatus.CONFIRMED.value:
            assert expired == 0
            assert payments.refunds == []
        else:
            assert appointment.status == AppointmentStatus.CANCELLED.value
            assert isinstance(confirmed, ConflictError)
            assert len(payments.refunds) == 1
            assert appointment.queue_number is None


class TestManualBooking:
    async def test_cash_booking_is_confirmed_immediately(self, service, session_factory):
        schedule = await add_schedule(session_factory)
        admin = Actor(id="admin-1", role=ActorRole.ADMIN)

        appointment = await service.create_manual_booking(
            schedule.id, PATIENT_A, "cash", note="Walk-in", actor=admin
        )

        assert appointment.status == AppointmentStatus.CONFIRMED.value
        assert appointment.payment_provider == "CASH"
        assert appointment.queue_number == 1
        assert await remaining_for(service, schedule.id) == 1
        stats = await service.commission_stats(DOCTOR_ID)
        assert stats.by_status["PENDING"] == 1

    async def test_respects_capacity(self, service, session_factory):
        schedule = await add_schedule(session_factory, max_patients=1)
        await service.create_manual_booking(schedule.id, PATIENT_A, "ESEWA")

        with pytest.raises(CapacityExceededError):
            await service.create_manual_booking(schedule.id, PATIENT_B, "CASH")

    async def test_rejects_online_provider(self, service, session_factory):
        schedule = await add_schedule(session_factory)
        with pytest.raises(ValidationError):
            await service.create_manual_booking(schedule.id, PATIENT_A, "STRIPE")


class TestPaymentEvents:
    async def test_succeeded_event_confirms(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)
        payments.succeed(started.payment_intent_id)

        result = await service.handle_payment_event(
            WebhookEvent(id="evt_1", type="payment_intent.succeeded", intent_id=started.payment_intent_id)
        )

        assert result == "confirmed"
        appointment = await service.get_appointment(started.appointment_id)
        assert appointment.status == AppointmentStatus.CONFIRMED.value

    async def test_failed_event_releases(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        started = await service.start_booking(schedule.id, PATIENT_A)

        result = await service.handle_payment_event(
            WebhookEvent(id="evt_2", type="payment_intent.payment_failed", intent_id=started.payment_intent_id)
        )

        assert result == "released"
        assert await remaining_for(service, schedule.id) == 2

    async def test_unknown_intent_and_other_events(self, service):
        unknown = await service.handle_payment_event(
            WebhookEvent(id="evt_3", type="payment_intent.succeeded", intent_id="pi_missing")
        )
        other = await service.handle_payment_event(WebhookEvent(id="evt_4", type="charge.refunded"))

        assert unknown == "unknown_intent"
        assert other == "ignored"


class TestAvailabilityView:
    async def test_window_reports_live_counts(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory, max_patients=2)
        await book_and_confirm(service, payments, schedule.id, PATIENT_A)

        windows = await service.resolve_availability(DOCTOR_ID, DateRange(start=BOOKING_DAY, end=BOOKING_DAY))

        assert len(windows) == 1
        window = windows[0]
        assert window.confirmed_count == 1
        assert window.remaining == 1
        assert window.bookable is True
