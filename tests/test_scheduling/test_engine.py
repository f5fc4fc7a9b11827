"""Tests for cancellation, rescheduling and completion."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from medbook.core.models import AppointmentStatus, PaymentStatus
from medbook.core.repository import PaymentRepository
from medbook.payments import PaymentProviderError, WebhookEvent
from medbook.scheduling import (
    Actor,
    ActorRole,
    AuthorizationError,
    CancellationWindowError,
    CapacityExceededError,
    ConflictError,
    ValidationError,
)
from tests.conftest import (
    BOOKING_DAY,
    DOCTOR_ID,
    OTHER_DOCTOR_ID,
    PATIENT_IDS,
    add_schedule,
    book_and_confirm,
    remaining_for,
)

PATIENT_A, PATIENT_B = PATIENT_IDS[:2]

ADMIN = Actor(id="admin-1", role=ActorRole.ADMIN)
DOCTOR = Actor(id=str(DOCTOR_ID), role=ActorRole.DOCTOR)


def patient(patient_id) -> Actor:
    return Actor(id=str(patient_id), role=ActorRole.PATIENT)


async def _payment(session_factory, payment_id):
    async with session_factory() as session:
        return await PaymentRepository(session).get_by_id(payment_id)


class TestCancel:
    async def test_cancel_frees_exactly_one_unit(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory, max_patients=3)
        first = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        await book_and_confirm(service, payments, schedule.id, PATIENT_B)
        assert await remaining_for(service, schedule.id) == 1

        cancelled = await service.cancel_appointment(first.id, patient(PATIENT_A), reason="Feeling better")

        assert cancelled.status == AppointmentStatus.CANCELLED.value
        assert cancelled.cancelled_by == "PATIENT"
        assert cancelled.cancel_reason == "Feeling better"
        assert await remaining_for(service, schedule.id) == 2

    async def test_second_cancel_is_noop(self, service, payments, session_factory, notifier):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)

        await service.cancel_appointment(booked.id, ADMIN)
        again = await service.cancel_appointment(booked.id, ADMIN)

        assert again.status == AppointmentStatus.CANCELLED.value
        assert len(payments.refunds) == 1
        assert notifier.events().count("appointment-cancelled") == 1
        assert await remaining_for(service, schedule.id) == 2

    async def test_patient_inside_window_is_rejected(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        clock.now = datetime(2025, 1, 19, 12, 0, tzinfo=timezone.utc)

        with pytest.raises(CancellationWindowError):
            await service.cancel_appointment(booked.id, patient(PATIENT_A))

        still = await service.get_appointment(booked.id)
        assert still.status == AppointmentStatus.CONFIRMED.value
        assert payments.refunds == []

    async def test_doctor_can_cancel_late_with_full_refund(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        clock.now = datetime(2025, 1, 20, 8, 0, tzinfo=timezone.utc)

        cancelled = await service.cancel_appointment(booked.id, DOCTOR, reason="Emergency")

        assert cancelled.cancelled_by == "DOCTOR"
        assert cancelled.payment_status == "REFUNDED"
        assert len(payments.refunds) == 1
        payment = await _payment(session_factory, booked.payment_id)
        assert payment.status == PaymentStatus.REFUNDED.value
        assert Decimal(str(payment.refund_amount)) == Decimal("100.00")

    async def test_refund_cancels_commission(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)

        await service.cancel_appointment(booked.id, ADMIN)

        stats = await service.commission_stats(DOCTOR_ID)
        assert stats.by_status["CANCELLED"] == 1
        assert stats.pending_payouts == Decimal("0.00")

    async def test_failed_refund_is_recorded_and_reported(self, service, payments, session_factory, notifier):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        payments.refund_failures.append(PaymentProviderError("charge_disputed"))

        cancelled = await service.cancel_appointment(booked.id, ADMIN)

        assert cancelled.status == AppointmentStatus.CANCELLED.value
        payment = await _payment(session_factory, booked.payment_id)
        assert payment.status == PaymentStatus.REFUND_FAILED.value
        assert "refund-failed" in notifier.events()

    async def test_unpaid_hold_cancel_has_no_refund(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory, max_patients=1)
        started = await service.start_booking(schedule.id, PATIENT_A)

        await service.cancel_appointment(started.appointment_id, patient(PATIENT_A))

        assert payments.refunds == []
        assert await remaining_for(service, schedule.id) == 1

    async def test_other_patient_cannot_cancel(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)

        with pytest.raises(AuthorizationError):
            await service.cancel_appointment(booked.id, patient(PATIENT_B))
        with pytest.raises(AuthorizationError):
            await service.cancel_appointment(booked.id, Actor(id=str(OTHER_DOCTOR_ID), role=ActorRole.DOCTOR))

    async def test_completed_cannot_be_cancelled(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        clock.now = datetime(2025, 1, 20, 9, 30, tzinfo=timezone.utc)
        await service.complete_appointment(booked.id, DOCTOR)

        with pytest.raises(ValidationError):
            await service.cancel_appointment(booked.id, ADMIN)


class TestReschedule:
    async def test_moves_booking_and_payment(self, service, payments, session_factory, notifier):
        source_window = await add_schedule(session_factory)
        target_window = await add_schedule(session_factory, start_time="11:00", end_time="12:00")
        booked = await book_and_confirm(service, payments, source_window.id, PATIENT_A)

        moved = await service.reschedule_appointment(booked.id, target_window.id, patient(PATIENT_A))

        assert moved.id != booked.id
        assert moved.status == AppointmentStatus.CONFIRMED.value
        assert moved.schedule_id == target_window.id
        assert moved.rescheduled_from_id == booked.id
        assert moved.payment_id == booked.payment_id
        assert moved.queue_number == 1

        source = await service.get_appointment(booked.id)
        assert source.status == AppointmentStatus.CANCELLED.value
        assert source.cancel_reason == "rescheduled"

        payment = await _payment(session_factory, booked.payment_id)
        assert payment.appointment_id == moved.id
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payments.refunds == []

        assert await remaining_for(service, source_window.id) == 2
        assert await remaining_for(service, target_window.id) == 1
        assert "appointment-rescheduled" in notifier.events()

    async def test_full_target_leaves_source_untouched(self, service, payments, session_factory):
        source_window = await add_schedule(session_factory)
        target_window = await add_schedule(session_factory, start_time="11:00", end_time="12:00", max_patients=1)
        booked = await book_and_confirm(service, payments, source_window.id, PATIENT_A)
        await book_and_confirm(service, payments, target_window.id, PATIENT_B)

        with pytest.raises(CapacityExceededError):
            await service.reschedule_appointment(booked.id, target_window.id, ADMIN)

        source = await service.get_appointment(booked.id)
        assert source.status == AppointmentStatus.CONFIRMED.value
        assert await remaining_for(service, source_window.id) == 1

    async def test_other_doctor_window_rejected(self, service, payments, session_factory):
        source_window = await add_schedule(session_factory)
        foreign = await add_schedule(session_factory, doctor_id=OTHER_DOCTOR_ID)
        booked = await book_and_confirm(service, payments, source_window.id, PATIENT_A)

        with pytest.raises(ValidationError):
            await service.reschedule_appointment(booked.id, foreign.id, ADMIN)

    async def test_unconfirmed_cannot_be_rescheduled(self, service, session_factory):
        source_window = await add_schedule(session_factory)
        target_window = await add_schedule(session_factory, start_time="11:00", end_time="12:00")
        started = await service.start_booking(source_window.id, PATIENT_A)

        with pytest.raises(ValidationError):
            await service.reschedule_appointment(started.appointment_id, target_window.id, ADMIN)

    async def test_patient_inside_window_is_rejected(self, service, payments, session_factory, clock):
        source_window = await add_schedule(session_factory)
        target_window = await add_schedule(
            session_factory, day=date(2025, 1, 22), start_time="09:00", end_time="10:00"
        )
        booked = await book_and_confirm(service, payments, source_window.id, PATIENT_A)
        clock.now = datetime(2025, 1, 19, 20, 0, tzinfo=timezone.utc)

        with pytest.raises(CancellationWindowError):
            await service.reschedule_appointment(booked.id, target_window.id, patient(PATIENT_A))

    async def test_failed_release_rolls_back_new_booking(self, service, payments, session_factory, monkeypatch):
        source_window = await add_schedule(session_factory)
        target_window = await add_schedule(session_factory, start_time="11:00", end_time="12:00")
        booked = await book_and_confirm(service, payments, source_window.id, PATIENT_A)

        async def broken_release(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(service.engine, "_retire_source", broken_release)

        with pytest.raises(RuntimeError):
            await service.reschedule_appointment(booked.id, target_window.id, ADMIN)

        source = await service.get_appointment(booked.id)
        assert source.status == AppointmentStatus.CONFIRMED.value
        assert await remaining_for(service, target_window.id) == 2

        moved = [
            a for a in await service.list_patient_appointments(PATIENT_A) if a.rescheduled_from_id == booked.id
        ]
        assert len(moved) == 1
        assert moved[0].status == AppointmentStatus.CANCELLED.value
        assert moved[0].cancel_reason == "reschedule_compensation"

    async def test_confirming_compensated_booking_keeps_payment(
        self, service, payments, session_factory, monkeypatch
    ):
        source_window = await add_schedule(session_factory)
        target_window = await add_schedule(session_factory, start_time="11:00", end_time="12:00")
        booked = await book_and_confirm(service, payments, source_window.id, PATIENT_A)

        async def broken_release(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(service.engine, "_retire_source", broken_release)
        with pytest.raises(RuntimeError):
            await service.reschedule_appointment(booked.id, target_window.id, ADMIN)
        compensated = next(
            a for a in await service.list_patient_appointments(PATIENT_A) if a.rescheduled_from_id == booked.id
        )

        with pytest.raises(ConflictError):
            await service.confirm_booking(compensated.id)

        assert payments.refunds == []
        source = await service.get_appointment(booked.id)
        assert source.status == AppointmentStatus.CONFIRMED.value
        assert source.payment_status == "PAID"
        assert (await _payment(session_factory, booked.payment_id)).status == PaymentStatus.COMPLETED.value


class TestSharedPaymentAfterReschedule:
    """A rescheduled source still references the payment now owned by its successor."""

    async def _rescheduled(self, service, payments, session_factory):
        source_window = await add_schedule(session_factory)
        target_window = await add_schedule(session_factory, start_time="11:00", end_time="12:00")
        booked = await book_and_confirm(service, payments, source_window.id, PATIENT_A)
        moved = await service.reschedule_appointment(booked.id, target_window.id, patient(PATIENT_A))
        return booked, moved

    async def test_confirming_old_id_does_not_refund(self, service, payments, session_factory):
        booked, moved = await self._rescheduled(service, payments, session_factory)

        with pytest.raises(ConflictError) as exc_info:
            await service.confirm_booking(booked.id)

        assert exc_info.value.retryable is False
        assert payments.refunds == []
        current = await service.get_appointment(moved.id)
        assert current.status == AppointmentStatus.CONFIRMED.value
        assert current.payment_status == "PAID"
        payment = await _payment(session_factory, moved.payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.appointment_id == moved.id

        stats = await service.commission_stats(DOCTOR_ID)
        assert stats.by_status["PENDING"] == 1
        assert stats.by_status["CANCELLED"] == 0

    async def test_replayed_success_webhook_is_harmless(self, service, payments, session_factory):
        booked, moved = await self._rescheduled(service, payments, session_factory)
        payment = await _payment(session_factory, moved.payment_id)

        outcome = await service.handle_payment_event(
            WebhookEvent(id="evt_replay", type="payment_intent.succeeded", intent_id=payment.provider_intent_id)
        )

        assert outcome == "confirmed"
        assert payments.refunds == []
        assert (await service.get_appointment(moved.id)).status == AppointmentStatus.CONFIRMED.value
        assert (await _payment(session_factory, moved.payment_id)).status == PaymentStatus.COMPLETED.value


class TestComplete:
    async def test_doctor_completes_after_start(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        clock.now = datetime(2025, 1, 20, 9, 15, tzinfo=timezone.utc)

        completed = await service.complete_appointment(booked.id, DOCTOR)

        assert completed.status == AppointmentStatus.COMPLETED.value
        # Completed visits still occupy their unit
        assert await remaining_for(service, schedule.id, BOOKING_DAY) == 1

    async def test_not_before_start(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)

        with pytest.raises(ValidationError):
            await service.complete_appointment(booked.id, DOCTOR)

    async def test_patients_cannot_complete(self, service, payments, session_factory, clock):
        schedule = await add_schedule(session_factory)
        booked = await book_and_confirm(service, payments, schedule.id, PATIENT_A)
        clock.now = datetime(2025, 1, 20, 9, 15, tzinfo=timezone.utc)

        with pytest.raises(AuthorizationError):
            await service.complete_appointment(booked.id, patient(PATIENT_A))
