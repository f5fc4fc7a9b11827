"""Repositories for the booking schema.

Every state change on an appointment goes through a conditional statement
(``INSERT ... SELECT ... WHERE`` or ``UPDATE ... WHERE status IN``) whose
row count tells the caller whether it won. Nothing here commits; callers own
the transaction.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, insert, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from medbook.core.models import (
    Appointment,
    AppointmentPaymentStatus,
    AppointmentStatus,
    AuditLog,
    Commission,
    Doctor,
    DoctorCommissionSettings,
    Patient,
    Payment,
    Schedule,
    ScheduleException,
    WeeklyAvailability,
)

ACTIVE_STATUSES = (
    AppointmentStatus.PENDING.value,
    AppointmentStatus.PENDING_PAYMENT.value,
    AppointmentStatus.CONFIRMED.value,
    AppointmentStatus.COMPLETED.value,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _next_queue_number(schedule_id: uuid.UUID):
    """Scalar subquery: next 1-based token number for a schedule."""
    other = aliased(Appointment)
    return (
        select(func.coalesce(func.max(other.queue_number), 0) + 1)
        .where(other.schedule_id == schedule_id)
        .correlate(None)
        .scalar_subquery()
    )


class DoctorRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Doctor:
        doctor = Doctor(**kwargs)
        self.session.add(doctor)
        await self.session.flush()
        return doctor

    async def get_by_id(self, doctor_id: uuid.UUID) -> Optional[Doctor]:
        return await self.session.get(Doctor, doctor_id)

    async def list(self, active_only: bool = True) -> Sequence[Doctor]:
        stmt = select(Doctor)
        if active_only:
            stmt = stmt.where(Doctor.active.is_(True))
        result = await self.session.execute(stmt.order_by(Doctor.name))
        return result.scalars().all()


class PatientRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Patient:
        patient = Patient(**kwargs)
        self.session.add(patient)
        await self.session.flush()
        return patient

    async def get_by_id(self, patient_id: uuid.UUID) -> Optional[Patient]:
        return await self.session.get(Patient, patient_id)


class ScheduleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Schedule:
        schedule = Schedule(**kwargs)
        self.session.add(schedule)
        await self.session.flush()
        return schedule

    async def get_by_id(self, schedule_id: uuid.UUID) -> Optional[Schedule]:
        return await self.session.get(Schedule, schedule_id)

    async def lock(self, schedule_id: uuid.UUID) -> Optional[Schedule]:
        """Load a schedule with a row lock held until the transaction ends."""
        stmt = select(Schedule).where(Schedule.id == schedule_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_window(
        self, doctor_id: uuid.UUID, day: date, start_time: str, end_time: str
    ) -> Optional[Schedule]:
        stmt = select(Schedule).where(
            Schedule.doctor_id == doctor_id,
            Schedule.date == day,
            Schedule.start_time == start_time,
            Schedule.end_time == end_time,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_doctor(self, doctor_id: uuid.UUID, start: date, end: date) -> Sequence[Schedule]:
        stmt = (
            select(Schedule)
            .where(Schedule.doctor_id == doctor_id, Schedule.date >= start, Schedule.date <= end)
            .order_by(Schedule.date, Schedule.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def update(self, schedule_id: uuid.UUID, **kwargs) -> Optional[Schedule]:
        schedule = await self.get_by_id(schedule_id)
        if not schedule:
            return None
        for k, v in kwargs.items():
            if v is not None:
                setattr(schedule, k, v)
        await self.session.flush()
        return schedule

    async def delete(self, schedule: Schedule) -> None:
        await self.session.delete(schedule)
        await self.session.flush()


class WeeklyAvailabilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> WeeklyAvailability:
        rule = WeeklyAvailability(**kwargs)
        self.session.add(rule)
        await self.session.flush()
        return rule

    async def get_by_id(self, rule_id: uuid.UUID) -> Optional[WeeklyAvailability]:
        return await self.session.get(WeeklyAvailability, rule_id)

    async def list_for_doctor(self, doctor_id: uuid.UUID, active_only: bool = True) -> Sequence[WeeklyAvailability]:
        stmt = select(WeeklyAvailability).where(WeeklyAvailability.doctor_id == doctor_id)
        if active_only:
            stmt = stmt.where(WeeklyAvailability.active.is_(True))
        stmt = stmt.order_by(WeeklyAvailability.day_of_week, WeeklyAvailability.start_time)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def deactivate(self, rule_id: uuid.UUID) -> Optional[WeeklyAvailability]:
        rule = await self.get_by_id(rule_id)
        if not rule:
            return None
        rule.active = False
        await self.session.flush()
        return rule


class ScheduleExceptionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> ScheduleException:
        exc = ScheduleException(**kwargs)
        self.session.add(exc)
        await self.session.flush()
        return exc

    async def get_by_id(self, exception_id: uuid.UUID) -> Optional[ScheduleException]:
        return await self.session.get(ScheduleException, exception_id)

    async def list_covering(
        self, doctor_id: Optional[uuid.UUID], start: date, end: date
    ) -> Sequence[ScheduleException]:
        """Exceptions overlapping ``[start, end]`` for a doctor, including all-doctor ones."""
        stmt = select(ScheduleException).where(
            ScheduleException.date_from <= end,
            ScheduleException.date_to >= start,
        )
        if doctor_id is not None:
            stmt = stmt.where(
                or_(ScheduleException.doctor_id == doctor_id, ScheduleException.doctor_id.is_(None))
            )
        stmt = stmt.order_by(ScheduleException.date_from, ScheduleException.created_at)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def delete(self, exc: ScheduleException) -> None:
        await self.session.delete(exc)
        await self.session.flush()


class AppointmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        return await self.session.get(Appointment, appointment_id)

    async def refresh(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        """Reload from the database, discarding any stale identity-map copy."""
        return await self.session.get(Appointment, appointment_id, populate_existing=True)

    async def reserve(
        self,
        schedule: Schedule,
        patient_id: uuid.UUID,
        *,
        start_time: datetime,
        end_time: datetime,
        status: str = AppointmentStatus.PENDING_PAYMENT.value,
        assign_queue_number: bool = False,
        payment_id: Optional[uuid.UUID] = None,
        payment_status: str = AppointmentPaymentStatus.UNPAID.value,
        payment_provider: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        rescheduled_from_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[uuid.UUID]:
        """Insert one appointment only while the schedule has a free unit.

        Returns the new appointment id, or None when the window was full at
        the moment of the insert.
        """
        appointment_id = uuid.uuid4()
        now = created_at or _utcnow()
        table = Appointment.__table__
        values: dict[str, Any] = {
            "id": appointment_id,
            "patient_id": patient_id,
            "doctor_id": schedule.doctor_id,
            "schedule_id": schedule.id,
            "payment_id": payment_id,
            "start_time": start_time,
            "end_time": end_time,
            "status": status,
            "payment_status": payment_status,
            "payment_provider": payment_provider,
            "paid_at": paid_at,
            "notes": notes,
            "rescheduled_from_id": rescheduled_from_id,
            "created_at": now,
            "updated_at": now,
        }
        columns = [literal(v, type_=table.c[k].type).label(k) for k, v in values.items()]
        names = list(values)
        if assign_queue_number:
            columns.append(_next_queue_number(schedule.id).label("queue_number"))
            names.append("queue_number")

        counted = aliased(Appointment)
        active = (
            select(func.count(counted.id))
            .where(counted.schedule_id == schedule.id, counted.status.in_(ACTIVE_STATUSES))
            .correlate(None)
            .scalar_subquery()
        )
        source = select(*columns).where(active < schedule.max_patients)
        result = await self.session.execute(insert(Appointment).from_select(names, source))
        if result.rowcount == 0:
            return None
        return appointment_id

    async def transition(
        self,
        appointment_id: uuid.UUID,
        to_status: str,
        expected: Iterable[str],
        **values: Any,
    ) -> bool:
        """Move an appointment to ``to_status`` only if it is still in ``expected``."""
        stmt = (
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.status.in_(list(expected)))
            .values(status=to_status, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def confirm_paid(
        self,
        appointment_id: uuid.UUID,
        schedule_id: uuid.UUID,
        *,
        payment_provider: str,
        paid_at: datetime,
    ) -> bool:
        """PENDING_PAYMENT -> CONFIRMED, assigning the next queue number."""
        return await self.transition(
            appointment_id,
            AppointmentStatus.CONFIRMED.value,
            expected=[AppointmentStatus.PENDING_PAYMENT.value],
            queue_number=_next_queue_number(schedule_id),
            payment_status=AppointmentPaymentStatus.PAID.value,
            payment_provider=payment_provider,
            paid_at=paid_at,
        )

    async def set_payment(self, appointment_id: uuid.UUID, payment_id: uuid.UUID) -> None:
        stmt = (
            update(Appointment)
            .where(Appointment.id == appointment_id)
            .values(payment_id=payment_id, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def set_payment_status(self, appointment_id: uuid.UUID, payment_status: str) -> None:
        stmt = (
            update(Appointment)
            .where(Appointment.id == appointment_id)
            .values(payment_status=payment_status, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def count_active_by_schedule(self, schedule_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, int]:
        ids = list(schedule_ids)
        if not ids:
            return {}
        stmt = (
            select(Appointment.schedule_id, func.count(Appointment.id))
            .where(Appointment.schedule_id.in_(ids), Appointment.status.in_(ACTIVE_STATUSES))
            .group_by(Appointment.schedule_id)
        )
        result = await self.session.execute(stmt)
        return {row[0]: row[1] for row in result.all()}

    async def find_active_for_patient(
        self, schedule_id: uuid.UUID, patient_id: uuid.UUID
    ) -> Optional[Appointment]:
        stmt = select(Appointment).where(
            Appointment.schedule_id == schedule_id,
            Appointment.patient_id == patient_id,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def list_stale_pending(self, cutoff: datetime, limit: int = 500) -> Sequence[uuid.UUID]:
        stmt = (
            select(Appointment.id)
            .where(
                Appointment.status == AppointmentStatus.PENDING_PAYMENT.value,
                Appointment.created_at < cutoff,
            )
            .order_by(Appointment.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_by_schedule(self, schedule_id: uuid.UUID, active_only: bool = False) -> Sequence[Appointment]:
        stmt = select(Appointment).where(Appointment.schedule_id == schedule_id)
        if active_only:
            stmt = stmt.where(Appointment.status.in_(ACTIVE_STATUSES))
        result = await self.session.execute(stmt.order_by(Appointment.queue_number, Appointment.created_at))
        return result.scalars().all()

    async def list_by_patient(self, patient_id: uuid.UUID, limit: int = 50) -> Sequence[Appointment]:
        stmt = (
            select(Appointment)
            .where(Appointment.patient_id == patient_id)
            .order_by(Appointment.start_time.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class PaymentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Payment:
        payment = Payment(**kwargs)
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self.session.get(Payment, payment_id, populate_existing=True)

    async def get_by_intent_id(self, intent_id: str) -> Optional[Payment]:
        result = await self.session.execute(select(Payment).where(Payment.provider_intent_id == intent_id))
        return result.scalar_one_or_none()

    async def update_status(self, payment_id: uuid.UUID, status: str, **values: Any) -> None:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .values(status=status, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def repoint(self, payment_id: uuid.UUID, appointment_id: uuid.UUID) -> None:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .values(appointment_id=appointment_id, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)


class CommissionSettingsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_doctor(self, doctor_id: uuid.UUID) -> Optional[DoctorCommissionSettings]:
        result = await self.session.execute(
            select(DoctorCommissionSettings).where(DoctorCommissionSettings.doctor_id == doctor_id)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self, doctor_id: uuid.UUID, commission_rate: Decimal, appointment_price: Decimal
    ) -> DoctorCommissionSettings:
        settings = await self.get_by_doctor(doctor_id)
        if settings is None:
            settings = DoctorCommissionSettings(
                doctor_id=doctor_id,
                commission_rate=commission_rate,
                appointment_price=appointment_price,
            )
            self.session.add(settings)
        else:
            settings.commission_rate = commission_rate
            settings.appointment_price = appointment_price
            settings.updated_at = _utcnow()
        await self.session.flush()
        return settings


class CommissionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Commission:
        commission = Commission(**kwargs)
        self.session.add(commission)
        await self.session.flush()
        return commission

    async def get_by_id(self, commission_id: uuid.UUID) -> Optional[Commission]:
        return await self.session.get(Commission, commission_id, populate_existing=True)

    async def get_by_payment_id(self, payment_id: uuid.UUID) -> Optional[Commission]:
        result = await self.session.execute(select(Commission).where(Commission.payment_id == payment_id))
        return result.scalar_one_or_none()

    async def transition(
        self, commission_id: uuid.UUID, to_status: str, expected: Iterable[str], **values: Any
    ) -> bool:
        stmt = (
            update(Commission)
            .where(Commission.id == commission_id, Commission.status.in_(list(expected)))
            .values(status=to_status, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def repoint(self, payment_id: uuid.UUID, appointment_id: uuid.UUID) -> None:
        stmt = (
            update(Commission)
            .where(Commission.payment_id == payment_id)
            .values(appointment_id=appointment_id, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def totals_by_status(self, doctor_id: Optional[uuid.UUID] = None) -> dict[str, dict[str, Any]]:
        stmt = select(
            Commission.status,
            func.count(Commission.id),
            func.coalesce(func.sum(Commission.appointment_amount), 0),
            func.coalesce(func.sum(Commission.commission_amount), 0),
            func.coalesce(func.sum(Commission.doctor_payout_amount), 0),
        ).group_by(Commission.status)
        if doctor_id is not None:
            stmt = stmt.where(Commission.doctor_id == doctor_id)
        result = await self.session.execute(stmt)
        return {
            row[0]: {
                "count": row[1],
                "appointment_amount": _money(row[2]),
                "commission_amount": _money(row[3]),
                "doctor_payout_amount": _money(row[4]),
            }
            for row in result.all()
        }


class AuditRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_action(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        user_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            details=details,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_resource(self, resource_type: str, resource_id: str, limit: int = 50) -> Sequence[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.resource_type == resource_type, AuditLog.resource_id == resource_id)
            .order_by(AuditLog.timestamp.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
