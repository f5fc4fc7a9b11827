"""Schedule management: dated windows, weekly rules, exceptions, materialization."""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medbook.config import BookingPolicy
from medbook.core.models import (
    Schedule,
    ScheduleException,
    ScheduleExceptionReason,
    ScheduleExceptionType,
    WeeklyAvailability,
)
from medbook.core.repository import (
    AppointmentRepository,
    AuditRepository,
    DoctorRepository,
    ScheduleExceptionRepository,
    ScheduleRepository,
    WeeklyAvailabilityRepository,
)
from medbook.scheduling.errors import ConflictError, NotFoundError, ValidationError
from medbook.scheduling.models import (
    DateRange,
    WindowTemplate,
    as_utc,
    is_valid_hhmm,
    ranges_overlap,
    to_minutes,
    window_bounds,
)
from medbook.scheduling.resolver import AvailabilityResolver

logger = logging.getLogger(__name__)

SCOPE_ALL_DOCTORS = "ALL_DOCTORS"
SCOPE_SELECTED_DOCTORS = "SELECTED_DOCTORS"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_time_range(start_time: Optional[str], end_time: Optional[str]) -> None:
    """Both times must be HH:mm and start strictly before end."""
    for value in (start_time, end_time):
        if value is None or not is_valid_hhmm(value):
            raise ValidationError(f"Invalid time format: {value}. Use HH:mm")
    if to_minutes(start_time) >= to_minutes(end_time):
        raise ValidationError("End time must be after start time")


class ScheduleManager:
    """Doctor/admin operations on the inputs the resolver reads."""

    def __init__(self, policy: BookingPolicy, clock: Optional[Callable[[], datetime]] = None):
        self.policy = policy
        self.resolver = AvailabilityResolver(policy)
        self._clock = clock or _utcnow

    def _assert_future(self, day: date, end_time: str) -> None:
        _, ends_at = window_bounds(day, "00:00", end_time, self.policy.clinic_timezone)
        if ends_at <= as_utc(self._clock()):
            raise ValidationError(
                "Cannot create a capacity schedule for a past date or time. The schedule end must be in the future."
            )

    async def _assert_no_overlap(
        self,
        session: AsyncSession,
        doctor_id: uuid.UUID,
        day: date,
        start_time: str,
        end_time: str,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        for existing in await ScheduleRepository(session).list_for_doctor(doctor_id, day, day):
            if existing.id == exclude_id:
                continue
            if ranges_overlap(start_time, end_time, existing.start_time, existing.end_time):
                logger.warning(
                    f"Schedule overlap rejected for doctor {doctor_id} on {day}: "
                    f"{start_time}-{end_time} vs {existing.start_time}-{existing.end_time}"
                )
                raise ConflictError(
                    "This time window overlaps with an existing schedule for the same doctor on this date",
                    details={"schedule_id": str(existing.id)},
                    retryable=False,
                )

    # Dated schedules

    async def create_schedule(
        self,
        session: AsyncSession,
        doctor_id: uuid.UUID,
        day: date,
        start_time: str,
        end_time: str,
        max_patients: int,
        created_by_id: Optional[str] = None,
    ) -> Schedule:
        if max_patients < 1:
            raise ValidationError("maxPatients must be at least 1")
        validate_time_range(start_time, end_time)
        if await DoctorRepository(session).get_by_id(doctor_id) is None:
            raise NotFoundError("Doctor not found", details={"doctor_id": str(doctor_id)})
        self._assert_future(day, end_time)
        await self._assert_no_overlap(session, doctor_id, day, start_time, end_time)

        schedule = await ScheduleRepository(session).create(
            doctor_id=doctor_id,
            date=day,
            start_time=start_time,
            end_time=end_time,
            max_patients=max_patients,
            created_by_id=created_by_id,
        )
        await AuditRepository(session).log_action(
            action="schedule.created",
            resource_type="schedule",
            resource_id=str(schedule.id),
            user_id=created_by_id,
            details={"date": day.isoformat(), "start_time": start_time, "end_time": end_time},
        )
        logger.info(f"Schedule {schedule.id} created for doctor {doctor_id} on {day} {start_time}-{end_time}")
        return schedule

    async def update_schedule(
        self,
        session: AsyncSession,
        schedule_id: uuid.UUID,
        day: Optional[date] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        max_patients: Optional[int] = None,
    ) -> Schedule:
        repo = ScheduleRepository(session)
        # Same row lock as reserve, so the booking count below cannot go stale
        schedule = await repo.lock(schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule not found", details={"schedule_id": str(schedule_id)})

        new_day = day or schedule.date
        new_start = start_time or schedule.start_time
        new_end = end_time or schedule.end_time
        if max_patients is not None and max_patients < 1:
            raise ValidationError("maxPatients must be at least 1")
        validate_time_range(new_start, new_end)

        active = await AppointmentRepository(session).count_active_by_schedule([schedule_id])
        booked = active.get(schedule_id, 0)
        moved = (new_day, new_start, new_end) != (schedule.date, schedule.start_time, schedule.end_time)
        if moved:
            if booked:
                raise ConflictError(
                    "Cannot move a window that already has bookings",
                    details={"active_appointments": booked},
                    retryable=False,
                )
            self._assert_future(new_day, new_end)
            await self._assert_no_overlap(session, schedule.doctor_id, new_day, new_start, new_end, exclude_id=schedule_id)
        if max_patients is not None and max_patients < booked:
            raise ValidationError(
                f"maxPatients cannot be lower than the {booked} existing bookings",
                details={"active_appointments": booked},
            )

        return await repo.update(
            schedule_id, date=new_day, start_time=new_start, end_time=new_end, max_patients=max_patients
        )

    async def delete_schedule(self, session: AsyncSession, schedule_id: uuid.UUID) -> None:
        repo = ScheduleRepository(session)
        schedule = await repo.lock(schedule_id)
        if schedule is None:
            raise NotFoundError("Schedule not found", details={"schedule_id": str(schedule_id)})
        active = await AppointmentRepository(session).count_active_by_schedule([schedule_id])
        if active.get(schedule_id):
            raise ConflictError(
                "Cannot delete a window that has active bookings; cancel them first",
                details={"active_appointments": active[schedule_id]},
                retryable=False,
            )
        await repo.delete(schedule)
        logger.info(f"Schedule {schedule_id} deleted (doctor {schedule.doctor_id})")

    # Weekly rules

    async def add_weekly_rule(
        self,
        session: AsyncSession,
        doctor_id: uuid.UUID,
        day_of_week: int,
        start_time: str,
        end_time: str,
        max_patients: int,
        valid_from: Optional[date] = None,
        valid_to: Optional[date] = None,
    ) -> WeeklyAvailability:
        if not 0 <= day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 (Monday) and 6 (Sunday)")
        if max_patients < 1:
            raise ValidationError("maxPatients must be at least 1")
        validate_time_range(start_time, end_time)
        if valid_from and valid_to and valid_to < valid_from:
            raise ValidationError("valid_to must be on or after valid_from")
        if await DoctorRepository(session).get_by_id(doctor_id) is None:
            raise NotFoundError("Doctor not found", details={"doctor_id": str(doctor_id)})

        repo = WeeklyAvailabilityRepository(session)
        for rule in await repo.list_for_doctor(doctor_id):
            if rule.day_of_week == day_of_week and ranges_overlap(
                start_time, end_time, rule.start_time, rule.end_time
            ):
                raise ConflictError(
                    "This time window overlaps with an existing weekly rule",
                    details={"rule_id": str(rule.id)},
                    retryable=False,
                )

        return await repo.create(
            doctor_id=doctor_id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            max_patients=max_patients,
            valid_from=valid_from,
            valid_to=valid_to,
        )

    async def deactivate_weekly_rule(self, session: AsyncSession, rule_id: uuid.UUID) -> WeeklyAvailability:
        rule = await WeeklyAvailabilityRepository(session).deactivate(rule_id)
        if rule is None:
            raise NotFoundError("Weekly rule not found", details={"rule_id": str(rule_id)})
        return rule

    # Exceptions

    async def create_exception(
        self,
        session: AsyncSession,
        created_by_id: str,
        scope: str,
        date_from: date,
        date_to: Optional[date] = None,
        doctor_ids: Optional[list[uuid.UUID]] = None,
        type: str = ScheduleExceptionType.UNAVAILABLE.value,
        is_full_day: bool = True,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        reason: Optional[str] = None,
        label: Optional[str] = None,
        max_patients: Optional[int] = None,
    ) -> list[ScheduleException]:
        """Create a closure or extra-hours exception.

        ALL_DOCTORS creates one row with no doctor; SELECTED_DOCTORS creates
        one row per listed doctor.
        """
        date_to = date_to or date_from
        if date_to < date_from:
            raise ValidationError("End date must be on or after start date")
        if scope not in (SCOPE_ALL_DOCTORS, SCOPE_SELECTED_DOCTORS):
            raise ValidationError(f"Unknown scope {scope}")
        if scope == SCOPE_SELECTED_DOCTORS and not doctor_ids:
            raise ValidationError("At least one doctor must be selected")
        try:
            exc_type = ScheduleExceptionType(type)
        except ValueError as e:
            raise ValidationError(f"Unknown exception type {type}") from e

        if exc_type == ScheduleExceptionType.UNAVAILABLE:
            if is_full_day:
                start_time = end_time = None
            else:
                if start_time is None or end_time is None:
                    raise ValidationError("Partial closure requires start time and end time")
                validate_time_range(start_time, end_time)
            default_reason = ScheduleExceptionReason.HOLIDAY
        else:
            if not start_time or not end_time:
                raise ValidationError("Extra hours require start time and end time")
            validate_time_range(start_time, end_time)
            if max_patients is not None and max_patients < 1:
                raise ValidationError("maxPatients must be at least 1")
            default_reason = ScheduleExceptionReason.EXTRA_HOURS

        try:
            exc_reason = ScheduleExceptionReason(reason) if reason else default_reason
        except ValueError as e:
            raise ValidationError(f"Unknown exception reason {reason}") from e

        targets: list[Optional[uuid.UUID]]
        if scope == SCOPE_ALL_DOCTORS:
            targets = [None]
        else:
            doctors = DoctorRepository(session)
            for doctor_id in doctor_ids:
                if await doctors.get_by_id(doctor_id) is None:
                    raise NotFoundError("Doctor not found", details={"doctor_id": str(doctor_id)})
            targets = list(doctor_ids)

        repo = ScheduleExceptionRepository(session)
        created = []
        for doctor_id in targets:
            created.append(
                await repo.create(
                    doctor_id=doctor_id,
                    date_from=date_from,
                    date_to=date_to,
                    start_time=start_time,
                    end_time=end_time,
                    type=exc_type.value,
                    reason=exc_reason.value,
                    label=label,
                    max_patients=max_patients,
                    created_by_id=created_by_id,
                )
            )
        logger.info(
            f"Created {len(created)} {exc_type.value} exception(s) {date_from}..{date_to} scope={scope}"
        )
        return created

    async def delete_exception(self, session: AsyncSession, exception_id: uuid.UUID) -> None:
        repo = ScheduleExceptionRepository(session)
        exc = await repo.get_by_id(exception_id)
        if exc is None:
            raise NotFoundError("Schedule exception not found", details={"exception_id": str(exception_id)})
        await repo.delete(exc)

    async def list_exceptions(
        self, session: AsyncSession, doctor_id: Optional[uuid.UUID], date_range: DateRange
    ) -> list[ScheduleException]:
        return list(await ScheduleExceptionRepository(session).list_covering(doctor_id, date_range.start, date_range.end))

    # Materialization

    async def materialize(self, session: AsyncSession, window: WindowTemplate) -> Schedule:
        """Get or create the dated Schedule row backing a resolved window."""
        repo = ScheduleRepository(session)
        if window.schedule_id is not None:
            schedule = await repo.get_by_id(window.schedule_id)
            if schedule is not None:
                return schedule

        existing = await repo.get_by_window(window.doctor_id, window.date, window.start_time, window.end_time)
        if existing is not None:
            return existing

        try:
            schedule = await repo.create(
                doctor_id=window.doctor_id,
                date=window.date,
                start_time=window.start_time,
                end_time=window.end_time,
                max_patients=window.max_patients,
                created_by_id="system",
            )
            await session.commit()
        except IntegrityError:
            # Another caller materialized the same window first
            await session.rollback()
            existing = await repo.get_by_window(window.doctor_id, window.date, window.start_time, window.end_time)
            if existing is None:
                raise
            return existing

        logger.info(f"Materialized {window.source.value} window {window.window_key} as schedule {schedule.id}")
        return schedule

    async def materialize_range(
        self, session: AsyncSession, doctor_id: uuid.UUID, date_range: DateRange
    ) -> list[Schedule]:
        """Materialize every weekly and exception window in the range."""
        resolved = await self.resolver.resolve(session, doctor_id, date_range)
        created = []
        for window in list(resolved):
            if window.schedule_id is None:
                created.append(await self.materialize(session, window))
        return created
