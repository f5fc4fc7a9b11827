"""Availability resolution.

Turns dated schedules, weekly rules and schedule exceptions into the
concrete list of capacity windows a doctor offers over a date range.
``resolve_windows`` is pure; ``AvailabilityResolver`` only loads its inputs.
"""

import logging
import uuid
from collections.abc import Iterable, Iterator, Sequence
from datetime import date, timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from medbook.config import BookingPolicy
from medbook.core.models import ScheduleExceptionType
from medbook.core.repository import (
    DoctorRepository,
    ScheduleExceptionRepository,
    ScheduleRepository,
    WeeklyAvailabilityRepository,
)
from medbook.scheduling.errors import NotFoundError, ValidationError
from medbook.scheduling.models import (
    DateRange,
    WindowSource,
    WindowTemplate,
    is_valid_hhmm,
    ranges_overlap,
    window_bounds,
)

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 92


class ResolvedAvailability:
    """Lazy, restartable sequence of windows.

    Every ``iter()`` walks the inputs again from the first date, so the
    same object can be consumed more than once.
    """

    def __init__(
        self,
        doctor_id: uuid.UUID,
        start: date,
        end: date,
        schedules: Sequence[Any],
        weekly_rules: Sequence[Any],
        exceptions: Sequence[Any],
        default_max_patients: int,
        tz_name: str = "UTC",
    ):
        self.doctor_id = doctor_id
        self.start = start
        self.end = end
        self._schedules = list(schedules)
        self._weekly_rules = list(weekly_rules)
        self._exceptions = list(exceptions)
        self._default_max_patients = default_max_patients
        self._tz_name = tz_name

    def __iter__(self) -> Iterator[WindowTemplate]:
        day = self.start
        while day <= self.end:
            yield from self._resolve_day(day)
            day += timedelta(days=1)

    def for_date(self, day: date) -> list[WindowTemplate]:
        return self._resolve_day(day)

    def _template(
        self,
        day: date,
        start_time: str,
        end_time: str,
        max_patients: int,
        source: WindowSource,
        schedule_id: Optional[uuid.UUID] = None,
        label: Optional[str] = None,
    ) -> WindowTemplate:
        starts_at, ends_at = window_bounds(day, start_time, end_time, self._tz_name)
        return WindowTemplate(
            window_key=WindowTemplate.make_key(self.doctor_id, day, start_time, end_time),
            schedule_id=schedule_id,
            source=source,
            doctor_id=self.doctor_id,
            date=day,
            start_time=start_time,
            end_time=end_time,
            starts_at=starts_at,
            ends_at=ends_at,
            max_patients=max_patients,
            label=label,
        )

    def _effective_exceptions(self, day: date) -> list[Any]:
        covering = [e for e in self._exceptions if e.date_from <= day <= e.date_to]
        own = [e for e in covering if e.doctor_id is not None]
        if own:
            return own
        return [e for e in covering if e.doctor_id is None]

    def _resolve_day(self, day: date) -> list[WindowTemplate]:
        candidates: list[WindowTemplate] = []
        dated_times: set[tuple[str, str]] = set()

        for schedule in self._schedules:
            if schedule.date != day:
                continue
            dated_times.add((schedule.start_time, schedule.end_time))
            candidates.append(
                self._template(
                    day,
                    schedule.start_time,
                    schedule.end_time,
                    schedule.max_patients,
                    WindowSource.SCHEDULE,
                    schedule_id=schedule.id,
                )
            )

        weekday = day.weekday()
        for rule in self._weekly_rules:
            if not rule.active or rule.day_of_week != weekday:
                continue
            if rule.valid_from and day < rule.valid_from:
                continue
            if rule.valid_to and day > rule.valid_to:
                continue
            if (rule.start_time, rule.end_time) in dated_times:
                continue
            candidates.append(
                self._template(day, rule.start_time, rule.end_time, rule.max_patients, WindowSource.WEEKLY)
            )

        effective = self._effective_exceptions(day)

        for exc in effective:
            if exc.type != ScheduleExceptionType.UNAVAILABLE.value:
                continue
            if not exc.start_time or not exc.end_time:
                candidates = []
                break
            candidates = [
                c for c in candidates
                if not ranges_overlap(c.start_time, c.end_time, exc.start_time, exc.end_time)
            ]

        for exc in effective:
            if exc.type != ScheduleExceptionType.AVAILABLE.value:
                continue
            if not exc.start_time or not exc.end_time:
                logger.warning(f"Ignoring AVAILABLE exception {exc.id} without times")
                continue
            if any(c.start_time == exc.start_time and c.end_time == exc.end_time for c in candidates):
                continue
            candidates.append(
                self._template(
                    day,
                    exc.start_time,
                    exc.end_time,
                    exc.max_patients or self._default_max_patients,
                    WindowSource.EXCEPTION,
                    label=exc.label,
                )
            )

        candidates.sort(key=lambda c: c.start_time)
        return candidates


def resolve_windows(
    doctor_id: uuid.UUID,
    start: date,
    end: date,
    schedules: Iterable[Any],
    weekly_rules: Iterable[Any],
    exceptions: Iterable[Any],
    default_max_patients: int,
    tz_name: str = "UTC",
) -> ResolvedAvailability:
    """Resolve the windows a doctor offers between ``start`` and ``end`` inclusive."""
    if end < start:
        raise ValidationError("end date must not be before start date")
    return ResolvedAvailability(
        doctor_id,
        start,
        end,
        list(schedules),
        list(weekly_rules),
        list(exceptions),
        default_max_patients,
        tz_name,
    )


class AvailabilityResolver:
    """Loads schedule inputs for a doctor and resolves them."""

    def __init__(self, policy: BookingPolicy):
        self.policy = policy

    async def resolve(
        self, session: AsyncSession, doctor_id: uuid.UUID, date_range: DateRange
    ) -> ResolvedAvailability:
        if date_range.days > MAX_RANGE_DAYS:
            raise ValidationError(
                f"Date range too large (max {MAX_RANGE_DAYS} days)",
                details={"days": date_range.days},
            )

        doctor = await DoctorRepository(session).get_by_id(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor not found", details={"doctor_id": str(doctor_id)})

        schedules = await ScheduleRepository(session).list_for_doctor(doctor_id, date_range.start, date_range.end)
        weekly = await WeeklyAvailabilityRepository(session).list_for_doctor(doctor_id)
        exceptions = await ScheduleExceptionRepository(session).list_covering(
            doctor_id, date_range.start, date_range.end
        )

        for rule in weekly:
            if not (is_valid_hhmm(rule.start_time) and is_valid_hhmm(rule.end_time)):
                raise ValidationError(f"Weekly rule {rule.id} has malformed times")

        default_max = doctor.default_max_patients or self.policy.default_max_patients
        return resolve_windows(
            doctor_id,
            date_range.start,
            date_range.end,
            schedules,
            weekly,
            exceptions,
            default_max,
            self.policy.clinic_timezone,
        )

    async def is_offered(self, session: AsyncSession, schedule: Any) -> bool:
        """Whether a dated schedule still survives exception resolution."""
        resolved = await self.resolve(
            session, schedule.doctor_id, DateRange(start=schedule.date, end=schedule.date)
        )
        return any(w.schedule_id == schedule.id for w in resolved)
