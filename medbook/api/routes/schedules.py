"""Schedule management endpoints: dated windows, weekly rules, exceptions."""

import uuid
from datetime import date, datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from medbook.api.dependencies import get_service, get_session, parse_uuid, require_admin, require_staff
from medbook.api.routes.availability import date_range
from medbook.core.models import Schedule, ScheduleException, WeeklyAvailability
from medbook.core.repository import ScheduleRepository
from medbook.scheduling import SchedulingService
from medbook.scheduling.errors import AuthorizationError, NotFoundError
from medbook.scheduling.models import Actor, ActorRole

router = APIRouter()

HHMM = r"^([01]\d|2[0-3]):([0-5]\d)$"


# ---------------------------------------------------------------------------
# Pydantic request/response schemas
# ---------------------------------------------------------------------------

class ScheduleCreate(BaseModel):
    doctor_id: str
    date: date
    start_time: str = Field(pattern=HHMM)
    end_time: str = Field(pattern=HHMM)
    max_patients: int = Field(ge=1)


class ScheduleUpdate(BaseModel):
    day: date | None = None
    start_time: str | None = Field(default=None, pattern=HHMM)
    end_time: str | None = Field(default=None, pattern=HHMM)
    max_patients: int | None = Field(default=None, ge=1)


class ScheduleResponse(BaseModel):
    id: str
    doctor_id: str
    date: date
    start_time: str
    end_time: str
    max_patients: int
    created_at: datetime | None = None


class WeeklyRuleIn(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str = Field(pattern=HHMM)
    end_time: str = Field(pattern=HHMM)
    max_patients: int = Field(ge=1)
    valid_from: date | None = None
    valid_to: date | None = None


class WeeklyRuleResponse(BaseModel):
    id: str
    doctor_id: str
    day_of_week: int
    start_time: str
    end_time: str
    max_patients: int
    valid_from: date | None = None
    valid_to: date | None = None
    active: bool


class ExceptionCreate(BaseModel):
    scope: Literal["ALL_DOCTORS", "SELECTED_DOCTORS"]
    doctor_ids: list[str] | None = None
    date_from: date
    date_to: date | None = None
    type: Literal["UNAVAILABLE", "AVAILABLE"] = "UNAVAILABLE"
    is_full_day: bool = True
    start_time: str | None = Field(default=None, pattern=HHMM)
    end_time: str | None = Field(default=None, pattern=HHMM)
    reason: str | None = None
    label: str | None = None
    max_patients: int | None = Field(default=None, ge=1)


class ExceptionResponse(BaseModel):
    id: str
    doctor_id: str | None = None
    date_from: date
    date_to: date
    start_time: str | None = None
    end_time: str | None = None
    type: str
    reason: str
    label: str | None = None
    max_patients: int | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _schedule_to_response(schedule: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=str(schedule.id),
        doctor_id=str(schedule.doctor_id),
        date=schedule.date,
        start_time=schedule.start_time,
        end_time=schedule.end_time,
        max_patients=schedule.max_patients,
        created_at=schedule.created_at,
    )


def _rule_to_response(rule: WeeklyAvailability) -> WeeklyRuleResponse:
    return WeeklyRuleResponse(
        id=str(rule.id),
        doctor_id=str(rule.doctor_id),
        day_of_week=rule.day_of_week,
        start_time=rule.start_time,
        end_time=rule.end_time,
        max_patients=rule.max_patients,
        valid_from=rule.valid_from,
        valid_to=rule.valid_to,
        active=rule.active,
    )


def _exception_to_response(exc: ScheduleException) -> ExceptionResponse:
    return ExceptionResponse(
        id=str(exc.id),
        doctor_id=str(exc.doctor_id) if exc.doctor_id else None,
        date_from=exc.date_from,
        date_to=exc.date_to,
        start_time=exc.start_time,
        end_time=exc.end_time,
        type=exc.type,
        reason=exc.reason,
        label=exc.label,
        max_patients=exc.max_patients,
    )


def _assert_own_doctor(actor: Actor, doctor_id: uuid.UUID) -> None:
    """Doctors manage only their own windows; admins manage everyone's."""
    if actor.role == ActorRole.DOCTOR and actor.id != str(doctor_id):
        raise AuthorizationError("Doctors can only manage their own schedules")


async def _owned_schedule(session: AsyncSession, schedule_id: uuid.UUID, actor: Actor) -> Schedule:
    schedule = await ScheduleRepository(session).get_by_id(schedule_id)
    if schedule is None:
        raise NotFoundError("Schedule not found", details={"schedule_id": str(schedule_id)})
    _assert_own_doctor(actor, schedule.doctor_id)
    return schedule


# ---------------------------------------------------------------------------
# Dated schedules
# ---------------------------------------------------------------------------

@router.post("/schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(
    body: ScheduleCreate,
    actor: Actor = Depends(require_staff),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> ScheduleResponse:
    doctor_id = parse_uuid(body.doctor_id, "doctor_id")
    _assert_own_doctor(actor, doctor_id)
    schedule = await service.schedules.create_schedule(
        session, doctor_id, body.date, body.start_time, body.end_time, body.max_patients, created_by_id=actor.id
    )
    return _schedule_to_response(schedule)


@router.get("/doctors/{doctor_id}/schedules", response_model=list[ScheduleResponse])
async def list_schedules(
    doctor_id: str,
    start_date: date = Query(...),
    end_date: Optional[date] = Query(None),
    session: AsyncSession = Depends(get_session),
) -> list[ScheduleResponse]:
    span = date_range(start_date, end_date)
    schedules = await ScheduleRepository(session).list_for_doctor(
        parse_uuid(doctor_id, "doctor_id"), span.start, span.end
    )
    return [_schedule_to_response(s) for s in schedules]


@router.patch("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: str,
    body: ScheduleUpdate,
    actor: Actor = Depends(require_staff),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> ScheduleResponse:
    sid = parse_uuid(schedule_id, "schedule_id")
    await _owned_schedule(session, sid, actor)
    schedule = await service.schedules.update_schedule(
        session, sid, day=body.day, start_time=body.start_time, end_time=body.end_time, max_patients=body.max_patients
    )
    return _schedule_to_response(schedule)


@router.delete("/schedules/{schedule_id}", status_code=204)
async def delete_schedule(
    schedule_id: str,
    actor: Actor = Depends(require_staff),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> None:
    sid = parse_uuid(schedule_id, "schedule_id")
    await _owned_schedule(session, sid, actor)
    await service.schedules.delete_schedule(session, sid)


@router.post("/doctors/{doctor_id}/materialize", response_model=list[ScheduleResponse])
async def materialize_windows(
    doctor_id: str,
    start_date: date = Query(...),
    end_date: Optional[date] = Query(None),
    actor: Actor = Depends(require_staff),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> list[ScheduleResponse]:
    """Create dated schedules for every weekly and extra-hours window in the range."""
    did = parse_uuid(doctor_id, "doctor_id")
    _assert_own_doctor(actor, did)
    created = await service.schedules.materialize_range(session, did, date_range(start_date, end_date))
    return [_schedule_to_response(s) for s in created]


# ---------------------------------------------------------------------------
# Weekly rules
# ---------------------------------------------------------------------------

@router.post("/doctors/{doctor_id}/weekly-rules", response_model=WeeklyRuleResponse, status_code=201)
async def add_weekly_rule(
    doctor_id: str,
    body: WeeklyRuleIn,
    actor: Actor = Depends(require_staff),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> WeeklyRuleResponse:
    did = parse_uuid(doctor_id, "doctor_id")
    _assert_own_doctor(actor, did)
    rule = await service.schedules.add_weekly_rule(
        session,
        did,
        body.day_of_week,
        body.start_time,
        body.end_time,
        body.max_patients,
        valid_from=body.valid_from,
        valid_to=body.valid_to,
    )
    return _rule_to_response(rule)


@router.delete("/weekly-rules/{rule_id}", response_model=WeeklyRuleResponse)
async def deactivate_weekly_rule(
    rule_id: str,
    actor: Actor = Depends(require_admin),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> WeeklyRuleResponse:
    rule = await service.schedules.deactivate_weekly_rule(session, parse_uuid(rule_id, "rule_id"))
    return _rule_to_response(rule)


# ---------------------------------------------------------------------------
# Exceptions (closures and extra hours)
# ---------------------------------------------------------------------------

@router.post("/schedule-exceptions", response_model=list[ExceptionResponse], status_code=201)
async def create_exception(
    body: ExceptionCreate,
    actor: Actor = Depends(require_admin),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> list[ExceptionResponse]:
    created = await service.schedules.create_exception(
        session,
        created_by_id=actor.id,
        scope=body.scope,
        date_from=body.date_from,
        date_to=body.date_to,
        doctor_ids=[parse_uuid(d, "doctor_id") for d in body.doctor_ids or []],
        type=body.type,
        is_full_day=body.is_full_day,
        start_time=body.start_time,
        end_time=body.end_time,
        reason=body.reason,
        label=body.label,
        max_patients=body.max_patients,
    )
    return [_exception_to_response(e) for e in created]


@router.get("/schedule-exceptions", response_model=list[ExceptionResponse])
async def list_exceptions(
    start_date: date = Query(...),
    end_date: Optional[date] = Query(None),
    doctor_id: Optional[str] = Query(None),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> list[ExceptionResponse]:
    exceptions = await service.schedules.list_exceptions(
        session, parse_uuid(doctor_id, "doctor_id") if doctor_id else None, date_range(start_date, end_date)
    )
    return [_exception_to_response(e) for e in exceptions]


@router.delete("/schedule-exceptions/{exception_id}", status_code=204)
async def delete_exception(
    exception_id: str,
    actor: Actor = Depends(require_admin),
    service: SchedulingService = Depends(get_service),
    session: AsyncSession = Depends(get_session),
) -> None:
    await service.schedules.delete_exception(session, parse_uuid(exception_id, "exception_id"))
