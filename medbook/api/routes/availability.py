"""Availability endpoints."""

from datetime import date
from typing import Optional

import pydantic
from fastapi import APIRouter, Depends, Query

from medbook.api.dependencies import get_service, parse_uuid
from medbook.scheduling import SchedulingService
from medbook.scheduling.errors import ValidationError
from medbook.scheduling.models import CapacityWindow, DateRange

router = APIRouter()


def date_range(start_date: date, end_date: Optional[date]) -> DateRange:
    try:
        return DateRange(start=start_date, end=end_date or start_date)
    except pydantic.ValidationError as e:
        raise ValidationError("end_date must not be before start_date") from e


@router.get("/doctors/{doctor_id}/availability", response_model=list[CapacityWindow])
async def get_availability(
    doctor_id: str,
    start_date: date = Query(...),
    end_date: Optional[date] = Query(None),
    bookable_only: bool = Query(False),
    service: SchedulingService = Depends(get_service),
) -> list[CapacityWindow]:
    """Windows a doctor offers over the range, with remaining capacity."""
    windows = await service.resolve_availability(
        parse_uuid(doctor_id, "doctor_id"), date_range(start_date, end_date)
    )
    if bookable_only:
        windows = [w for w in windows if w.bookable]
    return windows
