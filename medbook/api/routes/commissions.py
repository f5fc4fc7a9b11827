"""Commission endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from medbook.api.dependencies import get_service, parse_uuid, require_admin, require_staff
from medbook.scheduling import SchedulingService
from medbook.scheduling.models import Actor, ActorRole, CommissionStats

router = APIRouter(prefix="/commissions")


class CommissionResponse(BaseModel):
    id: str
    payment_id: str
    appointment_id: str
    doctor_id: str
    appointment_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    doctor_payout_amount: Decimal
    status: str
    paid_at: datetime | None = None


class CommissionSettingsIn(BaseModel):
    commission_rate: Decimal = Field(ge=0, le=1)
    appointment_price: Decimal = Field(gt=0)


class CommissionSettingsResponse(BaseModel):
    doctor_id: str
    commission_rate: Decimal
    appointment_price: Decimal


@router.get("/stats", response_model=CommissionStats)
async def commission_stats(
    doctor_id: Optional[str] = Query(None),
    actor: Actor = Depends(require_staff),
    service: SchedulingService = Depends(get_service),
) -> CommissionStats:
    """Totals across all doctors (admins) or for the calling doctor."""
    if actor.role == ActorRole.DOCTOR:
        doctor_id = actor.id
    return await service.commission_stats(parse_uuid(doctor_id, "doctor_id") if doctor_id else None)


@router.post("/{commission_id}/mark-paid", response_model=CommissionResponse)
async def mark_commission_paid(
    commission_id: str,
    actor: Actor = Depends(require_admin),
    service: SchedulingService = Depends(get_service),
) -> CommissionResponse:
    commission = await service.mark_commission_paid(parse_uuid(commission_id, "commission_id"))
    return CommissionResponse(
        id=str(commission.id),
        payment_id=str(commission.payment_id),
        appointment_id=str(commission.appointment_id),
        doctor_id=str(commission.doctor_id),
        appointment_amount=commission.appointment_amount,
        commission_rate=commission.commission_rate,
        commission_amount=commission.commission_amount,
        doctor_payout_amount=commission.doctor_payout_amount,
        status=commission.status,
        paid_at=commission.paid_at,
    )


@router.put("/settings/{doctor_id}", response_model=CommissionSettingsResponse)
async def update_commission_settings(
    doctor_id: str,
    body: CommissionSettingsIn,
    actor: Actor = Depends(require_admin),
    service: SchedulingService = Depends(get_service),
) -> CommissionSettingsResponse:
    """Set a doctor's rate and price. Applies to future payments only."""
    settings = await service.update_commission_settings(
        parse_uuid(doctor_id, "doctor_id"), body.commission_rate, body.appointment_price
    )
    return CommissionSettingsResponse(
        doctor_id=str(settings.doctor_id),
        commission_rate=settings.commission_rate,
        appointment_price=settings.appointment_price,
    )
