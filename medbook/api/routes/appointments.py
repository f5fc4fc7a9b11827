"""Appointment endpoints: lookup, cancel, reschedule, complete."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from medbook.api.dependencies import get_current_actor, get_service, parse_uuid
from medbook.core.models import Appointment
from medbook.scheduling import SchedulingService
from medbook.scheduling.errors import AuthorizationError
from medbook.scheduling.models import Actor, ActorRole

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic request/response schemas
# ---------------------------------------------------------------------------

class AppointmentResponse(BaseModel):
    id: str
    patient_id: str
    doctor_id: str
    schedule_id: str | None = None
    payment_id: str | None = None
    start_time: datetime
    end_time: datetime
    status: str
    payment_status: str
    payment_provider: str | None = None
    paid_at: datetime | None = None
    queue_number: int | None = None
    notes: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    rescheduled_from_id: str | None = None
    created_at: datetime | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class RescheduleRequest(BaseModel):
    new_schedule_id: str


def appointment_to_response(appt: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=str(appt.id),
        patient_id=str(appt.patient_id),
        doctor_id=str(appt.doctor_id),
        schedule_id=str(appt.schedule_id) if appt.schedule_id else None,
        payment_id=str(appt.payment_id) if appt.payment_id else None,
        start_time=appt.start_time,
        end_time=appt.end_time,
        status=appt.status,
        payment_status=appt.payment_status,
        payment_provider=appt.payment_provider,
        paid_at=appt.paid_at,
        queue_number=appt.queue_number,
        notes=appt.notes,
        cancelled_by=appt.cancelled_by,
        cancelled_at=appt.cancelled_at,
        cancel_reason=appt.cancel_reason,
        rescheduled_from_id=str(appt.rescheduled_from_id) if appt.rescheduled_from_id else None,
        created_at=appt.created_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/patients/{patient_id}/appointments", response_model=list[AppointmentResponse])
async def list_patient_appointments(
    patient_id: str,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> list[AppointmentResponse]:
    pid = parse_uuid(patient_id, "patient_id")
    if actor.role == ActorRole.PATIENT and actor.id != str(pid):
        raise AuthorizationError("Patients can only list their own appointments")
    appointments = await service.list_patient_appointments(pid)
    if actor.role == ActorRole.DOCTOR:
        appointments = [a for a in appointments if str(a.doctor_id) == actor.id]
    return [appointment_to_response(a) for a in appointments]


@router.get("/appointments/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> AppointmentResponse:
    appointment = await service.get_appointment(parse_uuid(appointment_id, "appointment_id"), actor)
    return appointment_to_response(appointment)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: str,
    body: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> AppointmentResponse:
    """Cancel an appointment; paid appointments are refunded per the refund rules."""
    appointment = await service.cancel_appointment(
        parse_uuid(appointment_id, "appointment_id"), actor, body.reason if body else None
    )
    return appointment_to_response(appointment)


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: str,
    body: RescheduleRequest,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> AppointmentResponse:
    """Move a confirmed appointment to another window of the same doctor."""
    appointment = await service.reschedule_appointment(
        parse_uuid(appointment_id, "appointment_id"),
        parse_uuid(body.new_schedule_id, "new_schedule_id"),
        actor,
    )
    return appointment_to_response(appointment)


@router.post("/appointments/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> AppointmentResponse:
    appointment = await service.complete_appointment(parse_uuid(appointment_id, "appointment_id"), actor)
    return appointment_to_response(appointment)
