"""Booking endpoints: reserve-and-pay, confirmation and desk bookings."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from medbook.api.dependencies import get_current_actor, get_service, parse_uuid, require_staff
from medbook.api.routes.appointments import AppointmentResponse, appointment_to_response
from medbook.scheduling import SchedulingService
from medbook.scheduling.errors import AuthorizationError, ValidationError
from medbook.scheduling.models import Actor, ActorRole, BookingStart

router = APIRouter(prefix="/bookings")


class StartBookingRequest(BaseModel):
    schedule_id: str
    patient_id: str | None = None


class StartWindowBookingRequest(BaseModel):
    doctor_id: str
    date: date
    start_time: str = Field(pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    end_time: str = Field(pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    patient_id: str | None = None


class ManualBookingRequest(BaseModel):
    schedule_id: str
    patient_id: str
    provider: str = "CASH"
    note: str | None = None


def _booking_patient(actor: Actor, patient_id: Optional[str]):
    """Patients book for themselves; staff name the patient."""
    if actor.role == ActorRole.PATIENT:
        if patient_id and patient_id != actor.id:
            raise AuthorizationError("Patients can only book for themselves")
        return parse_uuid(actor.id, "patient_id")
    if not patient_id:
        raise ValidationError("patient_id is required")
    return parse_uuid(patient_id, "patient_id")


@router.post("", response_model=BookingStart, status_code=201)
async def start_booking(
    body: StartBookingRequest,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> BookingStart:
    """Hold one unit in a window and return the payment client secret."""
    patient_id = _booking_patient(actor, body.patient_id)
    return await service.start_booking(parse_uuid(body.schedule_id, "schedule_id"), patient_id)


@router.post("/window", response_model=BookingStart, status_code=201)
async def start_window_booking(
    body: StartWindowBookingRequest,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> BookingStart:
    """Book a weekly or extra-hours window that has no dated schedule yet."""
    patient_id = _booking_patient(actor, body.patient_id)
    return await service.start_booking_for_window(
        parse_uuid(body.doctor_id, "doctor_id"), body.date, body.start_time, body.end_time, patient_id
    )


@router.post("/{appointment_id}/confirm", response_model=AppointmentResponse)
async def confirm_booking(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    service: SchedulingService = Depends(get_service),
) -> AppointmentResponse:
    """Verify the payment with the provider and confirm the hold."""
    aid = parse_uuid(appointment_id, "appointment_id")
    await service.get_appointment(aid, actor)
    appointment = await service.confirm_booking(aid)
    return appointment_to_response(appointment)


@router.post("/manual", response_model=AppointmentResponse, status_code=201)
async def create_manual_booking(
    body: ManualBookingRequest,
    actor: Actor = Depends(require_staff),
    service: SchedulingService = Depends(get_service),
) -> AppointmentResponse:
    """Record a walk-in booking paid at the desk."""
    appointment = await service.create_manual_booking(
        parse_uuid(body.schedule_id, "schedule_id"),
        parse_uuid(body.patient_id, "patient_id"),
        body.provider,
        note=body.note,
        actor=actor,
    )
    return appointment_to_response(appointment)
