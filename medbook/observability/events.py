"""Structured observability events for booking telemetry."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of observability events."""

    BOOKING_START = "booking_start"
    BOOKING_SUCCESS = "booking_success"
    BOOKING_ERROR = "booking_error"
    PAYMENT_CALL_START = "payment_call_start"
    PAYMENT_CALL_SUCCESS = "payment_call_success"
    PAYMENT_CALL_ERROR = "payment_call_error"
    STATUS_TRANSITION = "status_transition"
    SWEEP = "sweep"


class ObservabilityEvent(BaseModel):
    """Base class for all observability events."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BookingEvent(ObservabilityEvent):
    """One orchestrator or engine operation (start, confirm, cancel, ...)."""

    operation: str
    appointment_id: Optional[str] = None
    schedule_id: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    actor_role: Optional[str] = None

    outcome: Optional[str] = None

    # Error fields (populated on error)
    error_type: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PaymentCallEvent(ObservabilityEvent):
    """A call out to the payment provider."""

    provider: str
    operation: str
    intent_id: Optional[str] = None
    amount_cents: Optional[int] = None
    idempotency_key: Optional[str] = None
    attempts: int = 0

    error_type: Optional[str] = None
    error_message: Optional[str] = None


class TransitionEvent(ObservabilityEvent):
    """An appointment status change that won its conditional guard."""

    event_type: EventType = EventType.STATUS_TRANSITION
    appointment_id: str
    from_status: Optional[str] = None
    to_status: str
    actor: Optional[str] = None
    reason: Optional[str] = None


class SweepEvent(ObservabilityEvent):
    """Result of one stale-reservation sweep."""

    event_type: EventType = EventType.SWEEP
    candidates: int = 0
    expired: int = 0
    cutoff: Optional[datetime] = None
