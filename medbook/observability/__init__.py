"""Observability module for booking telemetry."""

from medbook.observability.events import (
    BookingEvent,
    EventType,
    ObservabilityEvent,
    PaymentCallEvent,
    SweepEvent,
    TransitionEvent,
)
from medbook.observability.logger import ObservabilityLogger, get_observability_logger

__all__ = [
    "BookingEvent",
    "EventType",
    "ObservabilityEvent",
    "ObservabilityLogger",
    "PaymentCallEvent",
    "SweepEvent",
    "TransitionEvent",
    "get_observability_logger",
]
