"""Capacity-based booking core for MedBook."""

from medbook.scheduling.capacity import CapacityService
from medbook.scheduling.commission import CommissionCalculator, calculate_commission
from medbook.scheduling.engine import RescheduleCancelEngine
from medbook.scheduling.errors import (
    AuthorizationError,
    BookingError,
    CancellationWindowError,
    CapacityExceededError,
    ConflictError,
    NotFoundError,
    PaymentConfigurationError,
    PaymentVerificationError,
    ValidationError,
)
from medbook.scheduling.models import (
    Actor,
    ActorRole,
    BookingStart,
    CapacityWindow,
    DateRange,
    WindowSource,
)
from medbook.scheduling.orchestrator import BookingOrchestrator
from medbook.scheduling.resolver import AvailabilityResolver, resolve_windows
from medbook.scheduling.scheduler import SchedulingService
from medbook.scheduling.schedules import ScheduleManager

__all__ = [
    "Actor",
    "ActorRole",
    "AuthorizationError",
    "AvailabilityResolver",
    "BookingError",
    "BookingOrchestrator",
    "BookingStart",
    "CancellationWindowError",
    "CapacityExceededError",
    "CapacityService",
    "CapacityWindow",
    "CommissionCalculator",
    "ConflictError",
    "DateRange",
    "NotFoundError",
    "PaymentConfigurationError",
    "PaymentVerificationError",
    "RescheduleCancelEngine",
    "ScheduleManager",
    "SchedulingService",
    "ValidationError",
    "WindowSource",
    "calculate_commission",
    "resolve_windows",
]
