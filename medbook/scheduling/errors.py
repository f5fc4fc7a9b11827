"""Typed errors raised by the booking core.

Each error carries a stable ``code``, the HTTP status the API layer maps it
to, and whether the caller may retry (after refreshing availability where
that applies).
"""

from typing import Any, Optional


class BookingError(Exception):
    """Base exception for booking errors."""

    code = "BOOKING_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(BookingError):
    """Malformed input or a request that breaks a business rule."""

    code = "VALIDATION_ERROR"
    status_code = 400


class AuthorizationError(BookingError):
    """Actor may not act on this resource."""

    code = "AUTHORIZATION_ERROR"
    status_code = 403


class NotFoundError(BookingError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class CapacityExceededError(BookingError):
    """The window had no free unit when the reservation was attempted."""

    code = "CAPACITY_EXCEEDED"
    status_code = 409
    retryable = True


class ConflictError(BookingError):
    """State changed underneath the caller (lost a race, duplicate booking)."""

    code = "CONFLICT"
    status_code = 409
    retryable = True


class CancellationWindowError(BookingError):
    """Too late for the actor to cancel or reschedule."""

    code = "CANCELLATION_WINDOW"
    status_code = 422


class PaymentVerificationError(BookingError):
    """Payment could not be created, verified, or was not successful."""

    code = "PAYMENT_VERIFICATION_FAILED"
    status_code = 402


class PaymentConfigurationError(BookingError):
    """No payment provider is configured."""

    code = "PAYMENT_NOT_CONFIGURED"
    status_code = 503
