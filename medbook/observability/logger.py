"""Observability logger for structured booking telemetry."""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from medbook.observability.events import (
    BookingEvent,
    EventType,
    ObservabilityEvent,
    PaymentCallEvent,
    SweepEvent,
    TransitionEvent,
)

logger = logging.getLogger(__name__)


class ObservabilityLogger:
    """Central logger for booking and payment events.

    Writes structured events to JSON Lines files for later analysis.
    """

    _instance: Optional["ObservabilityLogger"] = None

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        enabled: bool = True,
        max_message_length: int = 200,
    ):
        """Initialize observability logger.

        Args:
            log_dir: Directory for log files (default: data/logs)
            enabled: Whether logging is enabled
            max_message_length: Max length kept from error messages
        """
        self.enabled = enabled
        self.max_message_length = max_message_length

        if log_dir is None:
            log_dir = Path("data/logs")
        self.log_dir = Path(log_dir)
        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._log_files: dict[str, Path] = {
            "bookings": self.log_dir / "bookings.jsonl",
            "payments": self.log_dir / "payment_calls.jsonl",
            "transitions": self.log_dir / "transitions.jsonl",
            "sweeps": self.log_dir / "sweeps.jsonl",
        }

        # Event callbacks for real-time monitoring
        self._callbacks: list[Callable[[ObservabilityEvent], None]] = []

    @classmethod
    def get_instance(cls) -> "ObservabilityLogger":
        """Get or create singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def configure(cls, log_dir: Path, enabled: bool = True) -> "ObservabilityLogger":
        """Replace the singleton with one writing to ``log_dir``."""
        cls._instance = cls(log_dir=log_dir, enabled=enabled)
        return cls._instance

    def generate_request_id(self) -> str:
        """Generate a unique request ID."""
        return str(uuid.uuid4())[:8]

    def add_callback(self, callback: Callable[[ObservabilityEvent], None]) -> None:
        """Add callback for real-time event monitoring."""
        self._callbacks.append(callback)

    def _write_event(self, event: ObservabilityEvent, log_type: str) -> None:
        """Write event to appropriate log file."""
        if not self.enabled:
            return

        try:
            log_file = self._log_files.get(log_type)
            if log_file:
                with open(log_file, "a") as f:
                    f.write(event.model_dump_json() + "\n")

            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.warning(f"Observability callback failed: {e}")

        except OSError as e:
            logger.warning(f"Failed to write observability event: {e}")

    def _truncate(self, message: str) -> str:
        if len(message) <= self.max_message_length:
            return message
        return message[: self.max_message_length] + "..."

    # Booking operations

    @contextmanager
    def booking_operation(
        self,
        operation: str,
        appointment_id: Optional[Any] = None,
        schedule_id: Optional[Any] = None,
        patient_id: Optional[Any] = None,
        actor_role: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        """Context manager for logging one booking operation.

        Usage:
            with obs.booking_operation("start", schedule_id=sid) as event:
                ...
                event.appointment_id = str(appointment_id)
        """
        start_time = time.time()
        event = BookingEvent(
            event_type=EventType.BOOKING_START,
            operation=operation,
            appointment_id=str(appointment_id) if appointment_id else None,
            schedule_id=str(schedule_id) if schedule_id else None,
            patient_id=str(patient_id) if patient_id else None,
            actor_role=actor_role,
            request_id=request_id or self.generate_request_id(),
        )

        try:
            yield event
            event.event_type = EventType.BOOKING_SUCCESS

        except Exception as e:
            event.event_type = EventType.BOOKING_ERROR
            event.error_type = type(e).__name__
            event.error_code = getattr(e, "code", None)
            event.error_message = self._truncate(str(e))
            raise

        finally:
            event.duration_ms = (time.time() - start_time) * 1000
            self._write_event(event, "bookings")

    # Payment provider calls

    @contextmanager
    def payment_call(
        self,
        provider: str,
        operation: str,
        intent_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ):
        """Context manager for logging a payment provider call."""
        start_time = time.time()
        event = PaymentCallEvent(
            event_type=EventType.PAYMENT_CALL_START,
            provider=provider,
            operation=operation,
            intent_id=intent_id,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )

        try:
            yield event
            event.event_type = EventType.PAYMENT_CALL_SUCCESS

        except Exception as e:
            event.event_type = EventType.PAYMENT_CALL_ERROR
            event.error_type = type(e).__name__
            event.error_message = self._truncate(str(e))
            raise

        finally:
            event.duration_ms = (time.time() - start_time) * 1000
            self._write_event(event, "payments")

    def log_transition(
        self,
        appointment_id: Any,
        from_status: Optional[str],
        to_status: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Log an appointment status change."""
        event = TransitionEvent(
            appointment_id=str(appointment_id),
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            reason=reason,
        )
        self._write_event(event, "transitions")

    def log_sweep(self, candidates: int, expired: int, cutoff: datetime, duration_ms: float) -> None:
        event = SweepEvent(candidates=candidates, expired=expired, cutoff=cutoff, duration_ms=duration_ms)
        self._write_event(event, "sweeps")

    # Utility methods

    def get_recent_events(
        self,
        log_type: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Read recent events from a log file."""
        log_file = self._log_files.get(log_type)
        if not log_file or not log_file.exists():
            return []

        events = []
        with open(log_file) as f:
            for line in f:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

        return events[-limit:]

    def get_stats(self, log_type: str) -> dict[str, Any]:
        """Get basic statistics for a log type."""
        events = self.get_recent_events(log_type, limit=1000)
        if not events:
            return {"total": 0}

        total = len(events)
        errors = sum(1 for e in events if "error" in e.get("event_type", ""))
        avg_duration = sum(e.get("duration_ms") or 0 for e in events) / total

        return {
            "total": total,
            "errors": errors,
            "error_rate": errors / total if total > 0 else 0,
            "avg_duration_ms": avg_duration,
        }


def get_observability_logger() -> ObservabilityLogger:
    """Get the global observability logger instance."""
    return ObservabilityLogger.get_instance()
