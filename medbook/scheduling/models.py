"""Pydantic models and time helpers for the booking core."""

import re
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, model_validator

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def is_valid_hhmm(value: str) -> bool:
    return bool(value) and HHMM_PATTERN.match(value) is not None


def to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def ranges_overlap(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    """Half-open overlap of two HH:mm ranges on the same day."""
    return to_minutes(start_a) < to_minutes(end_b) and to_minutes(start_b) < to_minutes(end_a)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_bounds(day: date, start_time: str, end_time: str, tz_name: str = "UTC") -> tuple[datetime, datetime]:
    """Absolute UTC start/end of an HH:mm window on a clinic-local date."""
    tz = ZoneInfo(tz_name)
    sh, sm = (int(p) for p in start_time.split(":"))
    eh, em = (int(p) for p in end_time.split(":"))
    start = datetime.combine(day, time(sh, sm), tzinfo=tz)
    end = datetime.combine(day, time(eh, em), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class WindowSource(str, Enum):
    """Where a capacity window came from."""

    SCHEDULE = "SCHEDULE"
    WEEKLY = "WEEKLY"
    EXCEPTION = "EXCEPTION"


class ActorRole(str, Enum):
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class RefundType(str, Enum):
    FULL = "FULL"
    NONE = "NONE"


class DateRange(BaseModel):
    """Inclusive calendar date range."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("end date must not be before start date")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


class WindowTemplate(BaseModel):
    """A resolved window before capacity is attached."""

    window_key: str
    schedule_id: Optional[uuid.UUID] = None
    source: WindowSource
    doctor_id: uuid.UUID
    date: date
    start_time: str
    end_time: str
    starts_at: datetime
    ends_at: datetime
    max_patients: int = Field(ge=1)
    label: Optional[str] = None

    @staticmethod
    def make_key(doctor_id: uuid.UUID, day: date, start_time: str, end_time: str) -> str:
        return f"{doctor_id}:{day.isoformat()}:{start_time}-{end_time}"


class CapacityWindow(WindowTemplate):
    """A window with its live booking count."""

    confirmed_count: int = 0
    remaining: int = 0
    is_full: bool = False
    is_closed: bool = False
    degraded: bool = False
    bookable: bool = False


class Actor(BaseModel):
    """Authenticated caller as forwarded by the web proxy."""

    id: str
    role: ActorRole

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.DOCTOR, ActorRole.ADMIN, ActorRole.SYSTEM)


class BookingStart(BaseModel):
    """What the client needs to complete payment for a reserved unit."""

    appointment_id: uuid.UUID
    client_secret: str
    payment_intent_id: str
    amount: Decimal
    currency: str
    expires_at: datetime


class RefundDecision(BaseModel):
    type: RefundType
    amount: Decimal = Decimal("0")
    reason: str


class CommissionBreakdown(BaseModel):
    appointment_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    doctor_payout_amount: Decimal


class CommissionStats(BaseModel):
    """Commission totals, optionally for one doctor."""

    total_commissions: Decimal = Decimal("0.00")
    total_payouts: Decimal = Decimal("0.00")
    pending_payouts: Decimal = Decimal("0.00")
    by_status: dict[str, int] = Field(default_factory=dict)
