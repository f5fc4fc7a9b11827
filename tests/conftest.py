"""Pytest configuration and fixtures."""

import json
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from medbook.config import BookingPolicy
from medbook.core.models import Base, Doctor, Patient, Schedule
from medbook.notifications import Notifier
from medbook.observability import ObservabilityLogger
from medbook.payments import (
    IntentVerification,
    PaymentIntent,
    PaymentProvider,
    RefundResult,
    WebhookEvent,
    WebhookSignatureError,
)
from medbook.scheduling import SchedulingService

DOCTOR_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")
OTHER_DOCTOR_ID = uuid.UUID("eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee")
PATIENT_IDS = [uuid.UUID(f"aaaaaaaa-aaaa-aaaa-aaaa-{i:012d}") for i in range(1, 13)]

# Monday 2025-01-20 09:00-10:00 is the window most tests book into
BOOKING_DAY = date(2025, 1, 20)
START_NOW = datetime(2025, 1, 17, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Mutable clock handed to the booking core."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePaymentProvider(PaymentProvider):
    """In-memory provider with scriptable failures.

    Intents start unpaid; call ``succeed``/``set_status`` to move them.
    Queue exceptions on ``create_failures``/``verify_failures``/
    ``refund_failures`` to fail the next calls in order.
    """

    name = "STRIPE"

    def __init__(self):
        self.configured = True
        self.intents: dict[str, dict[str, Any]] = {}
        self._by_key: dict[str, PaymentIntent] = {}
        self.create_failures: list[Exception] = []
        self.verify_failures: list[Exception] = []
        self.refund_failures: list[Exception] = []
        self.create_calls = 0
        self.refunds: list[tuple[str, int, str]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def create_intent(self, amount_cents, currency, metadata, idempotency_key) -> PaymentIntent:
        self.create_calls += 1
        if self.create_failures:
            raise self.create_failures.pop(0)
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        intent_id = f"pi_{uuid.uuid4().hex[:16]}"
        intent = PaymentIntent(id=intent_id, client_secret=f"{intent_id}_secret")
        self.intents[intent_id] = {
            "status": "requires_payment_method",
            "amount": amount_cents,
            "metadata": dict(metadata),
        }
        self._by_key[idempotency_key] = intent
        return intent

    def set_status(self, intent_id: str, status: str) -> None:
        self.intents[intent_id]["status"] = status

    def succeed(self, intent_id: str) -> None:
        self.set_status(intent_id, "succeeded")

    async def verify_intent(self, intent_id: str) -> IntentVerification:
        if self.verify_failures:
            raise self.verify_failures.pop(0)
        intent = self.intents[intent_id]
        status = intent["status"]
        return IntentVerification(
            intent_id=intent_id,
            status=status,
            succeeded=status == "succeeded",
            pending=status in ("processing", "requires_action"),
            amount_cents=intent["amount"] if status == "succeeded" else 0,
        )

    async def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:
        if self.refund_failures:
            raise self.refund_failures.pop(0)
        self.refunds.append((intent_id, amount_cents, idempotency_key))
        return RefundResult(refund_id=f"re_{len(self.refunds)}", status="succeeded", amount_cents=amount_cents)

    def parse_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        if signature != "valid-signature":
            raise WebhookSignatureError("Invalid signature")
        body = json.loads(payload)
        return WebhookEvent(id=body["id"], type=body["type"], intent_id=body.get("intent_id"))


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((event, payload))

    def events(self) -> list[str]:
        return [name for name, _ in self.sent]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock(START_NOW)


@pytest.fixture
def policy():
    return BookingPolicy(payment_retry_backoff_seconds=0, payment_timeout_seconds=5)


@pytest.fixture
def payments():
    return FakePaymentProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def obs(tmp_path):
    return ObservabilityLogger(log_dir=tmp_path / "logs", enabled=True)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions really contend."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'medbook.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                Doctor(id=DOCTOR_ID, name="Dr. Asha Rai", specialty="General Medicine"),
                Doctor(id=OTHER_DOCTOR_ID, name="Dr. Bikash Thapa", specialty="Cardiology"),
            ]
            + [Patient(id=pid, name=f"Patient {i}") for i, pid in enumerate(PATIENT_IDS, start=1)]
        )
        await session.commit()
    return factory


@pytest.fixture
def service(session_factory, payments, policy, notifier, obs, clock):
    return SchedulingService(
        session_factory,
        payments,
        policy,
        notifier=notifier,
        observability=obs,
        clock=clock,
    )


async def add_schedule(
    session_factory,
    day: date = BOOKING_DAY,
    start_time: str = "09:00",
    end_time: str = "10:00",
    max_patients: int = 2,
    doctor_id: uuid.UUID = DOCTOR_ID,
) -> Schedule:
    async with session_factory() as session:
        schedule = Schedule(
            doctor_id=doctor_id,
            date=day,
            start_time=start_time,
            end_time=end_time,
            max_patients=max_patients,
        )
        session.add(schedule)
        await session.commit()
        return schedule


async def book_and_confirm(service, payments, schedule_id: uuid.UUID, patient_id: uuid.UUID):
    """Run a booking through start, payment and confirm."""
    started = await service.start_booking(schedule_id, patient_id)
    payments.succeed(started.payment_intent_id)
    return await service.confirm_booking(started.appointment_id)


async def remaining_for(service, schedule_id: uuid.UUID, day: date = BOOKING_DAY) -> int:
    from medbook.scheduling.models import DateRange

    windows = await service.resolve_availability(DOCTOR_ID, DateRange(start=day, end=day))
    return next(w.remaining for w in windows if w.schedule_id == schedule_id)
