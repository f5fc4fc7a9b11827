"""Tests for capacity accounting."""

import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import OperationalError

from medbook.scheduling.capacity import CapacityService, build_window
from medbook.scheduling.models import WindowSource, WindowTemplate
from tests.conftest import BOOKING_DAY, DOCTOR_ID, PATIENT_IDS, add_schedule, book_and_confirm

STARTS = datetime(2025, 1, 20, 9, 0, tzinfo=timezone.utc)


def template(max_patients=3, schedule_id=None) -> WindowTemplate:
    return WindowTemplate(
        window_key=WindowTemplate.make_key(DOCTOR_ID, BOOKING_DAY, "09:00", "10:00"),
        schedule_id=schedule_id,
        source=WindowSource.SCHEDULE if schedule_id else WindowSource.WEEKLY,
        doctor_id=DOCTOR_ID,
        date=BOOKING_DAY,
        start_time="09:00",
        end_time="10:00",
        starts_at=STARTS,
        ends_at=STARTS + timedelta(hours=1),
        max_patients=max_patients,
    )


class FailingSession:
    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))


class TestBuildWindow:
    def test_open_window(self):
        window = build_window(template(), 1, STARTS - timedelta(days=1))
        assert window.remaining == 2
        assert window.bookable is True
        assert window.is_full is False

    def test_full_window(self):
        window = build_window(template(max_patients=2), 2, STARTS - timedelta(days=1))
        assert window.remaining == 0
        assert window.is_full is True
        assert window.bookable is False

    def test_remaining_never_negative(self):
        # Capacity lowered after bookings were taken
        window = build_window(template(max_patients=1), 3, STARTS - timedelta(days=1))
        assert window.remaining == 0

    def test_ended_window_is_closed(self):
        window = build_window(template(), 0, STARTS + timedelta(hours=2))
        assert window.is_closed is True
        assert window.bookable is False
        assert window.remaining == 3

    def test_degraded_window_offers_nothing(self):
        window = build_window(template(), 0, STARTS - timedelta(days=1), degraded=True)
        assert window.degraded is True
        assert window.remaining == 0
        assert window.bookable is False


class TestCapacityService:
    async def test_counts_holds_and_confirmed(self, service, payments, session_factory):
        schedule = await add_schedule(session_factory, max_patients=4)
        await book_and_confirm(service, payments, schedule.id, PATIENT_IDS[0])
        await service.start_booking(schedule.id, PATIENT_IDS[1])

        async with session_factory() as session:
            windows = await CapacityService().enrich(
                session, [template(max_patients=4, schedule_id=schedule.id)], STARTS - timedelta(days=1)
            )

        assert windows[0].confirmed_count == 2
        assert windows[0].remaining == 2

    async def test_synthetic_window_has_full_capacity(self, session_factory):
        async with session_factory() as session:
            windows = await CapacityService().enrich(session, [template()], STARTS - timedelta(days=1))
        assert windows[0].remaining == 3

    async def test_unknown_schedule_counts_zero(self, session_factory):
        async with session_factory() as session:
            windows = await CapacityService().enrich(
                session, [template(schedule_id=uuid.uuid4())], STARTS - timedelta(days=1)
            )
        assert windows[0].confirmed_count == 0

    async def test_count_failure_degrades_every_window(self):
        windows = await CapacityService().enrich(
            FailingSession(), [template(schedule_id=uuid.uuid4()), template()], STARTS - timedelta(days=1)
        )

        assert len(windows) == 2
        assert all(w.degraded and not w.bookable and w.remaining == 0 for w in windows)
