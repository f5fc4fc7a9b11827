"""Capacity accounting for resolved windows."""

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from medbook.core.repository import AppointmentRepository
from medbook.scheduling.models import CapacityWindow, WindowTemplate, as_utc

logger = logging.getLogger(__name__)


def build_window(template: WindowTemplate, confirmed_count: int, now: datetime, degraded: bool = False) -> CapacityWindow:
    """Attach capacity figures to a template."""
    if degraded:
        remaining = 0
    else:
        remaining = max(0, template.max_patients - confirmed_count)
    is_full = remaining <= 0
    is_closed = as_utc(template.ends_at) <= as_utc(now)
    return CapacityWindow(
        **template.model_dump(),
        confirmed_count=confirmed_count,
        remaining=remaining,
        is_full=is_full,
        is_closed=is_closed,
        degraded=degraded,
        bookable=not (is_full or is_closed or degraded),
    )


class CapacityService:
    """Counts live bookings per window. Read-only."""

    async def enrich(
        self, session: AsyncSession, templates: Iterable[WindowTemplate], now: datetime
    ) -> list[CapacityWindow]:
        templates = list(templates)
        schedule_ids = {t.schedule_id for t in templates if t.schedule_id is not None}

        try:
            counts = await AppointmentRepository(session).count_active_by_schedule(schedule_ids)
        except SQLAlchemyError as e:
            # Fail closed: never advertise capacity we could not count
            logger.error(f"Capacity count failed for {len(schedule_ids)} schedules: {e}")
            return [build_window(t, 0, now, degraded=True) for t in templates]

        return [
            build_window(t, counts.get(t.schedule_id, 0) if t.schedule_id else 0, now)
            for t in templates
        ]
