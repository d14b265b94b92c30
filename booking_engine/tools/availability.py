"""
Opening-hours and overlap checks.

Pure helpers shared by the orchestrator and the slot suggestion engine.
Intervals are half-open: a booking ending at 15:00 does not collide with
one starting at 15:00.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from booking_engine.schemas.booking_schema import Booking
from booking_engine.schemas.tenant_schema import WEEKDAYS, WeeklySchedule

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def is_within_schedule(
    start_local: datetime, duration_minutes: int, schedule: Optional[WeeklySchedule]
) -> bool:
    """Check that [start, start + duration] fits inside one window of its weekday.

    ``start_local`` must already be in the tenant's timezone. No schedule
    means always open; a weekday with no windows means closed.
    """
    if schedule is None:
        return True

    windows = schedule.windows_for(WEEKDAYS[start_local.weekday()])
    if not windows:
        return False

    start_minutes = start_local.hour * 60 + start_local.minute
    end_minutes = start_minutes + duration_minutes
    return any(
        start_minutes >= w.start_minutes and end_minutes <= w.end_minutes
        for w in windows
    )


def intervals_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    return a_start < b_end and a_end > b_start


def count_overlapping(
    bookings: Iterable[Booking],
    start: datetime,
    end: datetime,
    exclude_id: Optional[str] = None,
) -> int:
    """Count bookings overlapping [start, end), skipping ``exclude_id``."""
    return sum(
        1 for b in bookings
        if b.id != exclude_id and intervals_overlap(b.start, b.end, start, end)
    )


def own_calendar_events(
    moving: Optional[Booking], calendar_id: str, start: datetime, end: datetime
) -> int:
    """1 when a booking being moved still has its event inside [start, end) on this calendar."""
    if (
        moving is not None
        and moving.calendar_event_id
        and moving.calendar_id == calendar_id
        and intervals_overlap(moving.start, moving.end, start, end)
    ):
        return 1
    return 0
