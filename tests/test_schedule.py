"""Tests for opening-hours and overlap checks."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from booking_engine.schemas.tenant_schema import TimeWindow, WeeklySchedule, parse_time_to_minutes
from booking_engine.tools.availability import (
    count_overlapping,
    intervals_overlap,
    is_within_schedule,
    own_calendar_events,
)
from tests.conftest import WEEKDAY_HOURS, make_booking, make_tenant, make_service

UTC = timezone.utc


@pytest.fixture
def schedule():
    return WeeklySchedule.model_validate(WEEKDAY_HOURS)


class TestParseTime:
    def test_valid(self):
        assert parse_time_to_minutes("09:30") == 570

    def test_out_of_range(self):
        assert parse_time_to_minutes("24:00") is None
        assert parse_time_to_minutes("10:60") is None

    def test_malformed(self):
        assert parse_time_to_minutes("9am") is None


class TestTimeWindow:
    def test_start_must_precede_end(self):
        with pytest.raises(ValidationError):
            TimeWindow(start="17:00", end="09:00")

    def test_rejects_bad_format(self):
        with pytest.raises(ValidationError):
            TimeWindow(start="9", end="17:00")


class TestIsWithinSchedule:
    def test_exact_window_bounds_accepted(self, schedule):
        # Wednesday 16:00 + 60 min ends exactly at close
        assert is_within_schedule(datetime(2025, 1, 1, 16, 0, tzinfo=UTC), 60, schedule)
        assert is_within_schedule(datetime(2025, 1, 1, 9, 0, tzinfo=UTC), 60, schedule)

    def test_one_minute_before_open_rejected(self, schedule):
        assert not is_within_schedule(datetime(2025, 1, 1, 8, 59, tzinfo=UTC), 60, schedule)

    def test_one_minute_past_close_rejected(self, schedule):
        assert not is_within_schedule(datetime(2025, 1, 1, 16, 1, tzinfo=UTC), 60, schedule)

    def test_closed_day_rejected(self, schedule):
        # 2025-01-04 is a Saturday
        assert not is_within_schedule(datetime(2025, 1, 4, 10, 0, tzinfo=UTC), 60, schedule)

    def test_no_schedule_means_always_open(self):
        assert is_within_schedule(datetime(2025, 1, 4, 3, 0, tzinfo=UTC), 60, None)

    def test_must_fit_a_single_window(self):
        split = WeeklySchedule.model_validate({
            "wednesday": [{"start": "09:00", "end": "12:00"}, {"start": "13:00", "end": "17:00"}],
        })
        assert not is_within_schedule(datetime(2025, 1, 1, 11, 30, tzinfo=UTC), 60, split)
        assert is_within_schedule(datetime(2025, 1, 1, 13, 0, tzinfo=UTC), 60, split)

    def test_uses_local_wall_clock(self):
        schedule = WeeklySchedule.model_validate(WEEKDAY_HOURS)
        from booking_engine.utils import get_zone

        start = datetime(2025, 1, 1, 9, 0, tzinfo=get_zone("Australia/Melbourne"))
        assert is_within_schedule(start, 60, schedule)


class TestScheduleFallback:
    def test_service_schedule_wins(self):
        evenings = WeeklySchedule.model_validate({"monday": [{"start": "18:00", "end": "21:00"}]})
        service = make_service(weekly_schedule=evenings)
        tenant = make_tenant(services=[service])
        assert tenant.schedule_for(service) is service.weekly_schedule

    def test_falls_back_to_tenant_hours(self, tenant):
        assert tenant.schedule_for(tenant.services[0]) is tenant.policy.weekly_schedule


class TestOverlap:
    def test_partial_overlap(self):
        a = datetime(2025, 1, 1, 14, 0, tzinfo=UTC)
        b = datetime(2025, 1, 1, 14, 30, tzinfo=UTC)
        assert intervals_overlap(a, a + timedelta(hours=1), b, b + timedelta(hours=1))

    def test_touching_intervals_do_not_overlap(self):
        a = datetime(2025, 1, 1, 14, 0, tzinfo=UTC)
        b = datetime(2025, 1, 1, 15, 0, tzinfo=UTC)
        assert not intervals_overlap(a, b, b, b + timedelta(hours=1))

    def test_count_overlapping_skips_excluded(self):
        start = datetime(2025, 1, 1, 14, 0, tzinfo=UTC)
        first = make_booking(start)
        second = make_booking(start + timedelta(minutes=30))
        end = start + timedelta(hours=1)
        assert count_overlapping([first, second], start, end) == 2
        assert count_overlapping([first, second], start, end, exclude_id=first.id) == 1

    def test_own_event_counted_only_when_it_overlaps(self):
        start = datetime(2025, 1, 1, 14, 0, tzinfo=UTC)
        moving = make_booking(start, calendar_event_id="evt-1")
        end = start + timedelta(hours=1)
        assert own_calendar_events(moving, "salon", start + timedelta(minutes=30), end) == 1
        assert own_calendar_events(moving, "salon", end, end + timedelta(hours=1)) == 0
        assert own_calendar_events(moving, "spa", start, end) == 0
        assert own_calendar_events(None, "salon", start, end) == 0

    def test_own_event_ignored_without_calendar_event(self):
        start = datetime(2025, 1, 1, 14, 0, tzinfo=UTC)
        moving = make_booking(start)
        assert own_calendar_events(moving, "salon", start, start + timedelta(hours=1)) == 0
