"""
Alternative slot suggestions for rejected booking requests.

Searches a window around the rejected time in steps of the service
duration, filters candidates against the same rules the orchestrator
enforces, and returns the nearest free slot before and after the
requested time. Only runs on rejection paths.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from booking_engine.config import settings
from booking_engine.errors import ProviderError
from booking_engine.schemas.booking_schema import Booking
from booking_engine.schemas.tenant_schema import BookingPolicy, ServiceDefinition, WeeklySchedule
from booking_engine.tools.availability import (
    count_overlapping,
    is_within_schedule,
    own_calendar_events,
)
from booking_engine.tools.booking import BookingRepository
from booking_engine.tools.calendar import CapacityOracle
from booking_engine.utils import get_zone

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _ProbeBudget:
    """Caps external calendar calls across one suggest() run."""

    def __init__(
        self,
        oracle: Optional[CapacityOracle],
        service: ServiceDefinition,
        limit: int,
        moving: Optional[Booking] = None,
    ) -> None:
        self._oracle = oracle
        self._service = service
        self._moving = moving
        self.remaining = limit
        self.used = 0

    async def is_free(self, slot_start: datetime) -> bool:
        if self._oracle is None:
            return True
        if self.remaining <= 0:
            return False

        self.remaining -= 1
        self.used += 1
        slot_end = slot_start + timedelta(minutes=self._service.duration_minutes)
        cap = self._service.max_simultaneous_bookings
        # A booking being moved must not block slots near its old time
        own = own_calendar_events(self._moving, self._service.calendar_id, slot_start, slot_end)
        try:
            count = await self._oracle.count_events_in_range(
                self._service.calendar_id, slot_start, slot_end, cap + own
            )
        except ProviderError as exc:
            # Fail closed: an unverifiable slot is never offered
            logger.warning(
                "Calendar probe failed for suggestion %s: %s", slot_start.isoformat(), exc.message
            )
            return False
        return count - own < cap

    async def first_free(self, ordered: list[datetime]) -> Optional[datetime]:
        for candidate in ordered:
            if await self.is_free(candidate):
                return candidate
        return None


class SlotSuggestionEngine:
    """Finds up to two bookable alternatives near a rejected time."""

    def __init__(
        self,
        repository: BookingRepository,
        oracle: Optional[CapacityOracle] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._oracle = oracle
        self._clock = clock

    def _candidates(
        self,
        requested_start: datetime,
        policy: BookingPolicy,
        service: ServiceDefinition,
        tenant_id: str,
        schedule: Optional[WeeklySchedule],
        exclude_booking_id: Optional[str],
    ) -> list[datetime]:
        cfg = settings.suggestions
        duration = timedelta(minutes=service.duration_minutes)
        zone = get_zone(policy.timezone)
        now = self._clock().astimezone(zone)
        requested_start = requested_start.astimezone(zone)

        search = timedelta(hours=cfg.search_window_hours)
        window_start = requested_start - search
        window_end = requested_start + search

        existing = self._repository.list_active_overlapping(
            tenant_id, service.calendar_id, window_start, window_end + duration
        )

        min_allowed = None
        if policy.min_lead_hours:
            min_allowed = now + timedelta(hours=policy.min_lead_hours)
        max_allowed = None
        if policy.max_advance_days:
            max_allowed = now + timedelta(days=policy.max_advance_days)

        candidates: list[datetime] = []
        max_steps = (cfg.search_window_hours * 2 * 60) // service.duration_minutes + 2
        cursor = window_start
        for _ in range(max_steps):
            if cursor > window_end:
                break
            candidate = cursor
            cursor = cursor + duration

            if candidate == requested_start:
                continue
            if candidate < now:
                continue
            if min_allowed is not None and candidate < min_allowed:
                continue
            if max_allowed is not None and candidate > max_allowed:
                continue
            if not is_within_schedule(candidate, service.duration_minutes, schedule):
                continue
            overlapping = count_overlapping(
                existing, candidate, candidate + duration, exclude_id=exclude_booking_id
            )
            if overlapping >= service.max_simultaneous_bookings:
                continue
            candidates.append(candidate)
        return candidates

    async def suggest(
        self,
        requested_start: datetime,
        policy: BookingPolicy,
        service: ServiceDefinition,
        tenant_id: str,
        schedule: Optional[WeeklySchedule] = None,
        exclude_booking_id: Optional[str] = None,
        moving: Optional[Booking] = None,
    ) -> list[str]:
        """Return 0-2 ISO timestamps: nearest free before, then nearest free after.

        When one side has nothing free, a second slot from the other side
        fills the gap. ``moving`` is the booking being rescheduled: it is left
        out of the internal count and its own event out of calendar probes.
        """
        if moving is not None and exclude_booking_id is None:
            exclude_booking_id = moving.id
        candidates = self._candidates(
            requested_start, policy, service, tenant_id, schedule, exclude_booking_id
        )
        if not candidates:
            return []

        requested_start = requested_start.astimezone(candidates[0].tzinfo)
        before = sorted((c for c in candidates if c < requested_start), reverse=True)
        after = sorted(c for c in candidates if c >= requested_start)

        budget = _ProbeBudget(
            self._oracle, service, settings.suggestions.max_calendar_probes, moving
        )
        best_before = await budget.first_free(before)
        best_after = await budget.first_free(after)

        picks = [slot for slot in (best_before, best_after) if slot is not None]
        if best_before is None and best_after is not None:
            second = await budget.first_free([c for c in after if c != best_after])
            if second is not None:
                picks.append(second)
        elif best_after is None and best_before is not None:
            second = await budget.first_free([c for c in before if c != best_before])
            if second is not None:
                picks.append(second)

        logger.debug(
            "Suggested %d slot(s) around %s (%d candidates, %d calendar probes)",
            len(picks), requested_start.isoformat(), len(candidates), budget.used,
        )
        return [slot.isoformat() for slot in picks[: settings.suggestions.max_suggestions]]
