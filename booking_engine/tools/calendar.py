"""
External calendar access.

The calendar provider is a remote capacity oracle: it can count events in
a range and create, patch or delete events. ``InMemoryCalendar`` is the
mock provider; in production this would be a Google Calendar service
account client (events.insert / events.patch / events.delete /
events.list).

``CapacityOracle`` is the only way the booking engine talks to a
provider. Each call is single-attempt under a client-side timeout, and
any failure surfaces as ProviderError.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Optional, Protocol, TypeVar
from urllib.parse import urlencode

from booking_engine.config import settings
from booking_engine.errors import ProviderError
from booking_engine.schemas.booking_schema import CalendarEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

GOOGLE_CALENDAR_TEMPLATE_URL = "https://calendar.google.com/calendar/render"


class CalendarProvider(Protocol):
    """Interface every calendar backend implements."""

    async def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        timezone_name: str,
    ) -> CalendarEvent: ...

    async def update_event(
        self, calendar_id: str, event_id: str, **fields: Any
    ) -> CalendarEvent: ...

    async def delete_event(self, calendar_id: str, event_id: str) -> None: ...

    async def count_events_in_range(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: Optional[int] = None,
    ) -> int: ...


class InMemoryCalendar:
    """Mock calendar provider keeping events per calendar id."""

    UPDATABLE_FIELDS = frozenset({"summary", "description", "start", "end", "timezone"})

    def __init__(self) -> None:
        self._events: dict[str, dict[str, CalendarEvent]] = {}

    async def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        timezone_name: str,
    ) -> CalendarEvent:
        event_id = uuid.uuid4().hex
        event = CalendarEvent(
            id=event_id,
            calendar_id=calendar_id,
            summary=summary,
            description=description,
            start=start,
            end=end,
            timezone=timezone_name,
            html_link=f"https://calendar.example.com/event?eid={event_id}",
        )
        self._events.setdefault(calendar_id, {})[event_id] = event
        logger.debug("Calendar event created: %s in %s", event_id, calendar_id)
        return event

    async def update_event(
        self, calendar_id: str, event_id: str, **fields: Any
    ) -> CalendarEvent:
        event = self._events.get(calendar_id, {}).get(event_id)
        if event is None:
            raise KeyError(f"Event {event_id} not found in calendar {calendar_id}")
        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update event fields: {sorted(unknown)}")
        patch = {k: v for k, v in fields.items() if v is not None}
        updated = event.model_copy(update=patch)
        self._events[calendar_id][event_id] = updated
        return updated

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        events = self._events.get(calendar_id, {})
        if event_id not in events:
            raise KeyError(f"Event {event_id} not found in calendar {calendar_id}")
        del events[event_id]

    async def count_events_in_range(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        max_results: Optional[int] = None,
    ) -> int:
        count = sum(
            1 for e in self._events.get(calendar_id, {}).values()
            if e.start < time_max and e.end > time_min
        )
        if max_results is not None:
            return min(count, max_results)
        return count

    def get_event(self, calendar_id: str, event_id: str) -> Optional[CalendarEvent]:
        return self._events.get(calendar_id, {}).get(event_id)

    def reset(self) -> None:
        """Drop all events. Used by test fixtures for isolation."""
        self._events.clear()


class CapacityOracle:
    """Timeout-bounded, retry-free wrapper around a CalendarProvider."""

    def __init__(
        self, provider: CalendarProvider, timeout_sec: Optional[float] = None
    ) -> None:
        self._provider = provider
        self._timeout = timeout_sec if timeout_sec is not None else settings.calendar.request_timeout_sec

    async def _call(self, operation: str, calendar_id: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Calendar %s timed out after %.1fs (calendar=%s)",
                operation, self._timeout, calendar_id,
            )
            raise ProviderError(f"Calendar {operation} timed out") from None
        except ProviderError:
            raise
        except Exception as exc:
            logger.error(
                "Calendar %s failed (calendar=%s): %s", operation, calendar_id, exc
            )
            raise ProviderError(f"Calendar {operation} failed: {exc}") from exc

    async def count_events_in_range(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
        cap: Optional[int] = None,
    ) -> int:
        """Count events in [time_min, time_max); ``cap`` bounds the provider fetch."""
        return await self._call(
            "count",
            calendar_id,
            self._provider.count_events_in_range(calendar_id, time_min, time_max, cap),
        )

    async def create_event(
        self,
        calendar_id: str,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        timezone_name: str,
    ) -> CalendarEvent:
        return await self._call(
            "create",
            calendar_id,
            self._provider.create_event(
                calendar_id, summary, description, start, end, timezone_name
            ),
        )

    async def update_event(
        self, calendar_id: str, event_id: str, **fields: Any
    ) -> CalendarEvent:
        return await self._call(
            "update", calendar_id, self._provider.update_event(calendar_id, event_id, **fields)
        )

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        await self._call(
            "delete", calendar_id, self._provider.delete_event(calendar_id, event_id)
        )


def _utc_stamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def build_add_to_calendar_url(
    title: str,
    description: str,
    start: datetime,
    end: datetime,
    location: Optional[str] = None,
) -> str:
    """Build a Google Calendar "add event" link for the customer."""
    params = {
        "action": "TEMPLATE",
        "text": title,
        "dates": f"{_utc_stamp(start)}/{_utc_stamp(end)}",
        "details": description,
    }
    if location:
        params["location"] = location
    return f"{GOOGLE_CALENDAR_TEMPLATE_URL}?{urlencode(params)}"
