"""
Booking persistence.

``BookingRepository`` is the contract the orchestrator relies on. The
in-memory implementation below is the mock store used by tests and the
console demo; ``booking_engine.db`` provides the SQLAlchemy-backed one.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol

from booking_engine.schemas.booking_schema import Booking, BookingStatus

logger = logging.getLogger(__name__)


class BookingRepository(Protocol):
    def add(self, booking: Booking) -> Booking: ...

    def get(self, booking_id: str) -> Optional[Booking]: ...

    def count_active_overlaps(
        self,
        tenant_id: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> int: ...

    def list_active_overlapping(
        self, tenant_id: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[Booking]: ...

    def find_active_by_email_near(
        self, tenant_id: str, email: str, approx_start: datetime, window: timedelta
    ) -> Optional[Booking]: ...

    def update_slot(
        self,
        booking_id: str,
        start: datetime,
        end: datetime,
        service_key: str,
        calendar_id: str,
    ) -> Booking: ...

    def set_status(self, booking_id: str, status: BookingStatus) -> Booking: ...

    def list_reminder_candidates(self, start: datetime, end: datetime) -> list[Booking]: ...

    def mark_reminder_sent(self, booking_id: str, sent_at: datetime) -> None: ...


class InMemoryBookingRepository:
    """Dict-backed mock store. Returns copies so callers cannot mutate rows."""

    def __init__(self) -> None:
        self._rows: dict[str, Booking] = {}

    def _require(self, booking_id: str) -> Booking:
        row = self._rows.get(booking_id)
        if row is None:
            raise KeyError(f"Booking {booking_id} not found")
        return row

    def add(self, booking: Booking) -> Booking:
        self._rows[booking.id] = booking.model_copy(deep=True)
        logger.debug("Booking row stored: %s", booking.id)
        return booking

    def get(self, booking_id: str) -> Optional[Booking]:
        row = self._rows.get(booking_id)
        return row.model_copy(deep=True) if row else None

    def _active_in_calendar(self, tenant_id: str, calendar_id: str) -> list[Booking]:
        return [
            b for b in self._rows.values()
            if b.tenant_id == tenant_id
            and b.calendar_id == calendar_id
            and b.status == BookingStatus.ACTIVE
        ]

    def count_active_overlaps(
        self,
        tenant_id: str,
        calendar_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> int:
        return sum(
            1 for b in self._active_in_calendar(tenant_id, calendar_id)
            if b.id != exclude_id and b.overlaps(start, end)
        )

    def list_active_overlapping(
        self, tenant_id: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[Booking]:
        return [
            b.model_copy(deep=True)
            for b in self._active_in_calendar(tenant_id, calendar_id)
            if b.overlaps(start, end)
        ]

    def find_active_by_email_near(
        self, tenant_id: str, email: str, approx_start: datetime, window: timedelta
    ) -> Optional[Booking]:
        lower, upper = approx_start - window, approx_start + window
        matches = sorted(
            (
                b for b in self._rows.values()
                if b.tenant_id == tenant_id
                and b.email == email
                and b.status == BookingStatus.ACTIVE
                and lower <= b.start <= upper
            ),
            key=lambda b: b.start,
        )
        return matches[0].model_copy(deep=True) if matches else None

    def update_slot(
        self,
        booking_id: str,
        start: datetime,
        end: datetime,
        service_key: str,
        calendar_id: str,
    ) -> Booking:
        row = self._require(booking_id)
        row.start, row.end = start, end
        row.service_key, row.calendar_id = service_key, calendar_id
        return row.model_copy(deep=True)

    def set_status(self, booking_id: str, status: BookingStatus) -> Booking:
        row = self._require(booking_id)
        row.status = status
        return row.model_copy(deep=True)

    def list_reminder_candidates(self, start: datetime, end: datetime) -> list[Booking]:
        return sorted(
            (
                b.model_copy(deep=True) for b in self._rows.values()
                if b.status == BookingStatus.ACTIVE
                and b.reminder_sent_at is None
                and start <= b.start < end
            ),
            key=lambda b: b.start,
        )

    def mark_reminder_sent(self, booking_id: str, sent_at: datetime) -> None:
        self._require(booking_id).reminder_sent_at = sent_at

    def all(self) -> list[Booking]:
        return [b.model_copy(deep=True) for b in self._rows.values()]

    def reset(self) -> None:
        """Clear all bookings. Used by test fixtures for isolation."""
        self._rows.clear()
