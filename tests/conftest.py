"""Shared test fixtures and helpers."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from booking_engine.conversation.state_machine import BookingStateMachine
from booking_engine.orchestrator import BookingOrchestrator
from booking_engine.schemas.booking_schema import Booking
from booking_engine.schemas.tenant_schema import ServiceDefinition, TenantConfig
from booking_engine.tools.booking import InMemoryBookingRepository
from booking_engine.tools.calendar import InMemoryCalendar
from booking_engine.tools.mailer import InMemoryMailer
from booking_engine.tools.tenants import TenantRegistry

# Wednesday
NOW = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

WEEKDAY_HOURS = {
    day: [{"start": "09:00", "end": "17:00"}]
    for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
}


class FixedClock:
    """Callable clock that tests can move."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FailingCalendar(InMemoryCalendar):
    """In-memory calendar that raises on the operations named in ``fail_on``."""

    def __init__(self, fail_on: tuple[str, ...] = ()) -> None:
        super().__init__()
        self.fail_on = set(fail_on)
        self.count_calls = 0

    async def create_event(self, *args: Any, **kwargs: Any):
        if "create" in self.fail_on:
            raise RuntimeError("calendar API returned 500")
        return await super().create_event(*args, **kwargs)

    async def update_event(self, *args: Any, **kwargs: Any):
        if "update" in self.fail_on:
            raise RuntimeError("calendar API returned 500")
        return await super().update_event(*args, **kwargs)

    async def delete_event(self, *args: Any, **kwargs: Any):
        if "delete" in self.fail_on:
            raise RuntimeError("calendar API returned 500")
        return await super().delete_event(*args, **kwargs)

    async def count_events_in_range(self, *args: Any, **kwargs: Any):
        self.count_calls += 1
        if "count" in self.fail_on:
            raise RuntimeError("calendar API returned 500")
        return await super().count_events_in_range(*args, **kwargs)


def make_service(
    key: str = "haircut",
    name: str = "Hair Cut",
    calendar_id: str = "salon",
    duration_minutes: int = 60,
    max_simultaneous_bookings: int = 1,
    aliases: Optional[list[str]] = None,
    **extra: Any,
) -> ServiceDefinition:
    """Helper to create a ServiceDefinition."""
    return ServiceDefinition(
        key=key,
        name=name,
        calendar_id=calendar_id,
        duration_minutes=duration_minutes,
        max_simultaneous_bookings=max_simultaneous_bookings,
        aliases=aliases or [],
        **extra,
    )


def make_tenant(
    tenant_id: str = "salon-1",
    services: Optional[list[ServiceDefinition]] = None,
    policy: Optional[dict[str, Any]] = None,
    **extra: Any,
) -> TenantConfig:
    """Helper to create a TenantConfig with weekday 09:00-17:00 hours in UTC."""
    if services is None:
        services = [
            make_service(),
            make_service("colour", "Hair Colour", duration_minutes=90, aliases=["dye"]),
            make_service("massage", "Massage", calendar_id="spa"),
        ]
    policy_data: dict[str, Any] = {"timezone": "UTC", "weekly_schedule": WEEKDAY_HOURS}
    policy_data.update(policy or {})
    return TenantConfig(
        tenant_id=tenant_id,
        name="Northside Hair",
        domain="northside.example.com",
        policy=policy_data,
        services=services,
        **extra,
    )


def make_booking(
    start: datetime,
    duration_minutes: int = 60,
    tenant_id: str = "salon-1",
    email: str = "ana@example.com",
    calendar_id: str = "salon",
    service_key: str = "haircut",
    **extra: Any,
) -> Booking:
    """Helper to create a Booking row."""
    extra.setdefault("created_at", start - timedelta(days=3))
    return Booking(
        tenant_id=tenant_id,
        name="Ana Lima",
        email=email,
        phone="0412345678",
        service_key=service_key,
        start=start,
        end=start + timedelta(minutes=duration_minutes),
        timezone="UTC",
        calendar_id=calendar_id,
        **extra,
    )


def create_args(**overrides: Any) -> dict[str, Any]:
    """Flat create arguments as the conversation layer sends them."""
    args = {
        "name": "Ana Lima",
        "email": "ana@example.com",
        "phone": "0412 345 678",
        "service": "Hair Cut",
        "datetime": "2025-01-01T14:00:00",
    }
    args.update(overrides)
    return args


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def tenant():
    return make_tenant()


@pytest.fixture
def tenants(tenant):
    return TenantRegistry([tenant])


@pytest.fixture
def repository():
    return InMemoryBookingRepository()


@pytest.fixture
def calendar():
    return FailingCalendar()


@pytest.fixture
def mailer():
    return InMemoryMailer()


@pytest.fixture
def orchestrator(tenants, repository, calendar, mailer, clock):
    return BookingOrchestrator(tenants, repository, calendar, mailer, clock=clock)


@pytest.fixture
def booking_sm():
    return BookingStateMachine()
