"""
Booking engine console demo.

Runs a scripted create -> rejected create -> reschedule -> cancel sequence
against the in-memory calendar and mailer, printing each result payload.
No network calls and no API keys.

Usage:
    python main.py demo            # in-memory booking store
    python main.py demo --sqlite   # SQLAlchemy store on in-memory SQLite
    python main.py reminders       # one reminder scan over the demo data
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, time, timedelta

from booking_engine.config import settings
from booking_engine.conversation.drafts import BookingDraftStore
from booking_engine.db import SqlBookingRepository, build_engine, create_session_factory, init_schema
from booking_engine.orchestrator import BookingOrchestrator
from booking_engine.reminders import BookingReminderJob
from booking_engine.schemas.tenant_schema import TenantConfig
from booking_engine.tools.booking import BookingRepository, InMemoryBookingRepository
from booking_engine.tools.calendar import InMemoryCalendar
from booking_engine.tools.mailer import InMemoryMailer
from booking_engine.tools.tenants import TenantRegistry
from booking_engine.utils import get_zone

logger = logging.getLogger(__name__)

GREEN = "\033[92m"
YELLOW = "\033[93m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEMO_TENANT = TenantConfig.model_validate({
    "tenant_id": "demo-salon",
    "name": "Northside Hair Studio",
    "domain": "northside-hair.example.com",
    "policy": {
        "timezone": "Australia/Melbourne",
        "min_lead_hours": 2,
        "max_advance_days": 60,
        "weekly_schedule": {
            day: [{"start": "09:00", "end": "17:00"}]
            for day in ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
        },
    },
    "services": [
        {
            "key": "haircut",
            "name": "Hair Cut",
            "aliases": ["trim", "haircut"],
            "calendar_id": "stylists",
            "duration_minutes": 60,
        },
        {
            "key": "colour",
            "name": "Hair Colour",
            "aliases": ["dye", "color"],
            "calendar_id": "stylists",
            "duration_minutes": 90,
        },
    ],
    "custom_fields": ["notes"],
})


def _banner(title: str) -> None:
    print(f"\n{BOLD}{'=' * 60}{RESET}")
    print(f"{BOLD}  {title}{RESET}")
    print(f"{BOLD}{'=' * 60}{RESET}")


def _show(step: str, result) -> None:
    colour = GREEN if result.success else YELLOW
    print(f"\n{colour}{BOLD}[{step}]{RESET}")
    print(json.dumps(result.to_payload(), indent=2))
    print(f"{DIM}  State trace: {' -> '.join(result.state_trace)}{RESET}")


def _build_repository(use_sqlite: bool) -> BookingRepository:
    if not use_sqlite:
        return InMemoryBookingRepository()
    engine = build_engine("sqlite://")
    init_schema(engine)
    return SqlBookingRepository(create_session_factory(engine))


async def run_demo(use_sqlite: bool = False) -> None:
    tenants = TenantRegistry([DEMO_TENANT])
    repository = _build_repository(use_sqlite)
    calendar = InMemoryCalendar()
    mailer = InMemoryMailer()
    orchestrator = BookingOrchestrator(tenants, repository, calendar, mailer)

    zone = get_zone(DEMO_TENANT.policy.timezone)
    tomorrow = datetime.now(zone).date() + timedelta(days=1)
    ten_am = datetime.combine(tomorrow, time(10, 0))
    two_pm = datetime.combine(tomorrow, time(14, 0))

    _banner(f"BOOKING ENGINE - {DEMO_TENANT.name}")
    print(f"{DIM}  Timezone: {DEMO_TENANT.policy.timezone}   Store: "
          f"{'sqlite' if use_sqlite else 'in-memory'}{RESET}")

    # Collect details over two turns the way a chat would
    drafts = BookingDraftStore()
    drafts.merge("demo-conv", {"name": "Ana Lima", "phone": "0412 345 678", "service": "hair cuts"})
    draft = drafts.merge(
        "demo-conv",
        {"email": "ana@example.com", "datetime": ten_am.isoformat(), "notes": "Short fringe"},
        custom_field_names=DEMO_TENANT.custom_fields,
    )
    print(f"{DIM}  Draft missing: {draft.missing_fields(DEMO_TENANT.required_fields) or 'nothing'}{RESET}")

    _show("Create", await orchestrator.create(DEMO_TENANT.tenant_id, draft.to_request()))
    drafts.clear("demo-conv")

    _show("Create (same slot)", await orchestrator.create(DEMO_TENANT.tenant_id, {
        "name": "Ben Ng",
        "email": "ben@example.com",
        "phone": "0400 111 222",
        "service": "trim",
        "datetime": ten_am.isoformat(),
    }))

    _show("Create (unknown service)", await orchestrator.create(DEMO_TENANT.tenant_id, {
        "name": "Cal Ortiz",
        "email": "cal@example.com",
        "phone": "0400 333 444",
        "service": "massage",
        "datetime": two_pm.isoformat(),
    }))

    _show("Reschedule", await orchestrator.update(DEMO_TENANT.tenant_id, {
        "email": "ana@example.com",
        "original_datetime": ten_am.isoformat(),
        "new_datetime": two_pm.isoformat(),
    }))

    _show("Cancel", await orchestrator.cancel(DEMO_TENANT.tenant_id, {
        "email": "ana@example.com",
        "original_datetime": two_pm.isoformat(),
        "reason": "Feeling unwell",
    }))

    _banner("Outbox")
    for message in mailer.outbox:
        print(f"  {message.kind.value:<22} {message.to:<20} {message.subject}")


async def run_reminders() -> None:
    tenants = TenantRegistry([DEMO_TENANT])
    repository = InMemoryBookingRepository()
    mailer = InMemoryMailer()
    job = BookingReminderJob(repository, tenants, mailer)
    sent = await job.run_once()
    print(f"Reminder scan sent {sent} email(s)")


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Booking engine console")
    parser.add_argument("command", choices=["demo", "reminders"])
    parser.add_argument("--sqlite", action="store_true", help="use the SQLAlchemy store")
    args = parser.parse_args(argv)

    logger.debug("Starting %s (%s)", args.command, settings.app_name)
    if args.command == "demo":
        asyncio.run(run_demo(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_reminders())
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
