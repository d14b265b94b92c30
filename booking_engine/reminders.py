"""
Reminder email job.

Scans upcoming ACTIVE bookings that have not had a reminder yet and sends
one when the booking falls inside its tenant's reminder window. A failed
send leaves ``reminder_sent_at`` unset so the next cycle retries it.

Usage:
    job = BookingReminderJob(repository, tenants, mailer)
    await job.run_once()                 # single scan
    await job.run_forever()              # every REMINDER_INTERVAL_MINUTES
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from booking_engine.config import settings
from booking_engine.errors import NotificationError
from booking_engine.schemas.booking_schema import Booking
from booking_engine.schemas.tenant_schema import TenantConfig
from booking_engine.tools.booking import BookingRepository
from booking_engine.tools.mailer import (
    DEFAULT_REMINDER,
    EmailKind,
    EmailTemplates,
    Mailer,
    build_email_context,
    send_templated,
)
from booking_engine.tools.tenants import TenantRegistry
from booking_engine.utils import get_zone

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _reminder_templates(tenant: TenantConfig) -> EmailTemplates:
    policy = tenant.policy
    return EmailTemplates(
        subject=policy.reminder_subject_template or DEFAULT_REMINDER.subject,
        text=policy.reminder_body_text_template or DEFAULT_REMINDER.text,
        html=policy.reminder_body_html_template or DEFAULT_REMINDER.html,
    )


class BookingReminderJob:
    """Periodic reminder sender. One scan at a time per instance."""

    def __init__(
        self,
        repository: BookingRepository,
        tenants: TenantRegistry,
        mailer: Mailer,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._tenants = tenants
        self._mailer = mailer
        self._clock = clock
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def is_due(self, booking: Booking, tenant: TenantConfig, now: datetime) -> bool:
        """True when the booking is inside its reminder window and was booked early enough."""
        policy = tenant.policy
        if not policy.reminder_email_enabled:
            return False
        if booking.start <= now:
            return False

        window = policy.reminder_window_hours or settings.reminders.default_window_hours
        min_lead = policy.reminder_min_lead_hours or settings.reminders.default_min_lead_hours

        if booking.start - now > timedelta(hours=window):
            return False
        return booking.start - booking.created_at >= timedelta(hours=min_lead)

    async def run_once(self) -> int:
        """Scan once and return how many reminders were sent.

        Returns 0 without scanning when a previous scan is still running.
        """
        if self._running:
            logger.info("Previous reminder scan still in progress, skipping")
            return 0

        self._running = True
        try:
            return await self._scan()
        finally:
            self._running = False

    async def _scan(self) -> int:
        now = self._clock()
        horizon = now + timedelta(hours=settings.reminders.scan_horizon_hours)
        candidates = self._repository.list_reminder_candidates(now, horizon)
        if not candidates:
            logger.debug("No reminder candidates before %s", horizon.isoformat())
            return 0

        logger.info("Reminder scan: %d candidate booking(s)", len(candidates))
        sent = 0
        for booking in candidates:
            try:
                if await self._maybe_send(booking, now):
                    sent += 1
            except Exception:
                logger.exception("Reminder failed for booking %s", booking.id)
        logger.info("Reminder scan complete: %d sent", sent)
        return sent

    async def _maybe_send(self, booking: Booking, now: datetime) -> bool:
        tenant = self._tenants.get(booking.tenant_id)
        if tenant is None:
            logger.warning("Booking %s belongs to unknown tenant %s", booking.id, booking.tenant_id)
            return False
        if not self.is_due(booking, tenant, now):
            return False

        service = tenant.service_by_key(booking.service_key)
        context = build_email_context(
            name=booking.name,
            email=booking.email,
            phone=booking.phone,
            service=service.name if service else booking.service_key,
            start_local=booking.start.astimezone(get_zone(booking.timezone)),
            timezone_name=booking.timezone,
            brand_name=tenant.name,
            brand_url=tenant.domain,
        )
        try:
            result = await send_templated(
                self._mailer, EmailKind.REMINDER, booking.email,
                _reminder_templates(tenant), context,
            )
        except NotificationError as exc:
            logger.warning("Reminder for booking %s not sent: %s", booking.id, exc.message)
            return False
        if not result.sent:
            logger.warning("Reminder for booking %s not sent: %s", booking.id, result.reason)
            return False

        self._repository.mark_reminder_sent(booking.id, self._clock())
        logger.info("Reminder sent for booking %s", booking.id)
        return True

    async def run_forever(self, interval: Optional[timedelta] = None) -> None:
        """Scan immediately, then once per interval until cancelled."""
        interval = interval or timedelta(minutes=settings.reminders.interval_minutes)
        logger.info("Reminder job started (every %s)", interval)
        while True:
            await self.run_once()
            await asyncio.sleep(interval.total_seconds())
