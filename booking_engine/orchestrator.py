"""
Booking orchestrator: create, update and cancel for one tenant at a time.

Each operation runs its gates in a fixed order and records progress on a
BookingStateMachine. Gates raise from the errors taxonomy; the public
methods catch those at the boundary and hand back a BookingResult, so the
calling conversation layer never sees an exception for an expected
failure.

Side-effect ordering for a create:
    1. calendar event (failure aborts, nothing persisted)
    2. booking row (failure is logged; the event stays authoritative)
    3. confirmation email (failure is reported as metadata only)

There is no lock across the capacity check and the writes. Two concurrent
requests for the last free seat can both pass and both be written.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

import pydantic

from booking_engine.config import settings
from booking_engine.conversation.state_machine import BookingStateMachine, BookingTrigger
from booking_engine.errors import (
    BookingError,
    BookingNotFoundError,
    ConfigurationError,
    NotificationError,
    PolicyRejection,
    PolicyRejectionReason,
    ProviderError,
    ValidationError,
)
from booking_engine.logging_context import get_request_logger, new_request_id, set_request_id
from booking_engine.schemas.booking_schema import (
    Booking,
    BookingAction,
    BookingResult,
    BookingStatus,
    CancelBookingRequest,
    CreateBookingRequest,
    UpdateBookingRequest,
)
from booking_engine.schemas.tenant_schema import (
    ServiceDefinition,
    TenantConfig,
    WeeklySchedule,
)
from booking_engine.tools.availability import is_within_schedule, own_calendar_events
from booking_engine.tools.booking import BookingRepository
from booking_engine.tools.calendar import (
    CalendarProvider,
    CapacityOracle,
    build_add_to_calendar_url,
)
from booking_engine.tools.mailer import (
    DEFAULT_CANCELLATION,
    DEFAULT_CONFIRMATION,
    EmailKind,
    EmailTemplates,
    Mailer,
    build_email_context,
    send_templated,
)
from booking_engine.tools.services import MatchFailure, resolve
from booking_engine.tools.suggestions import SlotSuggestionEngine
from booking_engine.tools.tenants import TenantRegistry
from booking_engine.utils import (
    get_zone,
    is_valid_email,
    normalize_email,
    normalize_phone,
    parse_local_datetime,
)

logger = get_request_logger(__name__)

INVALID_DATETIME_MESSAGE = "The date/time you provided is not a valid format. Please try again."
NOT_FOUND_MESSAGE = (
    "I couldn't find an existing booking with that email and date/time. "
    "Please check your details."
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _read_request(args: dict[str, Any], build: Callable[[dict[str, Any]], Any]) -> Any:
    """Build a request model from tool arguments, naming any badly typed fields."""
    try:
        return build(args)
    except pydantic.ValidationError as exc:
        fields = list(dict.fromkeys(str(err["loc"][-1]) for err in exc.errors() if err["loc"]))
        raise ValidationError(
            f"Some booking details are in an unexpected format: {', '.join(fields)}. "
            "Please try again."
        ) from exc


def _plural(count: float, unit: str) -> str:
    shown = int(count) if float(count).is_integer() else count
    return f"{shown} {unit}{'' if shown == 1 else 's'}"


@dataclass
class _SlotCheck:
    """The resolved context a requested time is checked against."""

    tenant: TenantConfig
    service: ServiceDefinition
    schedule: Optional[WeeklySchedule]
    start: datetime
    end: datetime
    moving: Optional[Booking] = None


def build_event_description(
    service_name: str,
    name: str,
    email: str,
    phone: str,
    custom_fields: dict[str, str],
) -> str:
    lines = [
        f"Service: {service_name}",
        f"Name: {name}",
        f"Email: {email}",
        f"Phone: {phone or '(not provided)'}",
    ]
    lines.extend(f"{key}: {value}" for key, value in custom_fields.items())
    return "\n".join(lines)


class BookingOrchestrator:
    """Runs booking operations against a tenant's calendar, store and mailer."""

    def __init__(
        self,
        tenants: TenantRegistry,
        repository: BookingRepository,
        calendar: Union[CalendarProvider, CapacityOracle],
        mailer: Mailer,
        clock: Callable[[], datetime] = _utc_now,
        suggestion_engine: Optional[SlotSuggestionEngine] = None,
    ) -> None:
        self._tenants = tenants
        self._repository = repository
        self._oracle = calendar if isinstance(calendar, CapacityOracle) else CapacityOracle(calendar)
        self._mailer = mailer
        self._clock = clock
        self._suggestions = suggestion_engine or SlotSuggestionEngine(
            repository, self._oracle, clock=clock
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create(
        self, tenant_id: str, request: Union[CreateBookingRequest, dict[str, Any]]
    ) -> BookingResult:
        """Validate, check and write a new booking."""
        set_request_id(new_request_id())
        sm = BookingStateMachine(operation="create")
        try:
            if isinstance(request, dict):
                request = _read_request(request, CreateBookingRequest.from_tool_args)
            return await self._create(tenant_id, request, sm)
        except BookingError as exc:
            return self._failure(exc, sm)

    async def update(
        self, tenant_id: str, request: Union[UpdateBookingRequest, dict[str, Any]]
    ) -> BookingResult:
        """Move an existing booking to a new time, optionally changing service."""
        set_request_id(new_request_id())
        sm = BookingStateMachine(operation="update")
        try:
            if isinstance(request, dict):
                request = _read_request(request, UpdateBookingRequest.model_validate)
            return await self._update(tenant_id, request, sm)
        except BookingError as exc:
            return self._failure(exc, sm, BookingAction.UPDATED)

    async def cancel(
        self, tenant_id: str, request: Union[CancelBookingRequest, dict[str, Any]]
    ) -> BookingResult:
        """Delete the calendar event and mark the booking CANCELLED."""
        set_request_id(new_request_id())
        sm = BookingStateMachine(operation="cancel")
        try:
            if isinstance(request, dict):
                request = _read_request(request, CancelBookingRequest.model_validate)
            return await self._cancel(tenant_id, request, sm)
        except BookingError as exc:
            return self._failure(exc, sm, BookingAction.CANCELLED)

    # ------------------------------------------------------------------
    # Operation bodies
    # ------------------------------------------------------------------

    async def _create(
        self, tenant_id: str, request: CreateBookingRequest, sm: BookingStateMachine
    ) -> BookingResult:
        tenant = self._load_tenant(tenant_id)
        logger.info("Create booking requested (tenant=%s)", tenant_id)

        self._check_required_fields(tenant, request)
        custom_fields = self._clean_custom_fields(tenant, request.custom_fields)
        email = self._valid_email(request.email or "")

        if not (request.service or "").strip() and len(tenant.services) == 1:
            service = tenant.services[0]
        else:
            service = self._resolve_service(tenant, request.service)
        sm.transition(BookingTrigger.SERVICE_MATCHED)

        start = self._parse(request.datetime or "", tenant)
        check = _SlotCheck(
            tenant=tenant,
            service=service,
            schedule=tenant.schedule_for(service),
            start=start,
            end=start + timedelta(minutes=service.duration_minutes),
        )
        await self._check_slot(check, sm)

        name = (request.name or "").strip()
        phone = normalize_phone(request.phone or "")
        summary = f"{service.name} - {name}"
        description = build_event_description(service.name, name, email, phone, custom_fields)

        try:
            event = await self._oracle.create_event(
                service.calendar_id, summary, description,
                check.start, check.end, tenant.policy.timezone,
            )
        except ProviderError as exc:
            raise ProviderError(
                "Failed to create calendar event due to an internal error."
            ) from exc
        sm.transition(BookingTrigger.CALENDAR_WRITTEN)

        booking = Booking(
            tenant_id=tenant.tenant_id,
            name=name,
            email=email,
            phone=phone,
            service_key=service.key,
            start=check.start,
            end=check.end,
            timezone=tenant.policy.timezone,
            calendar_id=service.calendar_id,
            calendar_event_id=event.id,
            custom_fields=custom_fields,
            created_at=self._clock(),
        )
        try:
            self._repository.add(booking)
            sm.transition(BookingTrigger.RECORD_SAVED)
        except Exception:
            # The event already exists and stays authoritative; no rollback.
            logger.exception(
                "Failed to persist booking after calendar event %s was created", event.id
            )

        calendar_url = build_add_to_calendar_url(
            title=f"{service.name} - {tenant.name}",
            description=description,
            start=check.start,
            end=check.end,
            location=tenant.domain or None,
        )

        email_sent, email_error = await self._notify_confirmation(
            tenant, booking, service.name, calendar_url
        )
        sm.transition(BookingTrigger.NOTIFICATION_DONE)

        logger.info(
            "Booking created: %s %s at %s (event=%s)",
            tenant_id, service.key, check.start.isoformat(), event.id,
        )
        return BookingResult(
            success=True,
            action=BookingAction.CREATED,
            start=check.start.isoformat(),
            end=check.end.isoformat(),
            add_to_calendar_url=calendar_url,
            confirmation_email_sent=email_sent,
            confirmation_email_error=email_error,
            state_trace=sm.get_state_trace(),
        )

    async def _update(
        self, tenant_id: str, request: UpdateBookingRequest, sm: BookingStateMachine
    ) -> BookingResult:
        tenant = self._load_tenant(tenant_id)
        if not (request.email and request.original_datetime and request.new_datetime):
            raise ValidationError(
                "To update a booking I need your email and both the original and new date/time."
            )
        logger.info("Update booking requested (tenant=%s)", tenant_id)

        email = self._valid_email(request.email)
        original_start = self._parse(request.original_datetime, tenant)
        existing = self._locate(tenant, email, original_start)

        if (request.service or "").strip():
            service = self._resolve_service(tenant, request.service)
            if service.calendar_id != existing.calendar_id:
                raise ValidationError(
                    "That service is booked on a different calendar, so it can't be changed "
                    "on an existing booking. Please cancel and make a new booking instead."
                )
        else:
            service = tenant.service_by_key(existing.service_key)
            if service is None:
                raise ConfigurationError(
                    "The service for this booking is no longer offered. "
                    "Please cancel and make a new booking instead."
                )
        sm.transition(BookingTrigger.SERVICE_MATCHED)

        new_start = self._parse(request.new_datetime, tenant)
        check = _SlotCheck(
            tenant=tenant,
            service=service,
            schedule=tenant.schedule_for(service),
            start=new_start,
            end=new_start + timedelta(minutes=service.duration_minutes),
            moving=existing,
        )
        await self._check_slot(check, sm)

        description = build_event_description(
            service.name, existing.name, existing.email, existing.phone, existing.custom_fields
        )
        if existing.calendar_event_id:
            try:
                await self._oracle.update_event(
                    existing.calendar_id,
                    existing.calendar_event_id,
                    summary=f"{service.name} - {existing.name}",
                    description=description,
                    start=check.start,
                    end=check.end,
                    timezone=tenant.policy.timezone,
                )
            except ProviderError as exc:
                raise ProviderError(
                    "We couldn't update the appointment in the calendar due to an internal error."
                ) from exc
        else:
            logger.warning("Booking %s has no calendar event to move", existing.id)
        sm.transition(BookingTrigger.CALENDAR_WRITTEN)

        moved = existing.model_copy(
            update={"start": check.start, "end": check.end, "service_key": service.key}
        )
        try:
            moved = self._repository.update_slot(
                existing.id, check.start, check.end, service.key, existing.calendar_id
            )
            sm.transition(BookingTrigger.RECORD_SAVED)
        except Exception:
            logger.exception(
                "Calendar event moved but booking %s could not be updated", existing.id
            )

        calendar_url = build_add_to_calendar_url(
            title=f"{service.name} - {tenant.name}",
            description=description,
            start=check.start,
            end=check.end,
            location=tenant.domain or None,
        )
        email_sent, email_error = await self._notify_confirmation(
            tenant, moved, service.name, calendar_url
        )
        sm.transition(BookingTrigger.NOTIFICATION_DONE)

        logger.info(
            "Booking %s moved from %s to %s",
            existing.id, existing.start.isoformat(), check.start.isoformat(),
        )
        return BookingResult(
            success=True,
            action=BookingAction.UPDATED,
            start=check.start.isoformat(),
            end=check.end.isoformat(),
            add_to_calendar_url=calendar_url,
            confirmation_email_sent=email_sent,
            confirmation_email_error=email_error,
            state_trace=sm.get_state_trace(),
        )

    async def _cancel(
        self, tenant_id: str, request: CancelBookingRequest, sm: BookingStateMachine
    ) -> BookingResult:
        tenant = self._load_tenant(tenant_id)
        if not (request.email and request.original_datetime):
            raise ValidationError(
                "To cancel a booking I need your email and the original date/time."
            )
        logger.info("Cancel booking requested (tenant=%s)", tenant_id)

        email = self._valid_email(request.email)
        original_start = self._parse(request.original_datetime, tenant)
        existing = self._locate(tenant, email, original_start)

        if existing.calendar_event_id:
            try:
                await self._oracle.delete_event(existing.calendar_id, existing.calendar_event_id)
            except ProviderError as exc:
                raise ProviderError(
                    "We couldn't cancel the appointment in the calendar due to an internal error."
                ) from exc
        sm.transition(BookingTrigger.CALENDAR_WRITTEN)

        try:
            self._repository.set_status(existing.id, BookingStatus.CANCELLED)
        except Exception as exc:
            logger.exception("Calendar event deleted but booking %s not marked", existing.id)
            raise BookingError(
                "We cancelled the calendar event, but failed to update the booking record."
            ) from exc
        sm.transition(BookingTrigger.RECORD_SAVED)

        service = tenant.service_by_key(existing.service_key)
        service_name = service.name if service else existing.service_key
        email_sent, email_error = await self._notify(
            tenant,
            existing,
            EmailKind.CANCELLATION,
            self._templates(tenant, EmailKind.CANCELLATION),
            service_name,
            reason=(request.reason or "").strip(),
        )
        sm.transition(BookingTrigger.NOTIFICATION_DONE)

        zone = get_zone(tenant.policy.timezone)
        logger.info("Booking %s cancelled", existing.id)
        return BookingResult(
            success=True,
            action=BookingAction.CANCELLED,
            start=existing.start.astimezone(zone).isoformat(),
            end=existing.end.astimezone(zone).isoformat(),
            confirmation_email_sent=email_sent,
            confirmation_email_error=email_error,
            state_trace=sm.get_state_trace(),
        )

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def _load_tenant(self, tenant_id: str) -> TenantConfig:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            raise ConfigurationError("Bot not found for this booking.")
        if not tenant.booking_enabled or not tenant.services:
            raise ConfigurationError("Booking is not enabled for this bot.")
        return tenant

    def _check_required_fields(self, tenant: TenantConfig, request: CreateBookingRequest) -> None:
        missing = []
        for field_name in tenant.required_fields:
            if field_name == "service" and len(tenant.services) == 1:
                continue
            value = request.field_value(field_name)
            if value is None or not str(value).strip():
                missing.append(field_name)
        if missing:
            raise ValidationError(f"Missing required booking fields: {', '.join(missing)}.")

    def _clean_custom_fields(self, tenant: TenantConfig, values: dict[str, str]) -> dict[str, str]:
        unknown = sorted(key for key in values if key not in tenant.custom_fields)
        if unknown:
            raise ValidationError(f"Unknown booking fields: {', '.join(unknown)}.")
        cleaned = {}
        for key in tenant.custom_fields:
            value = str(values.get(key) or "").strip()
            if value:
                cleaned[key] = value
        return cleaned

    def _valid_email(self, value: str) -> str:
        email = normalize_email(value)
        if not is_valid_email(email):
            raise ValidationError(
                "The email address you provided doesn't look valid. Please check it and try again."
            )
        return email

    def _resolve_service(self, tenant: TenantConfig, text: Optional[str]) -> ServiceDefinition:
        match = resolve(text, tenant.services)
        if match.matched is not None:
            logger.debug("Service %r resolved to %s (%.3f)", text, match.matched.key, match.score)
            return match.matched

        if match.reason == MatchFailure.MISSING:
            message = "Please tell me which service you would like to book."
        elif match.reason == MatchFailure.AMBIGUOUS:
            message = (
                f"I'm not sure which service you mean by '{text}'. "
                f"Did you mean one of: {', '.join(match.suggestions)}?"
            )
        else:
            message = (
                f"I couldn't find a service called '{text}'. "
                f"Available services include: {', '.join(match.suggestions)}."
            )
        raise ValidationError(message, suggested_services=match.suggestions)

    def _parse(self, value: str, tenant: TenantConfig) -> datetime:
        parsed = parse_local_datetime(value, tenant.policy.timezone)
        if parsed is None:
            raise ValidationError(INVALID_DATETIME_MESSAGE)
        return parsed

    def _locate(self, tenant: TenantConfig, email: str, approx_start: datetime) -> Booking:
        window = timedelta(minutes=settings.lookup.approx_window_minutes)
        booking = self._repository.find_active_by_email_near(
            tenant.tenant_id, email, approx_start, window
        )
        if booking is None:
            raise BookingNotFoundError(NOT_FOUND_MESSAGE)
        return booking

    async def _check_slot(self, check: _SlotCheck, sm: BookingStateMachine) -> None:
        """Run the temporal then capacity gates; rejections carry suggestions."""
        try:
            self._check_temporal(check)
            sm.transition(BookingTrigger.TEMPORAL_PASSED)
            await self._check_capacity(check)
            sm.transition(BookingTrigger.CAPACITY_PASSED)
        except PolicyRejection as exc:
            logger.warning("Requested time rejected (%s): %s", exc.reason.value, exc.message)
            exc.suggested_slots = await self._suggestions.suggest(
                check.start,
                check.tenant.policy,
                check.service,
                check.tenant.tenant_id,
                schedule=check.schedule,
                moving=check.moving,
            )
            raise

    def _check_temporal(self, check: _SlotCheck) -> None:
        policy = check.tenant.policy
        now = self._clock().astimezone(get_zone(policy.timezone))
        start = check.start

        if start < now:
            raise PolicyRejection(
                "The requested time is in the past. Please choose another time.",
                PolicyRejectionReason.PAST, start,
            )
        if policy.min_lead_hours and start < now + timedelta(hours=policy.min_lead_hours):
            raise PolicyRejection(
                f"Bookings must be made at least {_plural(policy.min_lead_hours, 'hour')} "
                "in advance.",
                PolicyRejectionReason.MIN_LEAD, start,
            )
        if policy.max_advance_days and start > now + timedelta(days=policy.max_advance_days):
            raise PolicyRejection(
                "Bookings cannot be made more than "
                f"{_plural(policy.max_advance_days, 'day')} in advance.",
                PolicyRejectionReason.MAX_ADVANCE, start,
            )
        if not is_within_schedule(start, check.service.duration_minutes, check.schedule):
            raise PolicyRejection(
                "That time is outside of the business's opening hours. "
                "Please choose another time within the available schedule.",
                PolicyRejectionReason.OUTSIDE_HOURS, start,
            )

    async def _check_capacity(self, check: _SlotCheck) -> None:
        service = check.service
        cap = service.max_simultaneous_bookings
        moving_id = check.moving.id if check.moving else None

        internal = self._repository.count_active_overlaps(
            check.tenant.tenant_id, service.calendar_id, check.start, check.end,
            exclude_id=moving_id,
        )
        if internal >= cap:
            raise PolicyRejection(
                "That time slot is fully booked. Please choose another time.",
                PolicyRejectionReason.AT_CAPACITY, check.start,
            )

        own_events = own_calendar_events(
            check.moving, service.calendar_id, check.start, check.end
        )

        try:
            external = await self._oracle.count_events_in_range(
                service.calendar_id, check.start, check.end, cap + own_events
            )
        except ProviderError as exc:
            logger.warning("External capacity check skipped: %s", exc.message)
            return
        if external - own_events >= cap:
            raise PolicyRejection(
                "That time slot is fully booked. Please choose another time.",
                PolicyRejectionReason.CALENDAR_AT_CAPACITY, check.start,
            )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _templates(self, tenant: TenantConfig, kind: EmailKind) -> EmailTemplates:
        policy = tenant.policy
        if kind == EmailKind.CANCELLATION:
            default = DEFAULT_CANCELLATION
            overrides = (
                policy.cancellation_subject_template,
                policy.cancellation_body_text_template,
                policy.cancellation_body_html_template,
            )
        else:
            default = DEFAULT_CONFIRMATION
            overrides = (
                policy.confirmation_subject_template,
                policy.confirmation_body_text_template,
                policy.confirmation_body_html_template,
            )
        subject, text, html = overrides
        return EmailTemplates(
            subject=subject or default.subject,
            text=text or default.text,
            html=html or default.html,
        )

    async def _notify_confirmation(
        self, tenant: TenantConfig, booking: Booking, service_name: str, calendar_url: str
    ) -> tuple[Optional[bool], Optional[str]]:
        if not tenant.policy.confirmation_email_enabled:
            return None, None
        return await self._notify(
            tenant,
            booking,
            EmailKind.CONFIRMATION,
            self._templates(tenant, EmailKind.CONFIRMATION),
            service_name,
            calendar_url=calendar_url,
        )

    async def _notify(
        self,
        tenant: TenantConfig,
        booking: Booking,
        kind: EmailKind,
        templates: EmailTemplates,
        service_name: str,
        calendar_url: str = "",
        reason: str = "",
    ) -> tuple[bool, Optional[str]]:
        """Send one email. Failures come back as (False, reason), never raised."""
        zone = get_zone(tenant.policy.timezone)
        context = build_email_context(
            name=booking.name,
            email=booking.email,
            phone=booking.phone,
            service=service_name,
            start_local=booking.start.astimezone(zone),
            timezone_name=tenant.policy.timezone,
            brand_name=tenant.name,
            brand_url=tenant.domain,
            calendar_url=calendar_url,
            reason=reason,
        )
        try:
            result = await send_templated(self._mailer, kind, booking.email, templates, context)
        except NotificationError as exc:
            logger.warning("%s email to %s failed: %s", kind.value, booking.email, exc.message)
            return False, exc.reason
        if not result.sent:
            logger.warning("%s email to %s not sent: %s", kind.value, booking.email, result.reason)
        return result.sent, result.reason

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    def _failure(
        self,
        exc: BookingError,
        sm: BookingStateMachine,
        action: Optional[BookingAction] = None,
    ) -> BookingResult:
        if not sm.is_terminal():
            sm.reject(reason=exc.message)
        logger.warning("%s rejected: %s", sm.operation, exc.message)

        suggested_services = getattr(exc, "suggested_services", None)
        suggested_slots = exc.suggested_slots if isinstance(exc, PolicyRejection) else None
        return BookingResult(
            success=False,
            action=action,
            error_message=exc.message,
            suggested_slots=suggested_slots or None,
            suggested_services=suggested_services or None,
            state_trace=sm.get_state_trace(),
        )
