"""Tests for rescheduling and cancelling bookings through the orchestrator."""

from datetime import datetime, timedelta, timezone

import pytest

from booking_engine.orchestrator import BookingOrchestrator
from booking_engine.schemas.booking_schema import BookingAction, BookingStatus
from booking_engine.tools.booking import InMemoryBookingRepository
from booking_engine.tools.mailer import EmailKind, InMemoryMailer
from booking_engine.tools.tenants import TenantRegistry
from tests.conftest import FailingCalendar, create_args, make_booking, make_tenant

UTC = timezone.utc
NOT_FOUND = (
    "I couldn't find an existing booking with that email and date/time. "
    "Please check your details."
)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 1, 1, hour, minute, tzinfo=UTC)


class BrokenStatusRepository(InMemoryBookingRepository):
    def set_status(self, booking_id, status):
        raise RuntimeError("connection reset")


class BrokenSlotRepository(InMemoryBookingRepository):
    def update_slot(self, *args, **kwargs):
        raise RuntimeError("connection reset")


@pytest.fixture
async def booked(orchestrator, repository):
    """An ACTIVE 14:00 haircut for ana@example.com with a calendar event."""
    result = await orchestrator.create("salon-1", create_args())
    assert result.success
    return repository.all()[0]


def update_args(**overrides):
    args = {
        "email": "ana@example.com",
        "original_datetime": "2025-01-01T14:00",
        "new_datetime": "2025-01-01T16:00",
    }
    args.update(overrides)
    return args


def cancel_args(**overrides):
    args = {"email": "ana@example.com", "original_datetime": "2025-01-01T14:00"}
    args.update(overrides)
    return args


class TestUpdate:
    async def test_moves_row_event_and_resends_confirmation(
        self, orchestrator, repository, calendar, mailer, booked
    ):
        result = await orchestrator.update("salon-1", update_args())

        assert result.success
        assert result.action == BookingAction.UPDATED
        assert result.start == "2025-01-01T16:00:00+00:00"
        assert result.end == "2025-01-01T17:00:00+00:00"
        assert result.state_trace[-1] == "notified"

        row = repository.get(booked.id)
        assert row.start == at(16)
        assert calendar.get_event("salon", booked.calendar_event_id).start == at(16)

        kinds = [m.kind for m in mailer.outbox]
        assert kinds == [EmailKind.CONFIRMATION, EmailKind.CONFIRMATION]
        assert "16:00" in mailer.outbox[-1].text

    async def test_approximate_original_time_within_window(self, orchestrator, booked):
        result = await orchestrator.update(
            "salon-1", update_args(original_datetime="2025-01-01T14:30")
        )
        assert result.success

    async def test_original_time_outside_window(self, orchestrator, booked):
        result = await orchestrator.update(
            "salon-1", update_args(original_datetime="2025-01-01T14:31")
        )
        assert not result.success
        assert result.error_message == NOT_FOUND
        assert result.action == BookingAction.UPDATED

    async def test_move_overlapping_own_slot(self, orchestrator, repository, booked):
        result = await orchestrator.update("salon-1", update_args(new_datetime="2025-01-01T14:30"))
        assert result.success
        assert repository.get(booked.id).start == at(14, 30)

    async def test_wrong_email_not_found(self, orchestrator, booked):
        result = await orchestrator.update("salon-1", update_args(email="bo@example.com"))
        assert result.error_message == NOT_FOUND

    async def test_missing_fields(self, orchestrator, booked):
        result = await orchestrator.update("salon-1", update_args(new_datetime=None))
        assert result.error_message == (
            "To update a booking I need your email and both the original and new date/time."
        )

    async def test_non_string_datetime_rejected(self, orchestrator, repository, booked):
        result = await orchestrator.update("salon-1", update_args(original_datetime=20250101))
        assert not result.success
        assert result.action == BookingAction.UPDATED
        assert result.error_message == (
            "Some booking details are in an unexpected format: original_datetime. "
            "Please try again."
        )
        assert repository.get(booked.id).start == at(14)

    async def test_suggestions_may_overlap_own_old_slot(self, orchestrator, repository, booked):
        repository.add(make_booking(at(16), email="bo@example.com"))
        result = await orchestrator.update("salon-1", update_args())
        assert not result.success
        # 14:00 is only held by the booking being moved, on the calendar too
        assert result.suggested_slots == [at(15).isoformat(), at(14).isoformat()]

    async def test_change_to_service_on_same_calendar(self, orchestrator, repository, booked):
        result = await orchestrator.update(
            "salon-1", update_args(service="hair colour", new_datetime="2025-01-01T15:00")
        )
        assert result.success
        assert result.end == "2025-01-01T16:30:00+00:00"
        row = repository.get(booked.id)
        assert row.service_key == "colour"
        assert row.end == at(16, 30)

    async def test_change_to_service_on_other_calendar_rejected(
        self, orchestrator, repository, booked
    ):
        result = await orchestrator.update("salon-1", update_args(service="Massage"))
        assert not result.success
        assert "different calendar" in result.error_message
        assert repository.get(booked.id).start == at(14)

    async def test_new_slot_taken_returns_suggestions(self, orchestrator, repository, booked):
        repository.add(make_booking(at(16), email="bo@example.com"))
        result = await orchestrator.update("salon-1", update_args())
        assert not result.success
        assert result.error_message == "That time slot is fully booked. Please choose another time."
        assert result.suggested_slots
        assert repository.get(booked.id).start == at(14)

    async def test_new_time_in_past(self, orchestrator, booked):
        result = await orchestrator.update("salon-1", update_args(new_datetime="2025-01-01T09:00"))
        assert result.error_message == (
            "The requested time is in the past. Please choose another time."
        )

    async def test_calendar_failure_leaves_row_untouched(self, clock, tenants, mailer):
        repository = InMemoryBookingRepository()
        calendar = FailingCalendar(fail_on=("update",))
        orchestrator = BookingOrchestrator(tenants, repository, calendar, mailer, clock=clock)
        await orchestrator.create("salon-1", create_args())

        result = await orchestrator.update("salon-1", update_args())
        assert not result.success
        assert result.error_message == (
            "We couldn't update the appointment in the calendar due to an internal error."
        )
        assert repository.all()[0].start == at(14)

    async def test_row_update_failure_is_not_fatal(self, clock, tenants, calendar, mailer):
        repository = BrokenSlotRepository()
        orchestrator = BookingOrchestrator(tenants, repository, calendar, mailer, clock=clock)
        await orchestrator.create("salon-1", create_args())

        result = await orchestrator.update("salon-1", update_args())
        assert result.success
        assert "persisted" not in result.state_trace

    async def test_retired_service_is_configuration_error(self, orchestrator, repository):
        repository.add(make_booking(at(14), service_key="beard-trim"))
        result = await orchestrator.update("salon-1", update_args())
        assert not result.success
        assert "no longer offered" in result.error_message


class TestCancel:
    async def test_cancels_event_row_and_emails_reason(
        self, orchestrator, repository, calendar, mailer, booked
    ):
        result = await orchestrator.cancel("salon-1", cancel_args(reason="Feeling unwell"))

        assert result.success
        assert result.action == BookingAction.CANCELLED
        assert result.start == "2025-01-01T14:00:00+00:00"
        assert result.state_trace == ["validating", "calendar_mutated", "persisted", "notified"]

        assert repository.get(booked.id).status == BookingStatus.CANCELLED
        assert calendar.get_event("salon", booked.calendar_event_id) is None

        message = mailer.outbox[-1]
        assert message.kind == EmailKind.CANCELLATION
        assert "Reason: Feeling unwell" in message.text

    async def test_cancelled_row_is_ignored(self, orchestrator, booked):
        assert (await orchestrator.cancel("salon-1", cancel_args())).success
        again = await orchestrator.cancel("salon-1", cancel_args())
        assert not again.success
        assert again.error_message == NOT_FOUND

    async def test_cancelled_row_frees_the_slot(self, orchestrator, booked):
        await orchestrator.cancel("salon-1", cancel_args())
        result = await orchestrator.create("salon-1", create_args(email="bo@example.com"))
        assert result.success

    async def test_missing_fields(self, orchestrator, booked):
        result = await orchestrator.cancel("salon-1", {"email": "ana@example.com"})
        assert result.error_message == (
            "To cancel a booking I need your email and the original date/time."
        )
        assert result.action == BookingAction.CANCELLED

    async def test_non_string_field_rejected(self, orchestrator, repository, booked):
        result = await orchestrator.cancel("salon-1", cancel_args(email=42, reason=["late"]))
        assert not result.success
        assert result.error_message == (
            "Some booking details are in an unexpected format: email, reason. Please try again."
        )
        assert repository.get(booked.id).status == BookingStatus.ACTIVE

    async def test_delete_failure_keeps_booking_active(self, clock, tenants, mailer):
        repository = InMemoryBookingRepository()
        calendar = FailingCalendar(fail_on=("delete",))
        orchestrator = BookingOrchestrator(tenants, repository, calendar, mailer, clock=clock)
        await orchestrator.create("salon-1", create_args())

        result = await orchestrator.cancel("salon-1", cancel_args())
        assert not result.success
        assert result.error_message == (
            "We couldn't cancel the appointment in the calendar due to an internal error."
        )
        assert repository.all()[0].status == BookingStatus.ACTIVE

    async def test_status_update_failure_reported(self, clock, tenants, calendar, mailer):
        repository = BrokenStatusRepository()
        orchestrator = BookingOrchestrator(tenants, repository, calendar, mailer, clock=clock)
        await orchestrator.create("salon-1", create_args())

        result = await orchestrator.cancel("salon-1", cancel_args())
        assert not result.success
        assert result.error_message == (
            "We cancelled the calendar event, but failed to update the booking record."
        )

    async def test_first_match_wins(self, orchestrator, repository):
        early = make_booking(at(13, 50))
        late = make_booking(at(14, 20), calendar_id="spa", service_key="massage")
        repository.add(late)
        repository.add(early)

        assert (await orchestrator.cancel("salon-1", cancel_args())).success
        assert repository.get(early.id).status == BookingStatus.CANCELLED
        assert repository.get(late.id).status == BookingStatus.ACTIVE

    async def test_email_failure_is_not_fatal(self, clock, tenants, repository, calendar):
        orchestrator = BookingOrchestrator(
            tenants, repository, calendar, InMemoryMailer(fail_reason="smtp_down"), clock=clock
        )
        await orchestrator.create("salon-1", create_args())
        result = await orchestrator.cancel("salon-1", cancel_args())
        assert result.success
        assert result.confirmation_email_sent is False
        assert result.confirmation_email_error == "smtp_down"

    async def test_other_tenant_cannot_cancel(self, clock, repository, calendar, mailer, booked):
        other = BookingOrchestrator(
            TenantRegistry([make_tenant(tenant_id="salon-2")]),
            repository, calendar, mailer, clock=clock,
        )
        result = await other.cancel("salon-2", cancel_args())
        assert result.error_message == NOT_FOUND
        assert repository.get(booked.id).status == BookingStatus.ACTIVE
