"""Tests for tenant and booking request models."""

import pydantic
import pytest

from booking_engine.schemas.booking_schema import (
    BookingAction,
    BookingResult,
    CreateBookingRequest,
)
from booking_engine.schemas.tenant_schema import (
    BookingPolicy,
    TenantConfig,
    TimeWindow,
    Weekday,
    WeeklySchedule,
    parse_time_to_minutes,
)


class TestTimeWindow:
    def test_minutes(self):
        window = TimeWindow(start="09:30", end="17:00")
        assert window.start_minutes == 570
        assert window.end_minutes == 1020

    def test_start_after_end_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            TimeWindow(start="17:00", end="09:00")

    @pytest.mark.parametrize("value", ["9", "24:00", "12:60", "ab:cd", "9:30:00"])
    def test_malformed_time(self, value):
        assert parse_time_to_minutes(value) is None

    def test_bare_mapping_schedule(self):
        schedule = WeeklySchedule.model_validate({"monday": [{"start": "09:00", "end": "12:00"}]})
        assert len(schedule.windows_for(Weekday.MONDAY)) == 1
        assert schedule.windows_for(Weekday.SUNDAY) == []


class TestTenantConfig:
    def test_unknown_timezone_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            BookingPolicy(timezone="Nowhere/City")

    def test_base_fields_always_required(self):
        tenant = TenantConfig(tenant_id="t", name="T", required_fields=["pet_name"])
        assert tenant.required_fields[0] == "pet_name"
        assert set(tenant.required_fields) >= {"name", "email", "phone", "service", "datetime"}

    def test_custom_required_field_is_allowed(self):
        tenant = TenantConfig(
            tenant_id="t", name="T", required_fields=["pet_name"], custom_fields=["notes"]
        )
        assert tenant.custom_fields == ["notes", "pet_name"]

    def test_service_by_key(self):
        tenant = TenantConfig.model_validate({
            "tenant_id": "t",
            "name": "T",
            "services": [{"key": "cut", "name": "Cut", "calendar_id": "c", "duration_minutes": 30}],
        })
        assert tenant.service_by_key("cut").name == "Cut"
        assert tenant.service_by_key("dye") is None

    def test_zero_duration_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            TenantConfig.model_validate({
                "tenant_id": "t",
                "name": "T",
                "services": [{"key": "c", "name": "C", "calendar_id": "c", "duration_minutes": 0}],
            })


class TestBookingRequests:
    def test_extra_tool_args_become_custom_fields(self):
        request = CreateBookingRequest.from_tool_args({
            "name": "Ana",
            "email": "ana@example.com",
            "pet_name": "Rex",
            "age": 4,
            "notes": None,
            "custom_fields": {"colour": "red"},
        })
        assert request.custom_fields == {"pet_name": "Rex", "age": "4", "colour": "red"}

    def test_field_value_reads_base_and_custom(self):
        request = CreateBookingRequest(name="Ana", custom_fields={"pet_name": "Rex"})
        assert request.field_value("name") == "Ana"
        assert request.field_value("pet_name") == "Rex"
        assert request.field_value("email") is None

    def test_result_payload_is_camel_case(self):
        result = BookingResult(
            success=False,
            action=BookingAction.UPDATED,
            error_message="nope",
            suggested_slots=["2025-01-01T15:00:00+00:00"],
            state_trace=["validating", "rejected"],
        )
        payload = result.to_payload()
        assert payload["errorMessage"] == "nope"
        assert payload["suggestedSlots"] == ["2025-01-01T15:00:00+00:00"]
        assert payload["action"] == "updated"
        assert "stateTrace" not in payload
