"""Tenant configuration models: services, opening hours and booking policy."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from booking_engine.utils import get_zone

DEFAULT_REQUIRED_FIELDS: tuple[str, ...] = ("name", "email", "phone", "service", "datetime")


class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


# Indexed by datetime.weekday(): Monday == 0
WEEKDAYS: tuple[Weekday, ...] = tuple(Weekday)


def parse_time_to_minutes(hhmm: str) -> Optional[int]:
    """Convert ``HH:MM`` to minutes since midnight, or None when malformed."""
    parts = hhmm.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        return None
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return hours * 60 + minutes


class TimeWindow(BaseModel):
    """An opening window within one day, e.g. 09:00-17:30."""

    start: str
    end: str

    @model_validator(mode="after")
    def _check_bounds(self) -> "TimeWindow":
        start = parse_time_to_minutes(self.start)
        end = parse_time_to_minutes(self.end)
        if start is None or end is None:
            raise ValueError(f"Time window must use HH:MM, got {self.start!r}-{self.end!r}")
        if start >= end:
            raise ValueError(f"Time window start must be before end: {self.start}-{self.end}")
        return self

    @property
    def start_minutes(self) -> int:
        return parse_time_to_minutes(self.start)  # type: ignore[return-value]

    @property
    def end_minutes(self) -> int:
        return parse_time_to_minutes(self.end)  # type: ignore[return-value]


class WeeklySchedule(BaseModel):
    """Opening hours per weekday. A day with no windows is closed."""

    days: dict[Weekday, list[TimeWindow]] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_mapping(cls, data: Any) -> Any:
        # Stored configs use {"monday": [...], ...} without the wrapper key
        if isinstance(data, dict) and "days" not in data:
            return {"days": data}
        return data

    def windows_for(self, day: Weekday) -> list[TimeWindow]:
        return self.days.get(day, [])


class ServiceDefinition(BaseModel):
    """A bookable offering configured by a tenant."""

    key: str
    name: str
    aliases: list[str] = Field(default_factory=list)
    calendar_id: str
    duration_minutes: int = Field(gt=0)
    max_simultaneous_bookings: int = Field(default=1, ge=1)
    weekly_schedule: Optional[WeeklySchedule] = None


class BookingPolicy(BaseModel):
    """Per-tenant temporal rules and email settings."""

    timezone: str = "UTC"
    min_lead_hours: Optional[float] = Field(default=None, ge=0)
    max_advance_days: Optional[float] = Field(default=None, gt=0)
    weekly_schedule: Optional[WeeklySchedule] = None

    confirmation_email_enabled: bool = True
    confirmation_subject_template: Optional[str] = None
    confirmation_body_text_template: Optional[str] = None
    confirmation_body_html_template: Optional[str] = None
    cancellation_subject_template: Optional[str] = None
    cancellation_body_text_template: Optional[str] = None
    cancellation_body_html_template: Optional[str] = None

    reminder_email_enabled: bool = True
    reminder_window_hours: Optional[float] = Field(default=None, gt=0)
    reminder_min_lead_hours: Optional[float] = Field(default=None, gt=0)
    reminder_subject_template: Optional[str] = None
    reminder_body_text_template: Optional[str] = None
    reminder_body_html_template: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        get_zone(value)
        return value


class TenantConfig(BaseModel):
    """Everything the booking engine needs to know about one tenant."""

    tenant_id: str
    name: str
    domain: str = ""
    booking_enabled: bool = True
    policy: BookingPolicy = Field(default_factory=BookingPolicy)
    services: list[ServiceDefinition] = Field(default_factory=list)
    required_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_REQUIRED_FIELDS))
    custom_fields: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _normalize_fields(self) -> "TenantConfig":
        # Base fields are always required; custom required fields are always allowed.
        ordered: list[str] = []
        for name in [*self.required_fields, *DEFAULT_REQUIRED_FIELDS]:
            name = name.strip()
            if name and name not in ordered:
                ordered.append(name)
        self.required_fields = ordered
        allowed = list(self.custom_fields)
        for name in ordered:
            if name not in DEFAULT_REQUIRED_FIELDS and name not in allowed:
                allowed.append(name)
        self.custom_fields = allowed
        return self

    def schedule_for(self, service: ServiceDefinition) -> Optional[WeeklySchedule]:
        """Service hours win over tenant-wide opening hours."""
        return service.weekly_schedule or self.policy.weekly_schedule

    def service_by_key(self, key: str) -> Optional[ServiceDefinition]:
        for service in self.services:
            if service.key == key:
                return service
        return None
