"""Booking records, operation requests and the result returned to callers."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

BASE_FIELDS: tuple[str, ...] = ("name", "email", "phone", "service", "datetime")


class BookingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class BookingAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class Booking(BaseModel):
    """One appointment. Rows are never hard-deleted; cancel flips status."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    name: str
    email: str
    phone: str = ""
    service_key: str
    start: datetime
    end: datetime
    timezone: str
    calendar_id: str
    calendar_event_id: Optional[str] = None
    status: BookingStatus = BookingStatus.ACTIVE
    custom_fields: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reminder_sent_at: Optional[datetime] = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap: touching intervals do not overlap."""
        return self.start < end and self.end > start


class CalendarEvent(BaseModel):
    """What the calendar provider hands back after a write."""

    id: str
    calendar_id: str
    summary: str = ""
    description: str = ""
    start: datetime
    end: datetime
    timezone: str = "UTC"
    html_link: Optional[str] = None


class CreateBookingRequest(BaseModel):
    """Arguments for a new booking as extracted by the conversation layer."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    service: Optional[str] = None
    datetime: Optional[str] = None
    custom_fields: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_tool_args(cls, args: dict[str, Any]) -> "CreateBookingRequest":
        """Build from flat tool-call arguments; unknown keys become custom fields."""
        base = {k: args.get(k) for k in BASE_FIELDS if args.get(k) is not None}
        custom = {
            k: str(v) for k, v in args.items()
            if k not in BASE_FIELDS and k != "custom_fields" and v is not None
        }
        custom.update(args.get("custom_fields") or {})
        return cls(**base, custom_fields=custom)

    def field_value(self, field_name: str) -> Optional[str]:
        """Look up a base field or a custom field by name."""
        if field_name in BASE_FIELDS:
            return getattr(self, field_name)
        return self.custom_fields.get(field_name)


class UpdateBookingRequest(BaseModel):
    email: Optional[str] = None
    original_datetime: Optional[str] = None
    new_datetime: Optional[str] = None
    service: Optional[str] = None


class CancelBookingRequest(BaseModel):
    email: Optional[str] = None
    original_datetime: Optional[str] = None
    reason: Optional[str] = None


class BookingResult(BaseModel):
    """Outcome of create, update or cancel, as handed to the calling layer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    action: Optional[BookingAction] = None
    start: Optional[str] = None
    end: Optional[str] = None
    add_to_calendar_url: Optional[str] = None
    confirmation_email_sent: Optional[bool] = None
    confirmation_email_error: Optional[str] = None
    error_message: Optional[str] = None
    suggested_slots: Optional[list[str]] = None
    suggested_services: Optional[list[str]] = None
    state_trace: list[str] = Field(default_factory=list, exclude=True)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the camelCase shape the conversation layer consumes."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
