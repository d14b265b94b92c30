"""
Booking error taxonomy.

Gates inside the orchestrator raise these; each public operation turns
them into a BookingResult at its boundary. Only PolicyRejection is soft:
it is the one failure that comes back with alternative slots.
"""

from datetime import datetime
from enum import Enum
from typing import Optional


class PolicyRejectionReason(str, Enum):
    """Why a requested time was refused."""

    PAST = "past"
    MIN_LEAD = "min_lead"
    MAX_ADVANCE = "max_advance"
    OUTSIDE_HOURS = "outside_hours"
    AT_CAPACITY = "at_capacity"
    CALENDAR_AT_CAPACITY = "calendar_at_capacity"


class BookingError(Exception):
    """Base class for every failure surfaced to the calling layer."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(BookingError):
    """Tenant missing, booking disabled, or service configuration unusable."""


class ValidationError(BookingError):
    """Malformed or incomplete input from the caller."""

    def __init__(self, message: str, suggested_services: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.suggested_services = suggested_services or []


class BookingNotFoundError(ValidationError):
    """No ACTIVE booking matched the email and approximate time given."""


class PolicyRejection(BookingError):
    """The requested slot breaks a temporal or capacity rule."""

    def __init__(
        self,
        message: str,
        reason: PolicyRejectionReason,
        requested_start: datetime,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.requested_start = requested_start
        self.suggested_slots: list[str] = []


class ProviderError(BookingError):
    """The external calendar failed or timed out."""


class NotificationError(BookingError):
    """Email delivery failed. Never fatal to a booking."""

    def __init__(self, message: str, reason: str = "send_failed") -> None:
        super().__init__(message)
        self.reason = reason
