"""Shared utilities used across the booking engine."""

import re
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("0412 345 678")
        '0412345678'
        >>> normalize_phone("+61 (412) 345-678")
        '+61412345678'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def normalize_email(value: str) -> str:
    """Trim and lowercase an email address."""
    return value.strip().lower()


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, raising ValueError for unknown zones."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name!r}") from None


def parse_local_datetime(value: str, tz_name: str) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime in the given zone.

    Naive values are read as wall-clock time in ``tz_name``; values with an
    offset are converted to it. Returns None when the text is not ISO-8601.

    Examples:
        >>> parse_local_datetime("2025-03-18T10:00", "UTC").isoformat()
        '2025-03-18T10:00:00+00:00'
        >>> parse_local_datetime("next tuesday", "UTC") is None
        True
    """
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    zone = get_zone(tz_name)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)
