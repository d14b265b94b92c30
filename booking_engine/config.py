"""
Centralized configuration with environment variable overrides.

Every threshold used by the booking engine (matching cut-offs, suggestion
search bounds, provider timeouts, reminder timing) is configurable here.
Nothing is hardcoded in the orchestrator or tool logic.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from booking_engine.logging_context import RequestIdFilter

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class CalendarConfig:
    """External calendar provider settings."""

    request_timeout_sec: float = _safe_float("CALENDAR_TIMEOUT_SECONDS", "10.0")


@dataclass(frozen=True)
class MatchingConfig:
    """Fuzzy service matching thresholds."""

    accept_threshold: float = _safe_float("SERVICE_MATCH_THRESHOLD", "0.82")
    ambiguity_margin: float = _safe_float("SERVICE_MATCH_MARGIN", "0.05")
    max_suggestions: int = _safe_int("SERVICE_MATCH_SUGGESTIONS", "3")


@dataclass(frozen=True)
class SuggestionConfig:
    """Bounds for the alternative slot search."""

    search_window_hours: int = _safe_int("SUGGESTION_WINDOW_HOURS", "4")
    max_calendar_probes: int = _safe_int("SUGGESTION_MAX_CALENDAR_PROBES", "8")
    max_suggestions: int = _safe_int("SUGGESTION_MAX_RESULTS", "2")


@dataclass(frozen=True)
class LookupConfig:
    """How existing bookings are located for reschedule and cancel."""

    approx_window_minutes: int = _safe_int("BOOKING_LOOKUP_WINDOW_MINUTES", "30")


@dataclass(frozen=True)
class ReminderConfig:
    """Reminder email job settings."""

    scan_horizon_hours: int = _safe_int("REMINDER_SCAN_HORIZON_HOURS", "48")
    interval_minutes: int = _safe_int("REMINDER_INTERVAL_MINUTES", "15")
    default_window_hours: int = _safe_int("REMINDER_WINDOW_HOURS", "12")
    default_min_lead_hours: int = _safe_int("REMINDER_MIN_LEAD_HOURS", "18")


@dataclass(frozen=True)
class DatabaseConfig:
    """Relational store settings."""

    url: str = os.getenv("DATABASE_URL", "sqlite:///./bookings.db")
    echo: bool = os.getenv("DATABASE_ECHO", "false").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class DraftConfig:
    """Conversation booking draft retention."""

    ttl_minutes: int = _safe_int("BOOKING_DRAFT_TTL_MINUTES", "120")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    suggestions: SuggestionConfig = field(default_factory=SuggestionConfig)
    lookup: LookupConfig = field(default_factory=LookupConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    drafts: DraftConfig = field(default_factory=DraftConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    app_name: str = os.getenv("APP_NAME", "booking-engine")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if config.calendar.request_timeout_sec <= 0:
        raise ValueError(
            f"CALENDAR_TIMEOUT_SECONDS must be > 0, got {config.calendar.request_timeout_sec}"
        )
    if not 0.0 < config.matching.accept_threshold <= 1.0:
        raise ValueError(
            "SERVICE_MATCH_THRESHOLD must be between 0.0 and 1.0, "
            f"got {config.matching.accept_threshold}"
        )
    if not 0.0 <= config.matching.ambiguity_margin < 1.0:
        raise ValueError(
            "SERVICE_MATCH_MARGIN must be between 0.0 and 1.0, "
            f"got {config.matching.ambiguity_margin}"
        )

    for name, value in [
        ("SERVICE_MATCH_SUGGESTIONS", config.matching.max_suggestions),
        ("SUGGESTION_WINDOW_HOURS", config.suggestions.search_window_hours),
        ("SUGGESTION_MAX_RESULTS", config.suggestions.max_suggestions),
        ("BOOKING_LOOKUP_WINDOW_MINUTES", config.lookup.approx_window_minutes),
        ("REMINDER_SCAN_HORIZON_HOURS", config.reminders.scan_horizon_hours),
        ("REMINDER_INTERVAL_MINUTES", config.reminders.interval_minutes),
        ("REMINDER_WINDOW_HOURS", config.reminders.default_window_hours),
        ("REMINDER_MIN_LEAD_HOURS", config.reminders.default_min_lead_hours),
        ("BOOKING_DRAFT_TTL_MINUTES", config.drafts.ttl_minutes),
    ]:
        if value < 1:
            raise ValueError(f"{name} must be >= 1, got {value}")

    if config.suggestions.max_calendar_probes < 0:
        raise ValueError(
            "SUGGESTION_MAX_CALENDAR_PROBES must be >= 0, "
            f"got {config.suggestions.max_calendar_probes}"
        )
    if not config.database.url:
        raise ValueError("DATABASE_URL must not be empty")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] [%(request_id)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
    logger.info("Configuration loaded for '%s'", config.app_name)
    return config


# Singleton instance
settings = load_config()
