"""
Booking drafts collected across conversation turns.

The conversation layer gathers booking details a few at a time. Drafts
are keyed by conversation id and expire after a fixed TTL, so a store
shared by several service instances (Redis, a JSON column on the
conversation row) can implement the same contract.

Usage:
    store = BookingDraftStore()
    store.merge("conv-1", {"name": "Ana", "email": "ana@example.com"})
    draft = store.load("conv-1")
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from booking_engine.config import settings
from booking_engine.schemas.booking_schema import CreateBookingRequest

logger = logging.getLogger(__name__)

BASE_DRAFT_FIELDS: tuple[str, ...] = ("name", "email", "phone", "service", "datetime")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BookingDraft:
    """Partially collected booking details for one conversation."""

    # Declared ahead of the "datetime" field, which shadows the type below it
    updated_at: Optional[datetime] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    service: Optional[str] = None
    datetime: Optional[str] = None
    custom_fields: dict[str, str] = field(default_factory=dict)

    def missing_fields(self, required: Iterable[str]) -> list[str]:
        missing = []
        for name in required:
            if name in BASE_DRAFT_FIELDS:
                value = getattr(self, name)
            else:
                value = self.custom_fields.get(name)
            if not value:
                missing.append(name)
        return missing

    def to_request(self) -> CreateBookingRequest:
        return CreateBookingRequest(
            name=self.name,
            email=self.email,
            phone=self.phone,
            service=self.service,
            datetime=self.datetime,
            custom_fields=dict(self.custom_fields),
        )


class BookingDraftStore:
    """In-process draft store with explicit per-entry expiry."""

    def __init__(
        self,
        ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._ttl = ttl or timedelta(minutes=settings.drafts.ttl_minutes)
        self._clock = clock
        self._drafts: dict[str, BookingDraft] = {}

    def _is_expired(self, draft: BookingDraft) -> bool:
        return draft.updated_at is None or self._clock() - draft.updated_at >= self._ttl

    def load(self, conversation_id: str) -> Optional[BookingDraft]:
        """Return a copy of the draft, or None when absent or expired."""
        draft = self._drafts.get(conversation_id)
        if draft is None:
            return None
        if self._is_expired(draft):
            del self._drafts[conversation_id]
            logger.debug("Draft expired for conversation %s", conversation_id)
            return None
        return replace(draft, custom_fields=dict(draft.custom_fields))

    def merge(
        self,
        conversation_id: str,
        args: dict[str, Any],
        custom_field_names: Iterable[str] = (),
    ) -> BookingDraft:
        """Fold non-blank values from ``args`` into the draft and refresh its TTL."""
        draft = self.load(conversation_id) or BookingDraft()

        for name in BASE_DRAFT_FIELDS:
            value = args.get(name)
            if isinstance(value, str) and value.strip():
                setattr(draft, name, value.strip())

        for name in custom_field_names:
            value = args.get(name)
            if isinstance(value, str) and value.strip():
                draft.custom_fields[name] = value.strip()

        draft.updated_at = self._clock()
        self._drafts[conversation_id] = draft
        return replace(draft, custom_fields=dict(draft.custom_fields))

    def clear(self, conversation_id: str) -> None:
        self._drafts.pop(conversation_id, None)

    def purge_expired(self) -> int:
        """Drop every expired draft; returns how many were removed."""
        expired = [cid for cid, d in self._drafts.items() if self._is_expired(d)]
        for cid in expired:
            del self._drafts[cid]
        if expired:
            logger.info("Purged %d expired booking draft(s)", len(expired))
        return len(expired)
