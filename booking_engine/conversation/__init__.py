from booking_engine.conversation.drafts import BookingDraft, BookingDraftStore
from booking_engine.conversation.state_machine import (
    BookingState,
    BookingStateMachine,
    BookingTrigger,
    InvalidTransitionError,
)

__all__ = [
    "BookingStateMachine",
    "BookingState",
    "BookingTrigger",
    "InvalidTransitionError",
    "BookingDraft",
    "BookingDraftStore",
]
