"""
Finite state machine for a single booking operation.

Create and update walk the full gate sequence:

    VALIDATING -> SERVICE_RESOLVED -> TEMPORAL_OK -> CAPACITY_OK
        -> CALENDAR_MUTATED -> PERSISTED -> NOTIFIED

Cancel skips the service and temporal gates and goes straight from
VALIDATING to the calendar delete. Any non-terminal state can exit to
REJECTED. A create whose row fails to persist after the calendar write
still ends in NOTIFIED, because the calendar event is authoritative.

Usage:
    sm = BookingStateMachine(operation="create")
    sm.transition(BookingTrigger.SERVICE_MATCHED)
    assert sm.current_state == BookingState.SERVICE_RESOLVED
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class BookingState(str, Enum):
    """All states a booking operation can be in."""
    VALIDATING = "validating"
    SERVICE_RESOLVED = "service_resolved"
    TEMPORAL_OK = "temporal_ok"
    CAPACITY_OK = "capacity_ok"
    CALENDAR_MUTATED = "calendar_mutated"
    PERSISTED = "persisted"
    NOTIFIED = "notified"
    REJECTED = "rejected"


class BookingTrigger(str, Enum):
    """Events that move an operation forward."""
    SERVICE_MATCHED = "service_matched"
    TEMPORAL_PASSED = "temporal_passed"
    CAPACITY_PASSED = "capacity_passed"
    CALENDAR_WRITTEN = "calendar_written"
    RECORD_SAVED = "record_saved"
    NOTIFICATION_DONE = "notification_done"
    REJECT = "reject"


TERMINAL_STATES = frozenset({BookingState.NOTIFIED, BookingState.REJECTED})


@dataclass
class Transition:
    """A single valid state transition."""
    from_state: BookingState
    to_state: BookingState
    trigger: BookingTrigger


@dataclass
class StateEntry:
    """Recorded history entry for a state visit."""
    state: BookingState
    entered_at: datetime
    trigger: Optional[BookingTrigger] = None
    reason: Optional[str] = None


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current state."""


class BookingStateMachine:
    """Tracks one create/update/cancel through its gates."""

    TRANSITIONS: list[Transition] = [
        # --- Gates ---
        Transition(BookingState.VALIDATING, BookingState.SERVICE_RESOLVED,
                   BookingTrigger.SERVICE_MATCHED),
        Transition(BookingState.SERVICE_RESOLVED, BookingState.TEMPORAL_OK,
                   BookingTrigger.TEMPORAL_PASSED),
        Transition(BookingState.TEMPORAL_OK, BookingState.CAPACITY_OK,
                   BookingTrigger.CAPACITY_PASSED),

        # --- Side effects ---
        Transition(BookingState.CAPACITY_OK, BookingState.CALENDAR_MUTATED,
                   BookingTrigger.CALENDAR_WRITTEN),
        Transition(BookingState.VALIDATING, BookingState.CALENDAR_MUTATED,
                   BookingTrigger.CALENDAR_WRITTEN),
        Transition(BookingState.CALENDAR_MUTATED, BookingState.PERSISTED,
                   BookingTrigger.RECORD_SAVED),

        # --- Completion ---
        Transition(BookingState.PERSISTED, BookingState.NOTIFIED,
                   BookingTrigger.NOTIFICATION_DONE),
        Transition(BookingState.CALENDAR_MUTATED, BookingState.NOTIFIED,
                   BookingTrigger.NOTIFICATION_DONE),
    ]

    def __init__(self, operation: str = "create") -> None:
        self.operation = operation
        self._current_state = BookingState.VALIDATING
        self._history: list[StateEntry] = [
            StateEntry(state=BookingState.VALIDATING, entered_at=datetime.now(timezone.utc))
        ]

    @property
    def current_state(self) -> BookingState:
        return self._current_state

    def transition(self, trigger: BookingTrigger) -> BookingState:
        """
        Execute a state transition.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        if trigger == BookingTrigger.REJECT:
            return self.reject()

        for t in self.TRANSITIONS:
            if t.from_state == self._current_state and t.trigger == trigger:
                return self._enter(t.to_state, trigger)

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_state.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def reject(self, reason: Optional[str] = None) -> BookingState:
        """Exit to REJECTED from any non-terminal state."""
        if self.is_terminal():
            raise InvalidTransitionError(
                f"Cannot reject from terminal state '{self._current_state.value}'"
            )
        return self._enter(BookingState.REJECTED, BookingTrigger.REJECT, reason)

    def _enter(
        self, state: BookingState, trigger: BookingTrigger, reason: Optional[str] = None
    ) -> BookingState:
        old_state = self._current_state
        self._current_state = state
        self._history.append(StateEntry(
            state=state,
            entered_at=datetime.now(timezone.utc),
            trigger=trigger,
            reason=reason,
        ))
        logger.debug(
            "%s: %s -> %s (trigger: %s)",
            self.operation, old_state.value, state.value, trigger.value,
        )
        return state

    def get_valid_triggers(self) -> list[BookingTrigger]:
        """Return all triggers valid from the current state."""
        if self.is_terminal():
            return []
        triggers = [t.trigger for t in self.TRANSITIONS if t.from_state == self._current_state]
        return triggers + [BookingTrigger.REJECT]

    def get_history(self) -> list[StateEntry]:
        return list(self._history)

    def get_state_trace(self) -> list[str]:
        """Return ordered list of state names visited."""
        return [entry.state.value for entry in self._history]

    def is_terminal(self) -> bool:
        return self._current_state in TERMINAL_STATES
