"""
Clearing - Token State Machine.

============================================================
PURPOSE
============================================================
Manages a clearing token's lifecycle with strict transitions.

STATE MACHINE:

    PENDING ──────► PAID ──────► EXECUTING ──────► COMPLETED
       │              │              │
       │ expiry       │ dispatch     │ reported
       │              │ rejected /   │ failure
       ▼              ▼ timed out    ▼
     FAILED         FAILED         FAILED

INVARIANTS:
- Terminal states are final
- No transition skips a state
- PENDING -> PAID only on a verified payment
- An expired PENDING token is never resurrected
- All transitions are logged and recorded in history

============================================================
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field

from core.clock import ClockProtocol, SystemClock

from .types import ClearingState, FailureReason


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[ClearingState, Set[ClearingState]] = {
    ClearingState.PENDING: {
        ClearingState.PAID,
        ClearingState.FAILED,
    },
    ClearingState.PAID: {
        ClearingState.EXECUTING,
        ClearingState.FAILED,
    },
    ClearingState.EXECUTING: {
        ClearingState.COMPLETED,
        ClearingState.FAILED,
    },
    # COMPLETED and FAILED are final
    ClearingState.COMPLETED: set(),
    ClearingState.FAILED: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """One recorded move of a clearing token between states."""

    token: str
    from_state: ClearingState
    to_state: ClearingState
    timestamp: datetime
    reason: str = ""
    failure_reason: Optional[FailureReason] = None
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """Checks transitions against VALID_TRANSITIONS."""

    @staticmethod
    def can_transition(
        from_state: ClearingState,
        to_state: ClearingState,
    ) -> Tuple[bool, str]:
        """Return (allowed, explanation) for moving from_state to to_state."""
        if from_state == to_state:
            return True, "already there"

        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "permitted"

        if from_state.is_terminal():
            return False, f"{from_state.value} is final"

        return False, f"{from_state.value} cannot reach {to_state.value} directly"


# ============================================================
# TOKEN STATE MACHINE
# ============================================================

class ClearingStateMachine:
    """
    State machine for one clearing token.

    Listeners run synchronously after each transition. A failing
    listener is logged and never affects the transition.
    """

    def __init__(self, token: str, clock: Optional[ClockProtocol] = None):
        self._token = token
        self._clock = clock or SystemClock()
        self._state = ClearingState.PENDING
        self._failure_reason: Optional[FailureReason] = None
        self._updated_at = self._clock.now()
        self._events: List[StateTransitionEvent] = []
        self._observers: List[Callable[[StateTransitionEvent], None]] = []

    @property
    def token(self) -> str:
        return self._token

    @property
    def current_state(self) -> ClearingState:
        return self._state

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        return self._failure_reason

    @property
    def updated_at(self) -> datetime:
        return self._updated_at

    @property
    def history(self) -> List[StateTransitionEvent]:
        return list(self._events)

    def states_visited(self) -> Tuple[str, ...]:
        states = [ClearingState.PENDING.value]
        states.extend(event.to_state.value for event in self._events)
        return tuple(states)

    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        self._observers.append(listener)

    def can_transition_to(self, target_state: ClearingState) -> Tuple[bool, str]:
        return TransitionGuard.can_transition(self._state, target_state)

    def transition_to(
        self,
        target_state: ClearingState,
        reason: str = "",
        failure_reason: Optional[FailureReason] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[StateTransitionEvent]:
        """
        Move the token to target_state and record the event.

        Returns None without recording anything when the token is
        already in target_state. Raises ValueError for a move the
        transition table does not permit.
        """
        allowed, why = self.can_transition_to(target_state)
        if not allowed:
            raise ValueError(f"Clearing {self._token}: {why}")

        if self._state == target_state:
            return None

        event = StateTransitionEvent(
            self._token,
            self._state,
            target_state,
            self._clock.now(),
            reason,
            failure_reason,
            dict(details or {}),
        )

        self._state = target_state
        self._updated_at = event.timestamp
        if target_state == ClearingState.FAILED:
            self._failure_reason = failure_reason or FailureReason.EXECUTION_FAILED
            event.failure_reason = self._failure_reason

        self._events.append(event)

        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.error(f"[{self._token}] transition observer raised: {e}")

        logger.info(
            f"Clearing {self._token}: "
            f"{event.from_state.value} -> {event.to_state.value} ({reason})"
        )

        return event

    # --------------------------------------------------------
    # LIFECYCLE SHORTCUTS
    # --------------------------------------------------------

    def mark_paid(self, tx_ref: str) -> Optional[StateTransitionEvent]:
        return self.transition_to(
            ClearingState.PAID, "Payment verified", details={"tx_hash": tx_ref}
        )

    def mark_executing(self) -> Optional[StateTransitionEvent]:
        return self.transition_to(ClearingState.EXECUTING, "Dispatch accepted")

    def mark_completed(self, reason: str = "Clearing complete") -> Optional[StateTransitionEvent]:
        return self.transition_to(ClearingState.COMPLETED, reason)

    def mark_failed(
        self,
        failure_reason: FailureReason,
        reason: str = "Clearing failed",
        error: Optional[str] = None,
    ) -> Optional[StateTransitionEvent]:
        extra = {"error": error} if error else None
        return self.transition_to(ClearingState.FAILED, reason, failure_reason, extra)

    def is_terminal(self) -> bool:
        return self._state.is_terminal()


__all__ = [
    "VALID_TRANSITIONS",
    "StateTransitionEvent",
    "TransitionGuard",
    "ClearingStateMachine",
]
