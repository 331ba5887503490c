"""CLI session state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> STARTING ──> RUNNING ──┬──> COMPLETED ──┐
                │                   ├──> FAILED ─────┼──> TERMINATED
                │                   └──> TIMED_OUT ──┘
                └──> FAILED

    RUNNING ──> TERMINATED  (forced termination: cancel / denial)
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.STARTING,
    },
    SessionState.STARTING: {
        SessionState.RUNNING,
        SessionState.FAILED,
    },
    SessionState.RUNNING: {
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.TIMED_OUT,
        SessionState.TERMINATED,
    },
    SessionState.COMPLETED: {SessionState.TERMINATED},
    SessionState.FAILED: {SessionState.TERMINATED},
    SessionState.TIMED_OUT: {SessionState.TERMINATED},
    SessionState.TERMINATED: set(),
}


def validate_session_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
