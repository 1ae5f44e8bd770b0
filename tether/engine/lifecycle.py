"""Query lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> PROCESSING ──> RUNNING ──┬──> COMPLETED ─────────┐
               │                      ├──> ABORTED ───────────┤
               │                      ├──> ASK_USER_PENDING ──┼──> IDLE
               │                      └──> FAILED ────────────┤
               └──> ABORTED / FAILED (before the provider) ───┘
"""
from __future__ import annotations

from enum import Enum


class QueryState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ASK_USER_PENDING = "ask_user_pending"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    QueryState.COMPLETED,
    QueryState.ABORTED,
    QueryState.ASK_USER_PENDING,
    QueryState.FAILED,
})

VALID_TRANSITIONS: dict[QueryState, set[QueryState]] = {
    QueryState.IDLE: {QueryState.PROCESSING},
    QueryState.PROCESSING: {
        QueryState.RUNNING,
        QueryState.ABORTED,
        QueryState.FAILED,
        QueryState.IDLE,
    },
    QueryState.RUNNING: {
        QueryState.COMPLETED,
        QueryState.ABORTED,
        QueryState.ASK_USER_PENDING,
        QueryState.FAILED,
    },
    QueryState.COMPLETED: {QueryState.IDLE},
    QueryState.ABORTED: {QueryState.IDLE},
    QueryState.ASK_USER_PENDING: {QueryState.IDLE},
    QueryState.FAILED: {QueryState.IDLE},
}


def validate_transition(current: QueryState, target: QueryState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
