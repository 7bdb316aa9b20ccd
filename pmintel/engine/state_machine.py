#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Issue Workflow State Machine

Defines valid workflow transitions and validates them.

State diagram:
    Backlog → Ready     (groomed, ready to start)
    Ready   → Active    (work begins; subject to the WIP limit)
    Active  → Review    (work submitted)
    Active  → Ready     (abandon: put back in the queue)
    Active  → Backlog   (deprioritize)
    Review  → Rework    (review requested changes)
    Review  → Done      (accepted)
    Rework  → Review    (changes resubmitted)

Done is terminal. The sync auto-close path is the only way to reach Done
from any other state, and it bypasses this table on purpose (see
workflow.close_from_sync).

check_transition() returns a Failure instead of raising, so the workflow
engine can hand it straight back to the caller.
"""

from .models import WorkflowState
from .results import ErrorCode, Failure, validation_error


# ---------------------------------------------------------------------------
# Valid transitions: {from_state: set(to_states)}
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    WorkflowState.BACKLOG: frozenset([
        WorkflowState.READY,
    ]),
    WorkflowState.READY: frozenset([
        WorkflowState.ACTIVE,
    ]),
    WorkflowState.ACTIVE: frozenset([
        WorkflowState.REVIEW,
        WorkflowState.READY,    # abandon
        WorkflowState.BACKLOG,  # deprioritize
    ]),
    WorkflowState.REVIEW: frozenset([
        WorkflowState.REWORK,
        WorkflowState.DONE,
    ]),
    WorkflowState.REWORK: frozenset([
        WorkflowState.REVIEW,
    ]),
    # Terminal state: no outgoing transitions
    WorkflowState.DONE: frozenset(),
}


# ---------------------------------------------------------------------------
# State machine functions
# ---------------------------------------------------------------------------


def check_transition(
    from_state: str,
    to_state: str,
    issue_number: int | None = None,
) -> Failure | None:
    """
    Validate that a workflow transition is allowed.

    Returns:
        None if the transition is valid, otherwise a validation Failure with
        code unknown_state or invalid_transition.
    """
    for state in (from_state, to_state):
        if state not in WorkflowState.ALL:
            return validation_error(
                ErrorCode.UNKNOWN_STATE,
                f"Unknown workflow state: '{state}'. "
                f"Valid states: {list(WorkflowState.ORDERED)}",
                state=state,
            )

    allowed = VALID_TRANSITIONS.get(from_state, frozenset())
    if to_state not in allowed:
        issue_info = f" for issue #{issue_number}" if issue_number is not None else ""
        allowed_text = ", ".join(s for s in WorkflowState.ORDERED if s in allowed) or "none"
        return validation_error(
            ErrorCode.INVALID_TRANSITION,
            f"Invalid transition{issue_info}: {from_state} → {to_state}. "
            f"Allowed from {from_state}: {allowed_text}",
            from_state=from_state,
            to_state=to_state,
            allowed=sorted(allowed),
        )
    return None


def can_transition(from_state: str, to_state: str) -> bool:
    """Return True if the transition from_state → to_state is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, frozenset())


def is_terminal(state: str) -> bool:
    """Return True if the state is terminal (no further transitions possible)."""
    return state in WorkflowState.TERMINAL


def available_transitions(from_state: str) -> frozenset[str]:
    """Return the set of valid destination states from from_state."""
    return VALID_TRANSITIONS.get(from_state, frozenset())
