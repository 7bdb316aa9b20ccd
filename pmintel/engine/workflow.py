#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Workflow Engine

Executes workflow transitions on issues. Two paths exist:

1. move_issue() — the interactive path. Validates the transition table and
   the WIP limit, then updates the issue and appends a workflow_change
   event. Precondition checks and the write share one BEGIN IMMEDIATE
   transaction, so two callers can never both observe "no Active issue"
   and both move an issue to Active.

2. close_from_sync() — the non-interactive path used by upsert_issue()
   when the source of truth reports an issue closed. The external close is
   authoritative, so the issue is set to Done directly, bypassing the
   transition table, and the event is recorded with actor "sync".

Reaching Done by either path resolves every dependency edge where the
issue is the blocker, inside the same transaction.
"""

import logging
import sqlite3

from . import events
from .models import EventType, SourceState, WorkflowState
from .repository import Repository
from .results import ErrorCode, Failure, Ok, issue_not_found, validation_error
from .state_machine import check_transition

logger = logging.getLogger(__name__)

SYNC_ACTOR = "sync"
ENGINE_ACTOR = "engine"


# ---------------------------------------------------------------------------
# Interactive transitions
# ---------------------------------------------------------------------------


def move_issue(
    repo: Repository,
    issue_number: int,
    target_state: str,
    actor: str = ENGINE_ACTOR,
) -> Ok | Failure:
    """
    Move an issue to target_state.

    Fails (state unchanged) when:
    - the issue does not exist (not_found / issue_not_found)
    - (current, target) is not in the transition table (invalid_transition)
    - target is Active and the WIP limit is already taken by another
      issue (wip_limit)

    Returns:
        Ok({"issue_number", "from", "to", "resolved_edges"}) on success.
    """
    with repo.transaction() as conn:
        row = conn.execute(
            "SELECT number, title, workflow, state FROM issues WHERE number = ?",
            (issue_number,),
        ).fetchone()
        if row is None:
            return _rejected(issue_not_found(issue_number))

        current = row["workflow"]
        failure = check_transition(current, target_state, issue_number)
        if failure is None and target_state == WorkflowState.ACTIVE:
            failure = _check_wip_limit(conn, issue_number, repo.config.wip_limit)
        if failure is not None:
            return _rejected(failure)

        now = repo.now_iso()
        conn.execute(
            "UPDATE issues SET workflow = ? WHERE number = ?",
            (target_state, issue_number),
        )
        events.append(
            conn,
            now,
            EventType.WORKFLOW_CHANGE,
            actor,
            issue_number=issue_number,
            from_value=current,
            to_value=target_state,
        )

        resolved: list[int] = []
        if target_state == WorkflowState.DONE:
            cursor = conn.execute(
                """
                UPDATE issues SET state = 'closed', closed_at = COALESCE(closed_at, ?)
                WHERE number = ? AND state = 'open'
                """,
                (now, issue_number),
            )
            if cursor.rowcount:
                events.append(
                    conn,
                    now,
                    EventType.ISSUE_CLOSED,
                    actor,
                    issue_number=issue_number,
                    from_value=SourceState.OPEN,
                    to_value=SourceState.CLOSED,
                )
            resolved = resolve_blocker_edges(conn, now, issue_number, actor)

    logger.info(
        "Issue #%s: %s -> %s (actor=%s, resolved=%s)",
        issue_number, current, target_state, actor, resolved,
    )
    return Ok({
        "issue_number": issue_number,
        "from": current,
        "to": target_state,
        "resolved_edges": resolved,
    })


def _check_wip_limit(
    conn: sqlite3.Connection,
    issue_number: int,
    wip_limit: int,
) -> Failure | None:
    """Return a wip_limit Failure if other issues already fill the Active slots."""
    holders = conn.execute(
        """
        SELECT number, title FROM issues
        WHERE workflow = 'Active' AND number != ?
        ORDER BY number
        """,
        (issue_number,),
    ).fetchall()
    if len(holders) < wip_limit:
        return None
    holder = holders[0]
    return validation_error(
        ErrorCode.WIP_LIMIT,
        f'WIP limit: issue #{holder["number"]} "{holder["title"]}" already Active. '
        f"Move it to Review or Done first.",
        active_issues=[h["number"] for h in holders],
        wip_limit=wip_limit,
    )


def _rejected(failure: Failure) -> Failure:
    logger.info("Transition rejected (%s): %s", failure.code, failure.message)
    return failure


# ---------------------------------------------------------------------------
# Sync path
# ---------------------------------------------------------------------------


def close_from_sync(
    conn: sqlite3.Connection,
    now: str,
    issue_number: int,
    current_workflow: str,
) -> list[int]:
    """
    Force an externally closed issue to Done.

    Must be called inside the caller's transaction. Bypasses the transition
    table: the source of truth has already closed the issue.

    Returns:
        Numbers of the issues whose edges were resolved.
    """
    conn.execute(
        "UPDATE issues SET workflow = 'Done' WHERE number = ?", (issue_number,)
    )
    events.append(
        conn,
        now,
        EventType.WORKFLOW_CHANGE,
        SYNC_ACTOR,
        issue_number=issue_number,
        from_value=current_workflow,
        to_value=WorkflowState.DONE,
    )
    events.append(
        conn,
        now,
        EventType.ISSUE_CLOSED,
        SYNC_ACTOR,
        issue_number=issue_number,
        from_value=SourceState.OPEN,
        to_value=SourceState.CLOSED,
    )
    resolved = resolve_blocker_edges(conn, now, issue_number, SYNC_ACTOR)
    logger.info(
        "Issue #%s closed upstream: %s -> Done (sync)", issue_number, current_workflow
    )
    return resolved


# ---------------------------------------------------------------------------
# Dependency side effect
# ---------------------------------------------------------------------------


def resolve_blocker_edges(
    conn: sqlite3.Connection,
    now: str,
    blocker_issue: int,
    actor: str,
) -> list[int]:
    """
    Flip every unresolved edge where blocker_issue is the blocker to resolved.

    Each edge flips exactly once; a dependency_resolved event is appended per
    edge. Does NOT commit.

    Returns:
        The blocked issue numbers whose edge was resolved.
    """
    rows = conn.execute(
        """
        UPDATE dependencies
        SET resolved = 1, resolved_at = ?
        WHERE blocker_issue = ? AND resolved = 0
        RETURNING blocked_issue
        """,
        (now, blocker_issue),
    ).fetchall()
    blocked = sorted(row["blocked_issue"] for row in rows)
    for number in blocked:
        events.append(
            conn,
            now,
            EventType.DEPENDENCY_RESOLVED,
            actor,
            issue_number=number,
            to_value=str(blocker_issue),
            metadata={"blocker": blocker_issue, "blocked": number},
        )
    return blocked

