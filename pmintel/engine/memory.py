#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Project Memory: Decisions and Outcomes

Write-once records that feed the predictive and calibration engines.
There is no update or delete path. Each record is paired with a ledger event
in the same transaction.
"""

import json
import logging
from typing import Any

from . import events
from .models import Decision, EventType, Outcome, OutcomeResult
from .repository import Repository
from .results import ErrorCode, Failure, Ok, issue_not_found, validation_error

logger = logging.getLogger(__name__)


def record_decision(
    repo: Repository,
    decision: str,
    issue_number: int | None = None,
    area: str | None = None,
    decision_type: str = "architectural",
    rationale: str | None = None,
    alternatives: list[str] | tuple[str, ...] = (),
    files: list[str] | tuple[str, ...] = (),
    actor: str = "engine",
) -> Ok | Failure:
    """Append a design decision. Returns Ok(Decision)."""
    if not decision or not decision.strip():
        return validation_error(
            ErrorCode.INVALID_VALUE, "Decision text must not be empty", field="decision"
        )

    with repo.transaction() as conn:
        if issue_number is not None and conn.execute(
            "SELECT 1 FROM issues WHERE number = ?", (issue_number,)
        ).fetchone() is None:
            return issue_not_found(issue_number)

        now = repo.now_iso()
        cursor = conn.execute(
            """
            INSERT INTO decisions (timestamp, issue_number, area, decision_type,
                                   decision, rationale, alternatives, files)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                now, issue_number, area, decision_type, decision, rationale,
                json.dumps(list(alternatives)), json.dumps(list(files)),
            ),
        )
        events.append(
            conn,
            now,
            EventType.DECISION_RECORDED,
            actor,
            issue_number=issue_number,
            to_value=decision_type,
            metadata={"decision_id": cursor.lastrowid, "area": area},
        )
        row = conn.execute(
            "SELECT * FROM decisions WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()

    logger.info("Recorded %s decision %s (issue=%s)", decision_type, row["id"], issue_number)
    return Ok(Decision.from_row(row))


def record_outcome(
    repo: Repository,
    issue_number: int,
    result: str,
    pr_number: int | None = None,
    review_rounds: int | None = None,
    rework_reasons: list[str] | tuple[str, ...] = (),
    area: str | None = None,
    approach: str | None = None,
    lessons: str | None = None,
    actor: str = "engine",
) -> Ok | Failure:
    """Append how a piece of work ended. Returns Ok(Outcome)."""
    if result not in OutcomeResult.ALL:
        return validation_error(
            ErrorCode.INVALID_VALUE,
            f"Outcome result must be one of {sorted(OutcomeResult.ALL)}, got '{result}'",
            field="result",
        )
    if review_rounds is not None and review_rounds < 0:
        return validation_error(
            ErrorCode.INVALID_VALUE,
            f"review_rounds must be >= 0, got {review_rounds}",
            field="review_rounds",
        )

    with repo.transaction() as conn:
        if conn.execute(
            "SELECT 1 FROM issues WHERE number = ?", (issue_number,)
        ).fetchone() is None:
            return issue_not_found(issue_number)

        now = repo.now_iso()
        cursor = conn.execute(
            """
            INSERT INTO outcomes (timestamp, issue_number, pr_number, result,
                                  review_rounds, rework_reasons, area, approach, lessons)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                now, issue_number, pr_number, result, review_rounds,
                json.dumps(list(rework_reasons)), area, approach, lessons,
            ),
        )
        events.append(
            conn,
            now,
            EventType.OUTCOME_RECORDED,
            actor,
            issue_number=issue_number,
            to_value=result,
            metadata={"outcome_id": cursor.lastrowid, "pr_number": pr_number, "area": area},
        )
        row = conn.execute(
            "SELECT * FROM outcomes WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()

    logger.info("Recorded outcome %s for issue #%s", result, issue_number)
    return Ok(Outcome.from_row(row))


def _filters(
    issue_number: int | None,
    area: str | None,
    since: str | None,
) -> tuple[str, list[Any]]:
    conditions: list[str] = []
    params: list[Any] = []
    if issue_number is not None:
        conditions.append("issue_number = ?")
        params.append(issue_number)
    if area is not None:
        conditions.append("area = ?")
        params.append(area)
    if since is not None:
        conditions.append("timestamp >= ?")
        params.append(since)
    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    return where_clause, params


def list_decisions(
    repo: Repository,
    issue_number: int | None = None,
    area: str | None = None,
    since: str | None = None,
) -> list[Decision]:
    """Decisions oldest-first, optionally filtered."""
    where_clause, params = _filters(issue_number, area, since)
    rows = repo.conn.execute(
        f"SELECT * FROM decisions {where_clause} ORDER BY timestamp ASC, id ASC", params
    ).fetchall()
    return [Decision.from_row(row) for row in rows]


def list_outcomes(
    repo: Repository,
    issue_number: int | None = None,
    area: str | None = None,
    since: str | None = None,
) -> list[Outcome]:
    """Outcomes oldest-first, optionally filtered."""
    where_clause, params = _filters(issue_number, area, since)
    rows = repo.conn.execute(
        f"SELECT * FROM outcomes {where_clause} ORDER BY timestamp ASC, id ASC", params
    ).fetchall()
    return [Outcome.from_row(row) for row in rows]
