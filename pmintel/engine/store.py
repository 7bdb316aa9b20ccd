#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Work-Item Store Operations

Issue-level reads and writes on top of the Repository:
- upsert_issue: the sync adapter's only entry point. Overwrites
  source-of-truth fields, never local-only ones (workflow, priority), and
  applies the auto-close path when the source reports the issue closed.
- create_issue / set_priority: explicit local operations.
- get_issue / list_issues / issue_areas: reads.
- update_sync_state / get_last_sync: sync-state marker.
- board_summary: counts, blocked/stale issues and a 0-100 health score.
"""

import logging
import sqlite3
from typing import Any

from . import events
from .events import parse_iso, to_iso
from .models import (
    Event,
    EventType,
    Issue,
    IssueSnapshot,
    Priority,
    SourceState,
    SyncState,
    WorkflowState,
)
from .repository import Repository
from .results import ErrorCode, Failure, Ok, issue_not_found, validation_error
from .workflow import close_from_sync

logger = logging.getLogger(__name__)

# Source-of-truth timestamp columns; stored in canonical UTC form
TIMESTAMP_FIELDS = ("created_at", "updated_at", "closed_at")

# Source-of-truth columns compared to decide whether a sync changed anything
_SOURCE_FIELDS = ("title", "body", "state", "author", "created_at", "updated_at", "closed_at")


# ---------------------------------------------------------------------------
# Sync entry point
# ---------------------------------------------------------------------------


def upsert_issue(repo: Repository, snapshot: IssueSnapshot | dict[str, Any]) -> Ok | Failure:
    """
    Create or refresh an issue from a source-of-truth snapshot.

    - New open issue: created in Backlog. New closed issue: created in Done.
    - Existing issue: source fields, labels and assignees are replaced;
      workflow and priority are left alone, except that a closed snapshot
      for an issue not yet Done triggers close_from_sync().
    - Replaying an identical snapshot writes no events.
    - Timestamps are stored in canonical UTC form; one that does not parse
      fails with invalid_value naming the field.

    Returns:
        Ok({"issue_number", "created", "changed", "auto_closed", "resolved_edges"})
    """
    if isinstance(snapshot, dict):
        snapshot = IssueSnapshot(**snapshot)
    if snapshot.state not in SourceState.ALL:
        return validation_error(
            ErrorCode.INVALID_VALUE,
            f"Issue #{snapshot.number}: source state must be one of "
            f"{sorted(SourceState.ALL)}, got '{snapshot.state}'",
            field="state",
        )

    timestamps: dict[str, str | None] = {}
    for name in TIMESTAMP_FIELDS:
        text = getattr(snapshot, name)
        if text is None:
            timestamps[name] = None
            continue
        try:
            timestamps[name] = to_iso(parse_iso(text))
        except (AttributeError, ValueError):
            return validation_error(
                ErrorCode.INVALID_VALUE,
                f"Issue #{snapshot.number}: {name} must be an ISO-8601 timestamp, "
                f"got {text!r}",
                field=name,
            )

    labels = sorted(set(snapshot.labels))
    assignees = sorted(set(snapshot.assignees))
    values = {
        "number": snapshot.number,
        "title": snapshot.title,
        "body": snapshot.body,
        "state": snapshot.state,
        "author": snapshot.author,
        **timestamps,
    }

    auto_closed = False
    resolved: list[int] = []
    with repo.transaction() as conn:
        now = repo.now_iso()
        existing = conn.execute(
            "SELECT * FROM issues WHERE number = ?", (snapshot.number,)
        ).fetchone()

        if existing is None:
            created = True
            changed = True
            workflow = (
                WorkflowState.DONE if snapshot.state == SourceState.CLOSED
                else WorkflowState.BACKLOG
            )
            conn.execute(
                """
                INSERT INTO issues (number, title, body, state, author, created_at,
                                    updated_at, closed_at, workflow, synced_at)
                VALUES (:number, :title, :body, :state, :author, :created_at,
                        :updated_at, :closed_at, :workflow, :synced_at)
                """,
                {**values, "workflow": workflow, "synced_at": now},
            )
            events.append(
                conn,
                now,
                EventType.ISSUE_CREATED,
                "sync",
                issue_number=snapshot.number,
                to_value=workflow,
                metadata={"state": snapshot.state, "labels": labels},
            )
        else:
            created = False
            changed = (
                any(existing[name] != values[name] for name in _SOURCE_FIELDS)
                or _labels(conn, snapshot.number) != labels
                or _assignees(conn, snapshot.number) != assignees
            )
            conn.execute(
                """
                UPDATE issues SET
                    title = :title, body = :body, state = :state, author = :author,
                    created_at = :created_at, updated_at = :updated_at,
                    closed_at = :closed_at, synced_at = :synced_at
                WHERE number = :number
                """,
                {**values, "synced_at": now},
            )
            if changed:
                events.append(
                    conn,
                    now,
                    EventType.ISSUE_SYNCED,
                    "sync",
                    issue_number=snapshot.number,
                    from_value=existing["state"],
                    to_value=snapshot.state,
                )
            if (
                snapshot.state == SourceState.CLOSED
                and existing["workflow"] != WorkflowState.DONE
            ):
                resolved = close_from_sync(conn, now, snapshot.number, existing["workflow"])
                auto_closed = True

        _replace_children(conn, "issue_labels", "label", snapshot.number, labels)
        _replace_children(conn, "issue_assignees", "login", snapshot.number, assignees)

    logger.info(
        "Upserted issue #%s (created=%s, changed=%s, auto_closed=%s)",
        snapshot.number, created, changed, auto_closed,
    )
    return Ok({
        "issue_number": snapshot.number,
        "created": created,
        "changed": changed,
        "auto_closed": auto_closed,
        "resolved_edges": resolved,
    })


def _replace_children(
    conn: sqlite3.Connection,
    table: str,
    column: str,
    issue_number: int,
    values: list[str],
) -> None:
    conn.execute(f"DELETE FROM {table} WHERE issue_number = ?", (issue_number,))
    conn.executemany(
        f"INSERT INTO {table} (issue_number, {column}) VALUES (?, ?)",
        [(issue_number, value) for value in values],
    )


def _labels(conn: sqlite3.Connection, issue_number: int) -> list[str]:
    return [
        row[0]
        for row in conn.execute(
            "SELECT label FROM issue_labels WHERE issue_number = ? ORDER BY label",
            (issue_number,),
        )
    ]


def _assignees(conn: sqlite3.Connection, issue_number: int) -> list[str]:
    return [
        row[0]
        for row in conn.execute(
            "SELECT login FROM issue_assignees WHERE issue_number = ? ORDER BY login",
            (issue_number,),
        )
    ]


# ---------------------------------------------------------------------------
# Local operations
# ---------------------------------------------------------------------------


def create_issue(
    repo: Repository,
    number: int,
    title: str,
    body: str | None = None,
    labels: list[str] | tuple[str, ...] = (),
    priority: str = Priority.NORMAL,
    actor: str = "engine",
) -> Ok | Failure:
    """Create an issue locally (no source-of-truth snapshot yet). Starts in Backlog."""
    if priority not in Priority.ALL:
        return _bad_priority(number, priority)

    with repo.transaction() as conn:
        if conn.execute("SELECT 1 FROM issues WHERE number = ?", (number,)).fetchone():
            return validation_error(
                ErrorCode.DUPLICATE_ISSUE,
                f"Issue #{number} already exists",
                issue_number=number,
            )
        now = repo.now_iso()
        conn.execute(
            """
            INSERT INTO issues (number, title, body, state, created_at, updated_at,
                                workflow, priority)
            VALUES (?, ?, ?, 'open', ?, ?, 'Backlog', ?)
            """,
            (number, title, body, now, now, priority),
        )
        _replace_children(conn, "issue_labels", "label", number, sorted(set(labels)))
        events.append(
            conn,
            now,
            EventType.ISSUE_CREATED,
            actor,
            issue_number=number,
            to_value=WorkflowState.BACKLOG,
            metadata={"state": SourceState.OPEN, "labels": sorted(set(labels))},
        )

    logger.info("Created issue #%s locally", number)
    return Ok({"issue_number": number, "created": True})


def set_priority(
    repo: Repository,
    issue_number: int,
    priority: str,
    actor: str = "engine",
) -> Ok | Failure:
    """Change an issue's local-only priority and record a priority_change event."""
    if priority not in Priority.ALL:
        return _bad_priority(issue_number, priority)

    with repo.transaction() as conn:
        row = conn.execute(
            "SELECT priority FROM issues WHERE number = ?", (issue_number,)
        ).fetchone()
        if row is None:
            return issue_not_found(issue_number)
        previous = row["priority"]
        if previous != priority:
            conn.execute(
                "UPDATE issues SET priority = ? WHERE number = ?", (priority, issue_number)
            )
            events.append(
                conn,
                repo.now_iso(),
                EventType.PRIORITY_CHANGE,
                actor,
                issue_number=issue_number,
                from_value=previous,
                to_value=priority,
            )

    return Ok({"issue_number": issue_number, "from": previous, "to": priority})


def _bad_priority(number: int, priority: str) -> Failure:
    return validation_error(
        ErrorCode.INVALID_VALUE,
        f"Issue #{number}: priority must be one of {sorted(Priority.ALL)}, got '{priority}'",
        field="priority",
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_issue(repo: Repository, issue_number: int) -> Issue | None:
    conn = repo.conn
    row = conn.execute("SELECT * FROM issues WHERE number = ?", (issue_number,)).fetchone()
    if row is None:
        return None
    return Issue.from_row(row, _labels(conn, issue_number), _assignees(conn, issue_number))


def list_issues(
    repo: Repository,
    workflow: str | None = None,
    state: str | None = None,
) -> list[Issue]:
    """List issues (with labels and assignees), ordered by number."""
    conn = repo.conn
    conditions: list[str] = []
    params: list[Any] = []
    if workflow is not None:
        conditions.append("workflow = ?")
        params.append(workflow)
    if state is not None:
        conditions.append("state = ?")
        params.append(state)
    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""

    rows = conn.execute(
        f"SELECT * FROM issues {where_clause} ORDER BY number", params
    ).fetchall()

    labels: dict[int, list[str]] = {}
    for row in conn.execute("SELECT issue_number, label FROM issue_labels ORDER BY label"):
        labels.setdefault(row[0], []).append(row[1])
    assignees: dict[int, list[str]] = {}
    for row in conn.execute("SELECT issue_number, login FROM issue_assignees ORDER BY login"):
        assignees.setdefault(row[0], []).append(row[1])

    return [
        Issue.from_row(row, labels.get(row["number"]), assignees.get(row["number"]))
        for row in rows
    ]


def issue_areas(repo: Repository) -> dict[int, str]:
    """
    Map issue number → area.

    Precedence: a label carrying the configured area prefix (e.g.
    "area:graph" → "graph"), then the issue's most recent outcome area, then
    its most recent decision area. Issues with none are absent.
    """
    conn = repo.conn
    prefix = repo.config.area_label_prefix
    areas: dict[int, str] = {}

    # Lowest-precedence sources first; later assignments win
    for table in ("decisions", "outcomes"):
        for row in conn.execute(
            f"""
            SELECT issue_number, area FROM {table}
            WHERE issue_number IS NOT NULL AND area IS NOT NULL
            ORDER BY timestamp ASC, id ASC
            """
        ):
            areas[row["issue_number"]] = row["area"]

    if prefix:
        for row in conn.execute(
            "SELECT issue_number, label FROM issue_labels ORDER BY label DESC"
        ):
            if row["label"].startswith(prefix):
                area = row["label"][len(prefix):].strip()
                if area:
                    areas[row["issue_number"]] = area
    return areas


def issue_area(repo: Repository, issue_number: int) -> str | None:
    return issue_areas(repo).get(issue_number)


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


def update_sync_state(repo: Repository, resource: str, cursor: str | None = None) -> SyncState:
    """Record that `resource` was synced now."""
    now = repo.now_iso()
    with repo.transaction() as conn:
        conn.execute(
            """
            INSERT INTO sync_state (resource, last_sync, cursor)
            VALUES (?, ?, ?)
            ON CONFLICT(resource) DO UPDATE SET
                last_sync = excluded.last_sync,
                cursor    = excluded.cursor
            """,
            (resource, now, cursor),
        )
    return SyncState(resource=resource, last_sync=now, cursor=cursor)


def get_last_sync(repo: Repository, resource: str) -> SyncState | None:
    row = repo.conn.execute(
        "SELECT resource, last_sync, cursor FROM sync_state WHERE resource = ?",
        (resource,),
    ).fetchone()
    return SyncState.from_row(row) if row else None


# ---------------------------------------------------------------------------
# Board summary
# ---------------------------------------------------------------------------


def last_transition_times(repo: Repository) -> dict[int, str]:
    """Issue number → timestamp of its most recent workflow_change event."""
    rows = repo.conn.execute(
        """
        SELECT issue_number, MAX(timestamp) AS ts FROM events
        WHERE event_type = 'workflow_change' AND issue_number IS NOT NULL
        GROUP BY issue_number
        """
    ).fetchall()
    return {row["issue_number"]: row["ts"] for row in rows}


def board_summary(repo: Repository) -> dict[str, Any]:
    """
    Summarize open issues: counts, blocked and stale lists, health score.

    Health score starts at 100 and subtracts:
    - 15 per Active issue beyond one
    - 10 per Rework issue
    - 5 per Review issue beyond three
    - 10 if more than half of the open issues sit in Backlog
    - 5 per blocked issue (capped at 20)
    """
    conn = repo.conn
    open_issues = list_issues(repo, state=SourceState.OPEN)
    by_number = {issue.number: issue for issue in open_issues}

    by_workflow: dict[str, int] = {}
    by_priority: dict[str, int] = {}
    for issue in open_issues:
        by_workflow[issue.workflow] = by_workflow.get(issue.workflow, 0) + 1
        by_priority[issue.priority] = by_priority.get(issue.priority, 0) + 1

    blocked_rows = conn.execute(
        """
        SELECT d.blocked_issue, d.blocker_issue
        FROM dependencies d
        JOIN issues blocker ON blocker.number = d.blocker_issue
        WHERE d.resolved = 0
          AND blocker.workflow != 'Done'
          AND blocker.state = 'open'
        ORDER BY d.blocked_issue, d.blocker_issue
        """
    ).fetchall()
    blocked: dict[int, list[int]] = {}
    for row in blocked_rows:
        if row["blocked_issue"] in by_number:
            blocked.setdefault(row["blocked_issue"], []).append(row["blocker_issue"])

    now = repo.now()
    last_moves = last_transition_times(repo)
    stale: list[dict[str, Any]] = []
    for issue in open_issues:
        threshold = repo.config.stale_days.get(issue.workflow)
        moved_at = last_moves.get(issue.number)
        if threshold is None or moved_at is None:
            continue
        days = (now - parse_iso(moved_at)).total_seconds() / 86400
        if days > threshold:
            stale.append({
                "issue_number": issue.number,
                "title": issue.title,
                "workflow": issue.workflow,
                "days_in_state": round(days, 1),
                "threshold_days": threshold,
            })

    total = len(open_issues)
    health = 100
    active = by_workflow.get(WorkflowState.ACTIVE, 0)
    if active > 1:
        health -= (active - 1) * 15
    health -= by_workflow.get(WorkflowState.REWORK, 0) * 10
    review = by_workflow.get(WorkflowState.REVIEW, 0)
    if review > 3:
        health -= (review - 3) * 5
    if total > 0 and by_workflow.get(WorkflowState.BACKLOG, 0) / total > 0.5:
        health -= 10
    if blocked:
        health -= min(len(blocked) * 5, 20)
    health = max(0, min(100, health))

    def _brief(workflow: str) -> list[dict[str, Any]]:
        return [
            {"number": i.number, "title": i.title, "priority": i.priority}
            for i in open_issues if i.workflow == workflow
        ]

    return {
        "total": total,
        "by_workflow": by_workflow,
        "by_priority": by_priority,
        "active": _brief(WorkflowState.ACTIVE),
        "review": _brief(WorkflowState.REVIEW),
        "rework": _brief(WorkflowState.REWORK),
        "blocked": [
            {"number": n, "title": by_number[n].title, "blocked_by": blockers}
            for n, blockers in sorted(blocked.items())
        ],
        "stale": stale,
        "health_score": health,
    }


def query_events(
    repo: Repository,
    issue_number: int | None = None,
    event_type: str | None = None,
    since: str | None = None,
    until: str | None = None,
    limit: int | None = None,
) -> list[Event]:
    return events.query_events(
        repo.conn,
        issue_number=issue_number,
        event_type=event_type,
        since=since,
        until=until,
        limit=limit,
    )
