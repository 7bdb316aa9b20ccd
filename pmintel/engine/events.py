#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Event Ledger Helpers

Every fact the engine learns is appended to the events table. The ledger is
append-only: rows are never updated or deleted, and every analytic in the
engine is derived by replaying it.

Actors:
- "engine" for engine-initiated side effects (dependency resolution)
- "sync" for changes applied from the source of truth
- "human:{name}" or an agent ID for interactive callers

Event types are listed in models.EventType:
- workflow_change     — from/to workflow state
- priority_change     — from/to priority
- issue_created       — first sight of an issue
- issue_closed        — issue reached Done (source state set to closed)
- issue_synced        — source-of-truth fields refreshed
- decision_recorded   — design decision appended
- outcome_recorded    — merge/rework/abandon outcome appended
- review_recorded     — review finding disposition appended
- dependency_added    — blocker → blocked edge created
- dependency_resolved — edge flipped to resolved
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .models import Event


def to_iso(moment: datetime) -> str:
    """Canonical timestamp text: second precision, UTC, explicit offset."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_iso(text: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def append(
    conn: sqlite3.Connection,
    timestamp: str,
    event_type: str,
    actor: str,
    issue_number: int | None = None,
    from_value: str | None = None,
    to_value: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> int:
    """
    Append an event to the ledger.

    This function does NOT commit — the caller must commit as part of the
    enclosing transaction. This keeps events atomic with the state change
    they record.

    Returns:
        The new event's row id.
    """
    metadata_json = json.dumps(metadata) if metadata is not None else None
    cursor = conn.execute(
        """
        INSERT INTO events (timestamp, event_type, issue_number,
                            from_value, to_value, actor, metadata)
        VALUES (:timestamp, :event_type, :issue_number,
                :from_value, :to_value, :actor, :metadata)
        """,
        {
            "timestamp": timestamp,
            "event_type": event_type,
            "issue_number": issue_number,
            "from_value": from_value,
            "to_value": to_value,
            "actor": actor,
            "metadata": metadata_json,
        },
    )
    return cursor.lastrowid


def query_events(
    conn: sqlite3.Connection,
    issue_number: int | None = None,
    event_type: str | None = None,
    since: str | None = None,
    until: str | None = None,
    actor: str | None = None,
    limit: int | None = None,
) -> list[Event]:
    """
    Query the ledger with optional filters.

    All filters are combined with AND. Results are ordered oldest-first
    (timestamp, then id) so callers can replay them directly.

    Args:
        conn: Open database connection
        issue_number: Filter by issue
        event_type: Filter by event type
        since: Inclusive lower bound on timestamp (ISO-8601)
        until: Inclusive upper bound on timestamp (ISO-8601)
        actor: Filter by actor
        limit: Maximum results (default: unlimited)
    """
    conditions: list[str] = []
    params: list[Any] = []

    if issue_number is not None:
        conditions.append("issue_number = ?")
        params.append(issue_number)

    if event_type is not None:
        conditions.append("event_type = ?")
        params.append(event_type)

    if since is not None:
        conditions.append("timestamp >= ?")
        params.append(since)

    if until is not None:
        conditions.append("timestamp <= ?")
        params.append(until)

    if actor is not None:
        conditions.append("actor = ?")
        params.append(actor)

    where_clause = "WHERE " + " AND ".join(conditions) if conditions else ""
    limit_clause = ""
    if limit is not None:
        limit_clause = "LIMIT ?"
        params.append(limit)

    rows = conn.execute(
        f"""
        SELECT id, timestamp, event_type, issue_number, from_value,
               to_value, actor, metadata
        FROM events
        {where_clause}
        ORDER BY timestamp ASC, id ASC
        {limit_clause}
        """,
        params,
    ).fetchall()
    return [Event.from_row(row) for row in rows]
