#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
PM Intelligence Store Schema

SQLite schema for the local work-item store. Includes:
- issues: work items mirrored from the source of truth, plus local-only
  workflow/priority columns
- issue_labels / issue_assignees: replaced wholesale on every sync
- dependencies: blocker → blocked edges with a one-way resolved flag
- events: append-only ledger every analytic is derived from
- decisions / outcomes: write-once training signal for prediction
- review_findings: write-once finding dispositions for calibration
- sync_state: last-sync marker per remote resource
- schema_version: applied migrations (mirrors PRAGMA user_version)

The migrate() function applies schema changes incrementally and is
idempotent.

Connection rules:
- All write transactions MUST use BEGIN IMMEDIATE
- PRAGMA busy_timeout=5000 MUST be set on connection open
- WAL mode enables concurrent reads during write transactions
"""

import sqlite3
from pathlib import Path

# Current schema version; increment when adding tables or columns
SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Connection helper
# ---------------------------------------------------------------------------


def open_db(db_path: str | Path) -> sqlite3.Connection:
    """
    Open (or create) the store with required PRAGMAs.

    Sets:
    - journal_mode=WAL: concurrent reads while single writer holds lock
    - busy_timeout=5000: wait on a locked DB for up to 5 seconds
    - foreign_keys=ON: enforce referential integrity
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


# ---------------------------------------------------------------------------
# DDL ordered by dependency (no FK violations on fresh create)
# ---------------------------------------------------------------------------

_CREATE_ISSUES = """
CREATE TABLE IF NOT EXISTS issues (
    number      INTEGER PRIMARY KEY,            -- source-of-truth issue number
    title       TEXT NOT NULL,
    body        TEXT,
    state       TEXT NOT NULL DEFAULT 'open'
                    CHECK(state IN ('open', 'closed')),
    author      TEXT,
    created_at  TEXT,
    updated_at  TEXT,
    closed_at   TEXT,
    -- local-only: never written by sync
    workflow    TEXT NOT NULL DEFAULT 'Backlog'
                    CHECK(workflow IN (
                        'Backlog', 'Ready', 'Active', 'Review', 'Rework', 'Done'
                    )),
    priority    TEXT NOT NULL DEFAULT 'normal'
                    CHECK(priority IN ('critical', 'high', 'normal')),
    synced_at   TEXT
)
"""

_CREATE_ISSUE_LABELS = """
CREATE TABLE IF NOT EXISTS issue_labels (
    issue_number INTEGER NOT NULL REFERENCES issues(number) ON DELETE CASCADE,
    label        TEXT NOT NULL,
    PRIMARY KEY (issue_number, label)
)
"""

_CREATE_ISSUE_ASSIGNEES = """
CREATE TABLE IF NOT EXISTS issue_assignees (
    issue_number INTEGER NOT NULL REFERENCES issues(number) ON DELETE CASCADE,
    login        TEXT NOT NULL,
    PRIMARY KEY (issue_number, login)
)
"""

_CREATE_DEPENDENCIES = """
CREATE TABLE IF NOT EXISTS dependencies (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    blocker_issue   INTEGER NOT NULL REFERENCES issues(number),
    blocked_issue   INTEGER NOT NULL REFERENCES issues(number),
    resolved        INTEGER NOT NULL DEFAULT 0 CHECK(resolved IN (0, 1)),
    created_at      TEXT NOT NULL,
    resolved_at     TEXT,
    CHECK(blocker_issue != blocked_issue),
    UNIQUE(blocker_issue, blocked_issue)
)
"""

_CREATE_EVENTS = """
CREATE TABLE IF NOT EXISTS events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp    TEXT NOT NULL,                 -- ISO-8601 UTC
    event_type   TEXT NOT NULL,                 -- e.g. "workflow_change"
    issue_number INTEGER,
    from_value   TEXT,
    to_value     TEXT,
    actor        TEXT NOT NULL,                 -- "engine", "sync", "human:{name}", agent ID
    metadata     TEXT                           -- JSON blob with additional context
)
"""

_CREATE_DECISIONS = """
CREATE TABLE IF NOT EXISTS decisions (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp     TEXT NOT NULL,
    issue_number  INTEGER,
    area          TEXT,
    decision_type TEXT NOT NULL DEFAULT 'architectural',
    decision      TEXT NOT NULL,
    rationale     TEXT,
    alternatives  TEXT,                         -- JSON array
    files         TEXT                          -- JSON array of referenced paths
)
"""

_CREATE_OUTCOMES = """
CREATE TABLE IF NOT EXISTS outcomes (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp      TEXT NOT NULL,
    issue_number   INTEGER NOT NULL,
    pr_number      INTEGER,
    result         TEXT NOT NULL CHECK(result IN ('merged', 'rework', 'abandoned')),
    review_rounds  INTEGER,
    rework_reasons TEXT,                        -- JSON array
    area           TEXT,
    approach       TEXT,
    lessons        TEXT
)
"""

_CREATE_REVIEW_FINDINGS = """
CREATE TABLE IF NOT EXISTS review_findings (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp     TEXT NOT NULL,
    issue_number  INTEGER NOT NULL,
    pr_number     INTEGER,
    finding_type  TEXT NOT NULL,                -- e.g. "scope_verification"
    severity      TEXT NOT NULL
                      CHECK(severity IN ('blocking', 'non_blocking', 'suggestion')),
    disposition   TEXT NOT NULL
                      CHECK(disposition IN ('accepted', 'dismissed', 'modified', 'deferred')),
    reason        TEXT,
    area          TEXT,
    files         TEXT                          -- JSON array
)
"""

_CREATE_SYNC_STATE = """
CREATE TABLE IF NOT EXISTS sync_state (
    resource    TEXT PRIMARY KEY,               -- e.g. "issues"
    last_sync   TEXT NOT NULL,
    cursor      TEXT
)
"""

_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER PRIMARY KEY,
    applied_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now'))
)
"""

# ---------------------------------------------------------------------------
# Indexes for common queries
# ---------------------------------------------------------------------------

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_issues_workflow ON issues(workflow, state)",
    "CREATE INDEX IF NOT EXISTS idx_deps_blocker ON dependencies(blocker_issue, resolved)",
    "CREATE INDEX IF NOT EXISTS idx_deps_blocked ON dependencies(blocked_issue, resolved)",
    "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_events_issue ON events(issue_number, event_type)",
    "CREATE INDEX IF NOT EXISTS idx_decisions_area ON decisions(area, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_outcomes_issue ON outcomes(issue_number)",
    "CREATE INDEX IF NOT EXISTS idx_findings_timestamp ON review_findings(timestamp)",
    # Partial index: the WIP check only ever looks for the Active issue
    "CREATE INDEX IF NOT EXISTS idx_issues_active ON issues(number) WHERE workflow = 'Active'",
]

# All DDL in dependency order
SCHEMA_STATEMENTS: list[str] = [
    _CREATE_ISSUES,
    _CREATE_ISSUE_LABELS,
    _CREATE_ISSUE_ASSIGNEES,
    _CREATE_DEPENDENCIES,
    _CREATE_EVENTS,
    _CREATE_DECISIONS,
    _CREATE_OUTCOMES,
    _CREATE_REVIEW_FINDINGS,
    _CREATE_SYNC_STATE,
    _CREATE_SCHEMA_VERSION,
    *_INDEXES,
]


# ---------------------------------------------------------------------------
# Migration runner
# ---------------------------------------------------------------------------


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Read the current schema version from PRAGMA user_version."""
    return conn.execute("PRAGMA user_version").fetchone()[0]


def set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Write schema version to PRAGMA user_version and the schema_version table."""
    # PRAGMA does not accept bound parameters
    conn.execute(f"PRAGMA user_version = {int(version)}")
    conn.execute(
        "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (version,)
    )


def migrate(conn: sqlite3.Connection) -> None:
    """
    Apply schema migrations incrementally.

    Idempotent — safe to call on an existing database. Uses PRAGMA user_version
    to track which migrations have been applied.

    Version history:
    0 → 1: Initial schema (issues, labels, assignees, dependencies, events,
            decisions, outcomes, review_findings, sync_state, schema_version)
    """
    current = get_schema_version(conn)

    if current < 1:
        for stmt in SCHEMA_STATEMENTS:
            conn.execute(stmt)
        set_schema_version(conn, 1)
        conn.commit()


def create_db(db_path: str | Path) -> sqlite3.Connection:
    """
    Create or open a store, applying all migrations.

    Returns an open connection with WAL mode, busy_timeout=5000,
    and foreign_keys=ON. The caller is responsible for closing it.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = open_db(path)
    migrate(conn)
    return conn
