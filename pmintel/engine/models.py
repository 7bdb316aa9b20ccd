#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
PM Intelligence Engine Data Models

Typed dataclasses for the entities kept in the work-item store, plus the
status constant classes used by the workflow, memory and calibration layers.
List-valued columns (labels, alternatives, files, rework reasons) are stored
as JSON text and decoded in from_row().

Design note: Fields use Python-native types (str | None, list[str]) rather
than Optional[str], matching the rest of the engine.
"""

import json
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Status constants
# ---------------------------------------------------------------------------

class WorkflowState:
    BACKLOG = "Backlog"
    READY = "Ready"
    ACTIVE = "Active"
    REVIEW = "Review"
    REWORK = "Rework"
    DONE = "Done"

    ALL = frozenset([BACKLOG, READY, ACTIVE, REVIEW, REWORK, DONE])

    # Board column order, also used when reporting per-state metrics
    ORDERED = (BACKLOG, READY, ACTIVE, REVIEW, REWORK, DONE)

    TERMINAL = frozenset([DONE])


class SourceState:
    """Open/closed status owned by the remote source of truth."""
    OPEN = "open"
    CLOSED = "closed"

    ALL = frozenset([OPEN, CLOSED])


class Priority:
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"

    ALL = frozenset([CRITICAL, HIGH, NORMAL])


class EventType:
    WORKFLOW_CHANGE = "workflow_change"
    PRIORITY_CHANGE = "priority_change"
    ISSUE_CREATED = "issue_created"
    ISSUE_CLOSED = "issue_closed"
    ISSUE_SYNCED = "issue_synced"
    DECISION_RECORDED = "decision_recorded"
    OUTCOME_RECORDED = "outcome_recorded"
    REVIEW_RECORDED = "review_recorded"
    DEPENDENCY_ADDED = "dependency_added"
    DEPENDENCY_RESOLVED = "dependency_resolved"

    ALL = frozenset([
        WORKFLOW_CHANGE, PRIORITY_CHANGE, ISSUE_CREATED, ISSUE_CLOSED,
        ISSUE_SYNCED, DECISION_RECORDED, OUTCOME_RECORDED, REVIEW_RECORDED,
        DEPENDENCY_ADDED, DEPENDENCY_RESOLVED,
    ])


class OutcomeResult:
    MERGED = "merged"
    REWORK = "rework"
    ABANDONED = "abandoned"

    ALL = frozenset([MERGED, REWORK, ABANDONED])


class FindingSeverity:
    BLOCKING = "blocking"
    NON_BLOCKING = "non_blocking"
    SUGGESTION = "suggestion"

    ALL = frozenset([BLOCKING, NON_BLOCKING, SUGGESTION])


class Disposition:
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"
    MODIFIED = "modified"
    DEFERRED = "deferred"

    ALL = frozenset([ACCEPTED, DISMISSED, MODIFIED, DEFERRED])

    # Dispositions that count as a "hit" for calibration
    HITS = frozenset([ACCEPTED, MODIFIED])


def _json_list(raw: Any) -> list[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return value if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Core dataclasses
# ---------------------------------------------------------------------------


@dataclass
class Issue:
    """A unit of work mirrored from the source of truth.

    title/body/state/author/timestamps/labels/assignees are overwritten on
    every sync. workflow and priority are local-only.
    """
    number: int
    title: str
    state: str = SourceState.OPEN
    workflow: str = WorkflowState.BACKLOG
    priority: str = Priority.NORMAL
    body: str | None = None
    author: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None
    synced_at: str | None = None
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.state == SourceState.OPEN

    @property
    def is_done(self) -> bool:
        return self.workflow in WorkflowState.TERMINAL

    @classmethod
    def from_row(
        cls,
        row: Any,
        labels: list[str] | None = None,
        assignees: list[str] | None = None,
    ) -> "Issue":
        """Construct from a sqlite3.Row or dict."""
        d = dict(row)
        return cls(
            number=d["number"],
            title=d["title"],
            state=d["state"],
            workflow=d["workflow"],
            priority=d.get("priority") or Priority.NORMAL,
            body=d.get("body"),
            author=d.get("author"),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
            closed_at=d.get("closed_at"),
            synced_at=d.get("synced_at"),
            labels=list(labels or []),
            assignees=list(assignees or []),
        )


@dataclass
class IssueSnapshot:
    """Source-of-truth view of an issue as delivered by the sync adapter.

    Carries no local-only fields: the adapter can never set workflow or
    priority.
    """
    number: int
    title: str
    state: str = SourceState.OPEN
    body: str | None = None
    author: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    closed_at: str | None = None
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)


@dataclass
class Event:
    """Immutable ledger entry. Never updated or deleted."""
    id: int
    timestamp: str
    event_type: str
    actor: str
    issue_number: int | None = None
    from_value: str | None = None
    to_value: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Any) -> "Event":
        """Construct from a sqlite3.Row or dict."""
        d = dict(row)
        metadata: dict[str, Any] = {}
        if d.get("metadata"):
            try:
                metadata = json.loads(d["metadata"])
            except (json.JSONDecodeError, TypeError):
                metadata = {}
        return cls(
            id=d["id"],
            timestamp=d["timestamp"],
            event_type=d["event_type"],
            actor=d["actor"],
            issue_number=d.get("issue_number"),
            from_value=d.get("from_value"),
            to_value=d.get("to_value"),
            metadata=metadata,
        )


@dataclass
class Dependency:
    """Directed blocking edge: blocked_issue waits for blocker_issue."""
    id: int
    blocker_issue: int
    blocked_issue: int
    resolved: bool = False
    created_at: str | None = None
    resolved_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Dependency":
        """Construct from a sqlite3.Row or dict."""
        d = dict(row)
        return cls(
            id=d["id"],
            blocker_issue=d["blocker_issue"],
            blocked_issue=d["blocked_issue"],
            resolved=bool(d.get("resolved", 0)),
            created_at=d.get("created_at"),
            resolved_at=d.get("resolved_at"),
        )


@dataclass
class Decision:
    """A recorded design decision. Write-once."""
    id: int
    timestamp: str
    decision: str
    decision_type: str = "architectural"
    issue_number: int | None = None
    area: str | None = None
    rationale: str | None = None
    alternatives: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Any) -> "Decision":
        """Construct from a sqlite3.Row or dict."""
        d = dict(row)
        return cls(
            id=d["id"],
            timestamp=d["timestamp"],
            decision=d["decision"],
            decision_type=d.get("decision_type") or "architectural",
            issue_number=d.get("issue_number"),
            area=d.get("area"),
            rationale=d.get("rationale"),
            alternatives=_json_list(d.get("alternatives")),
            files=_json_list(d.get("files")),
        )


@dataclass
class Outcome:
    """How a piece of work ended up (merged, sent to rework, abandoned)."""
    id: int
    timestamp: str
    issue_number: int
    result: str
    pr_number: int | None = None
    review_rounds: int | None = None
    rework_reasons: list[str] = field(default_factory=list)
    area: str | None = None
    approach: str | None = None
    lessons: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "Outcome":
        """Construct from a sqlite3.Row or dict."""
        d = dict(row)
        return cls(
            id=d["id"],
            timestamp=d["timestamp"],
            issue_number=d["issue_number"],
            result=d["result"],
            pr_number=d.get("pr_number"),
            review_rounds=d.get("review_rounds"),
            rework_reasons=_json_list(d.get("rework_reasons")),
            area=d.get("area"),
            approach=d.get("approach"),
            lessons=d.get("lessons"),
        )


@dataclass
class ReviewFinding:
    """Disposition of a single review finding. Write-once."""
    id: int
    timestamp: str
    issue_number: int
    finding_type: str
    severity: str
    disposition: str
    pr_number: int | None = None
    reason: str | None = None
    area: str | None = None
    files: list[str] = field(default_factory=list)

    @property
    def is_hit(self) -> bool:
        return self.disposition in Disposition.HITS

    @classmethod
    def from_row(cls, row: Any) -> "ReviewFinding":
        """Construct from a sqlite3.Row or dict."""
        d = dict(row)
        return cls(
            id=d["id"],
            timestamp=d["timestamp"],
            issue_number=d["issue_number"],
            finding_type=d["finding_type"],
            severity=d["severity"],
            disposition=d["disposition"],
            pr_number=d.get("pr_number"),
            reason=d.get("reason"),
            area=d.get("area"),
            files=_json_list(d.get("files")),
        )


@dataclass
class SyncState:
    resource: str
    last_sync: str
    cursor: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "SyncState":
        d = dict(row)
        return cls(
            resource=d["resource"],
            last_sync=d["last_sync"],
            cursor=d.get("cursor"),
        )


# ---------------------------------------------------------------------------
# Runtime configuration (from .pm/config.yaml, not stored in DB)
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Runtime configuration loaded from .pm/config.yaml."""
    db_path: str = ".pm/state.db"
    project_root: str = "."

    # workflow
    wip_limit: int = 1
    stale_days: dict[str, float] = field(
        default_factory=lambda: {"Active": 7, "Review": 5, "Rework": 3}
    )

    # analytics
    window_days: int = 14
    trend_threshold: float = 0.10
    bottleneck_hours: dict[str, float] = field(
        default_factory=lambda: {"Review": 24, "Rework": 8, "Ready": 48, "Active": 72}
    )

    # predict
    min_samples: int = 3
    max_cycle_days: float = 90
    area_label_prefix: str = "area:"

    # simulate
    propagation_factor: float = 0.9
    min_delay_days: float = 0.5
    max_waves: int = 20
    default_iterations: int = 10000
    max_iterations: int = 50000
    step_days: float = 0.25

    # calibration
    false_positive_rate: float = 0.4
    calibration_min_samples: int = 3
    area_share: float = 0.7
    decay_report_score: int = 25

    # history (git)
    git_timeout_seconds: float = 10
    git_max_output_bytes: int = 5 * 1024 * 1024
    churn_days: int = 30

    log_level: str = "WARNING"
