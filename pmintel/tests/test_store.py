"""
Tests for engine/store.py

Validates:
- upsert_issue creates new issues in Backlog (or Done when already closed)
- Replaying an identical snapshot is idempotent: no new rows, no new events
- Sync never touches local-only fields (workflow, priority)
- A closed snapshot auto-closes a non-Done issue with actor "sync"
- Source timestamps are stored in UTC; unparseable ones are rejected
- create_issue / set_priority / issue_areas / sync state
- board_summary counts, blocked and stale lists, health score
"""

import pytest

from pmintel.engine.graph import add_dependency
from pmintel.engine.memory import record_outcome
from pmintel.engine.models import EventType, IssueSnapshot, Priority, WorkflowState
from pmintel.engine.results import ErrorCode, ErrorKind
from pmintel.engine.store import (
    board_summary,
    create_issue,
    get_issue,
    get_last_sync,
    issue_area,
    list_issues,
    query_events,
    set_priority,
    update_sync_state,
    upsert_issue,
)


def _snapshot(**overrides):
    data = {
        "number": 100,
        "title": "Add cycle detection",
        "state": "open",
        "author": "octo",
        "labels": ["area:graph", "bug"],
        "assignees": ["octo"],
    }
    data.update(overrides)
    return IssueSnapshot(**data)


# ---------------------------------------------------------------------------
# upsert_issue
# ---------------------------------------------------------------------------


def test_upsert_creates_issue_in_backlog(repo):
    result = upsert_issue(repo, _snapshot())

    assert result.success
    assert result.value["created"] is True
    issue = get_issue(repo, 100)
    assert issue.workflow == WorkflowState.BACKLOG
    assert issue.priority == Priority.NORMAL
    assert issue.labels == ["area:graph", "bug"]
    assert issue.assignees == ["octo"]

    created = query_events(repo, issue_number=100, event_type=EventType.ISSUE_CREATED)
    assert len(created) == 1
    assert created[0].actor == "sync"


def test_upsert_accepts_plain_dict(repo):
    result = upsert_issue(repo, {"number": 5, "title": "From dict"})
    assert result.value["created"] is True
    assert get_issue(repo, 5).title == "From dict"


def test_upsert_identical_snapshot_is_idempotent(repo, board):
    upsert_issue(repo, _snapshot())
    set_priority(repo, 100, Priority.HIGH)
    board.move(100, WorkflowState.READY)
    events_before = len(query_events(repo))

    result = upsert_issue(repo, _snapshot())

    assert result.value["created"] is False
    assert result.value["changed"] is False
    assert len(list_issues(repo)) == 1
    assert len(query_events(repo)) == events_before
    issue = get_issue(repo, 100)
    assert issue.workflow == WorkflowState.READY
    assert issue.priority == Priority.HIGH


def test_upsert_normalizes_timestamps_to_utc(repo):
    upsert_issue(repo, _snapshot(created_at="2026-03-02T14:00:00+02:00",
                                 updated_at="2026-03-02T12:30:00Z"))

    issue = get_issue(repo, 100)
    assert issue.created_at == "2026-03-02T12:00:00+00:00"
    assert issue.updated_at == "2026-03-02T12:30:00+00:00"

    # The same instants written differently are not a change
    again = upsert_issue(repo, _snapshot(created_at="2026-03-02T12:00:00Z",
                                         updated_at="2026-03-02T14:30:00+02:00"))
    assert again.value["changed"] is False


@pytest.mark.parametrize("field", ["created_at", "updated_at", "closed_at"])
def test_upsert_rejects_unparseable_timestamp(repo, field):
    result = upsert_issue(repo, _snapshot(**{field: "last tuesday"}))

    assert result.kind == ErrorKind.VALIDATION
    assert result.code == ErrorCode.INVALID_VALUE
    assert result.details["field"] == field
    assert get_issue(repo, 100) is None
    assert query_events(repo) == []


def test_upsert_overwrites_source_fields_only(repo, board):
    upsert_issue(repo, _snapshot())
    board.move(100, WorkflowState.READY)

    result = upsert_issue(repo, _snapshot(title="Renamed", labels=["area:calibration"]))

    assert result.value["changed"] is True
    issue = get_issue(repo, 100)
    assert issue.title == "Renamed"
    assert issue.labels == ["area:calibration"]
    assert issue.workflow == WorkflowState.READY
    synced = query_events(repo, issue_number=100, event_type=EventType.ISSUE_SYNCED)
    assert len(synced) == 1


def test_upsert_closed_snapshot_auto_closes(repo, board):
    upsert_issue(repo, _snapshot())
    board.start(100)

    result = upsert_issue(repo, _snapshot(state="closed", closed_at="2026-03-02T12:00:00+00:00"))

    assert result.value["auto_closed"] is True
    assert get_issue(repo, 100).workflow == WorkflowState.DONE
    changes = query_events(repo, issue_number=100, event_type=EventType.WORKFLOW_CHANGE)
    last = changes[-1]
    assert (last.from_value, last.to_value, last.actor) == (
        WorkflowState.ACTIVE, WorkflowState.DONE, "sync",
    )

    # Replaying the closed snapshot changes nothing further
    again = upsert_issue(repo, _snapshot(state="closed", closed_at="2026-03-02T12:00:00+00:00"))
    assert again.value["auto_closed"] is False
    assert len(query_events(repo, issue_number=100, event_type=EventType.WORKFLOW_CHANGE)) == len(changes)


def test_upsert_auto_close_resolves_edges(repo, board):
    board.issue(1)
    board.issue(2)
    add_dependency(repo, 1, 2)

    result = upsert_issue(repo, {"number": 1, "title": "Issue 1", "state": "closed"})

    assert result.value["resolved_edges"] == [2]


def test_upsert_new_closed_issue_starts_done(repo):
    upsert_issue(repo, _snapshot(state="closed"))
    assert get_issue(repo, 100).workflow == WorkflowState.DONE


def test_upsert_rejects_unknown_source_state(repo):
    result = upsert_issue(repo, _snapshot(state="merged"))
    assert result.code == ErrorCode.INVALID_VALUE
    assert get_issue(repo, 100) is None


# ---------------------------------------------------------------------------
# Local operations
# ---------------------------------------------------------------------------


def test_create_issue_and_duplicate(repo):
    assert create_issue(repo, 9, "Local only", labels=["area:ops"]).success
    duplicate = create_issue(repo, 9, "Again")
    assert duplicate.kind == ErrorKind.VALIDATION
    assert duplicate.code == ErrorCode.DUPLICATE_ISSUE


def test_set_priority_records_event(repo, board):
    board.issue(1)
    result = set_priority(repo, 1, Priority.CRITICAL, actor="human:lee")

    assert result.value == {"issue_number": 1, "from": "normal", "to": "critical"}
    events = query_events(repo, issue_number=1, event_type=EventType.PRIORITY_CHANGE)
    assert [(e.from_value, e.to_value, e.actor) for e in events] == [
        ("normal", "critical", "human:lee"),
    ]


def test_set_priority_rejects_unknown_value(repo, board):
    board.issue(1)
    assert set_priority(repo, 1, "urgent").code == ErrorCode.INVALID_VALUE
    assert set_priority(repo, 2, Priority.HIGH).code == ErrorCode.ISSUE_NOT_FOUND


def test_issue_area_prefers_label_over_outcome(repo, board):
    board.issue(1, area="graph")
    board.issue(2)
    record_outcome(repo, 1, "merged", area="analytics")
    record_outcome(repo, 2, "merged", area="analytics")

    assert issue_area(repo, 1) == "graph"
    assert issue_area(repo, 2) == "analytics"
    assert issue_area(repo, 3) is None


def test_sync_state_round_trip(repo, clock):
    assert get_last_sync(repo, "issues") is None
    update_sync_state(repo, "issues", cursor="abc")
    clock.advance(minutes=5)
    update_sync_state(repo, "issues", cursor="def")

    state = get_last_sync(repo, "issues")
    assert state.cursor == "def"
    assert state.last_sync == "2026-03-02T09:05:00+00:00"


# ---------------------------------------------------------------------------
# Board summary
# ---------------------------------------------------------------------------


def test_board_summary_empty(repo):
    summary = board_summary(repo)
    assert summary["total"] == 0
    assert summary["health_score"] == 100


def test_board_summary_counts_and_health(repo, board, clock):
    for n in (1, 2, 3, 4, 5):
        board.issue(n)
    board.start(1)
    board.move(2, WorkflowState.READY)
    add_dependency(repo, 1, 2)
    add_dependency(repo, 1, 3)

    clock.advance(days=8)
    summary = board_summary(repo)

    assert summary["total"] == 5
    assert summary["by_workflow"] == {"Backlog": 3, "Active": 1, "Ready": 1}
    assert [i["number"] for i in summary["active"]] == [1]
    assert summary["blocked"] == [
        {"number": 2, "title": "Issue 2", "blocked_by": [1]},
        {"number": 3, "title": "Issue 3", "blocked_by": [1]},
    ]
    assert [s["issue_number"] for s in summary["stale"]] == [1]
    # 3 of 5 in Backlog (-10), two blocked (-10)
    assert summary["health_score"] == 80


def test_board_summary_excludes_done(repo, board):
    board.complete(1, active_days=1)
    board.issue(2)
    summary = board_summary(repo)
    assert summary["total"] == 1
