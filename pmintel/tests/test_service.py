"""
Tests for server/service.py

Validates:
- handle() runs commands end to end and returns JSON-serializable replies
- Failures keep kind/code/message/details in the reply
- Source timestamps are validated at the boundary and stored in UTC
- from_project honours .pm/config.yaml
- submit() works from an event loop
- Concurrent handle() calls on one service are serialized
"""

import asyncio
import json
import threading

import pytest
import yaml

from pmintel.engine.history import ChurnResult
from pmintel.engine.models import Issue
from pmintel.engine.results import Ok
from pmintel.server import commands as cmd
from pmintel.server.service import IntelligenceService, to_jsonable


@pytest.fixture
def service(repo):
    svc = IntelligenceService(repo)
    yield svc
    svc.close()


def _ok(reply):
    assert reply["success"] is True, reply
    json.dumps(reply)
    return reply["value"]


def _issue(service, number, **extra):
    return _ok(service.handle({"op": "upsert_issue", "number": number,
                               "title": f"Issue {number}", **extra}))


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def test_upsert_and_get_issue(service):
    created = _issue(service, 1, labels=["area:graph"])
    assert created["created"] is True

    issue = _ok(service.handle({"op": "get_issue", "issue_number": 1}))
    assert issue["number"] == 1
    assert issue["workflow"] == "Backlog"
    assert issue["labels"] == ["area:graph"]


def test_get_missing_issue(service):
    reply = service.handle({"op": "get_issue", "issue_number": 9})
    assert reply["success"] is False
    assert reply["error"]["kind"] == "not_found"
    assert reply["error"]["code"] == "issue_not_found"


def test_wip_limit_failure_reply(service):
    _issue(service, 100)
    _issue(service, 101)
    for number in (100, 101):
        _ok(service.handle({"op": "move_issue", "issue_number": number, "target_state": "Ready"}))
    _ok(service.handle({"op": "move_issue", "issue_number": 100, "target_state": "Active"}))

    reply = service.handle('{"op": "move_issue", "issue_number": 101, "target_state": "Active"}')

    assert reply["success"] is False
    error = reply["error"]
    assert error["kind"] == "validation"
    assert error["code"] == "wip_limit"
    assert error["details"]["active_issues"] == [100]
    assert "#100" in error["message"]


def test_invalid_command_reply(service):
    reply = service.handle({"op": "move_issue", "issue_number": 1})
    assert reply["success"] is False
    assert reply["error"]["code"] == "invalid_command"
    assert reply["error"]["details"]["errors"][0]["loc"] == ["move_issue", "target_state"]


def test_replies_are_json_serializable(service):
    for n in (1, 2, 3):
        _issue(service, n)
    _ok(service.handle({"op": "add_dependency", "blocker_issue": 1, "blocked_issue": 2}))
    _ok(service.handle({"op": "add_dependency", "blocker_issue": 2, "blocked_issue": 3}))
    _ok(service.handle({"op": "record_decision", "decision": "Use networkx", "issue_number": 1,
                        "area": "graph", "files": ["pmintel/engine/graph.py"]}))
    _ok(service.handle({"op": "record_outcome", "issue_number": 1, "result": "merged"}))
    _ok(service.handle({"op": "record_review_outcome", "issue_number": 1,
                        "finding_type": "naming", "severity": "suggestion",
                        "disposition": "accepted"}))

    for payload in (
        {"op": "board_summary"},
        {"op": "list_issues"},
        {"op": "query_events", "issue_number": 2},
        {"op": "analyze_dependency_graph"},
        {"op": "get_issue_dependencies", "issue_number": 2},
        {"op": "get_sprint_analytics"},
        {"op": "check_readiness", "issue_number": 1},
        {"op": "suggest_approach", "area": "graph", "keywords": ["networkx"]},
        {"op": "predict_rework", "issue_number": 2},
        {"op": "simulate_dependency_change", "issue_number": 1, "slip_days": 4},
        {"op": "get_review_calibration"},
    ):
        _ok(service.handle(payload))

    cascade = _ok(service.handle(
        {"op": "simulate_dependency_change", "issue_number": 1, "slip_days": 10}
    ))["cascade"]
    assert [c["delay_days"] for c in cascade] == [9.0, 8.1]


def test_upsert_timestamps_are_validated_and_normalized(service, board):
    for n in (1, 2, 3):
        board.complete(n, active_days=1)

    bad = service.handle({"op": "upsert_issue", "number": 51, "title": "x",
                          "created_at": "last tuesday"})
    assert bad["error"]["code"] == "invalid_command"
    missing = service.handle({"op": "predict_completion", "issue_number": 51})
    assert missing["error"]["kind"] == "not_found"

    _issue(service, 50, created_at="2026-03-02T11:00:00+02:00")
    issue = _ok(service.handle({"op": "get_issue", "issue_number": 50}))
    assert issue["created_at"] == "2026-03-02T09:00:00+00:00"
    prediction = _ok(service.handle({"op": "predict_completion", "issue_number": 50}))
    assert prediction["issue_number"] == 50


def test_insufficient_data_reply(service):
    _issue(service, 1)
    reply = service.handle({"op": "predict_completion", "issue_number": 1})
    assert reply["error"]["kind"] == "insufficient_data"
    assert reply["error"]["details"]["required"] == 3


def test_decision_decay_uses_injected_churn(repo, clock):
    calls = []

    def churn(root, **kwargs):
        calls.append(root)
        return ChurnResult(degraded=True, warning="Git history unavailable: offline")

    with IntelligenceService(repo, churn=churn) as service:
        _ok(service.handle({"op": "record_decision", "decision": "Use WAL",
                            "files": ["pmintel/engine/repository.py"]}))
        report = _ok(service.handle({"op": "check_decision_decay"}))

    assert len(calls) == 1
    assert report["degraded"] is True


def test_execute_wraps_plain_values(service):
    result = service.execute(cmd.BoardSummary())
    assert isinstance(result, Ok)
    assert result.value["total"] == 0


def test_every_operation_has_a_handler(service):
    handled = {model.model_fields["op"].default for model in service._handlers}
    assert handled == cmd.OPERATIONS


def test_to_jsonable():
    issue = Issue(number=1, title="x", labels=["a"])
    data = to_jsonable({"issue": issue, "pair": (1, 2), 3: {"tags": frozenset(["t"])}})
    assert data["issue"]["labels"] == ["a"]
    assert data["pair"] == [1, 2]
    assert data["3"] == {"tags": ["t"]}


# ---------------------------------------------------------------------------
# Construction and async
# ---------------------------------------------------------------------------


def test_from_project_reads_config(tmp_path, clock):
    pm = tmp_path / ".pm"
    pm.mkdir()
    (pm / "config.yaml").write_text(
        yaml.safe_dump({"database": {"path": "db/board.db"}, "workflow": {"wip_limit": 2}}),
        encoding="utf-8",
    )

    with IntelligenceService.from_project(tmp_path, clock=clock) as service:
        assert service.config.wip_limit == 2
        assert service.config.db_path == str(tmp_path / "db" / "board.db")
        _issue(service, 1)

    assert (tmp_path / "db" / "board.db").exists()


def test_submit_from_event_loop(service):
    async def run():
        await service.submit({"op": "upsert_issue", "number": 5, "title": "Async"})
        return await service.submit({"op": "get_issue", "issue_number": 5})

    reply = asyncio.run(run())

    assert reply["value"]["title"] == "Async"


def test_concurrent_handle_calls_respect_wip(service):
    for n in (1, 2, 3, 4):
        _issue(service, n)
        _ok(service.handle({"op": "move_issue", "issue_number": n, "target_state": "Ready"}))

    barrier = threading.Barrier(4)
    replies = {}

    def activate(number):
        barrier.wait(timeout=10)
        replies[number] = service.handle(
            {"op": "move_issue", "issue_number": number, "target_state": "Active"}
        )

    threads = [threading.Thread(target=activate, args=(n,)) for n in (1, 2, 3, 4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30.0)

    assert sorted(r["success"] for r in replies.values()) == [False, False, False, True]
    active = _ok(service.handle({"op": "list_issues", "workflow": "Active"}))
    assert len(active) == 1
