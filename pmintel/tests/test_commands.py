"""
Tests for server/commands.py

Validates:
- parse_command selects the model named by "op"
- JSON strings and decoded dicts are both accepted
- Unknown ops, unknown fields and out-of-range values become validation Failures
- OPERATIONS lists every command
- Timestamps must be timezone-aware; enumerated fields accept only their known values
"""

from datetime import datetime, timedelta, timezone
from typing import get_args

import pytest

from pmintel.engine.models import (
    Disposition,
    FindingSeverity,
    OutcomeResult,
    Priority,
    SourceState,
    WorkflowState,
)
from pmintel.engine.results import ErrorCode, ErrorKind, Failure
from pmintel.server import commands as cmd


@pytest.mark.parametrize("payload,model", [
    ({"op": "upsert_issue", "number": 1, "title": "Parser"}, cmd.UpsertIssue),
    ({"op": "move_issue", "issue_number": 1, "target_state": "Ready"}, cmd.MoveIssue),
    ({"op": "add_dependency", "blocker_issue": 1, "blocked_issue": 2}, cmd.AddDependency),
    ({"op": "board_summary"}, cmd.BoardSummary),
    ({"op": "simulate_sprint", "seed": 3, "target_items": 4}, cmd.SimulateSprint),
    ({"op": "simulate_dependency_change", "issue_number": 4, "slip_days": 2.5},
     cmd.SimulateDependencyChange),
    ({"op": "check_decision_decay"}, cmd.CheckDecisionDecay),
])
def test_parse_selects_model(payload, model):
    command = cmd.parse_command(payload)
    assert isinstance(command, model)
    assert command.op == payload["op"]


def test_parse_json_string_and_defaults():
    command = cmd.parse_command('{"op": "move_issue", "issue_number": 7, "target_state": "Active"}')

    assert isinstance(command, cmd.MoveIssue)
    assert command.actor == "engine"

    decay = cmd.parse_command({"op": "check_decision_decay"})
    assert decay.window_days == 180
    assert cmd.parse_command({"op": "get_review_calibration"}).window_days == 90


def test_invalid_json():
    result = cmd.parse_command("{not json")
    assert isinstance(result, Failure)
    assert result.code == ErrorCode.INVALID_COMMAND
    assert result.message.startswith("Command is not valid JSON")


@pytest.mark.parametrize("payload", ['["move_issue"]', 42, None])
def test_non_object_payload(payload):
    result = cmd.parse_command(payload)
    assert result.message == "Command must be a JSON object with an 'op' field"


@pytest.mark.parametrize("payload,location", [
    ({"op": "move_issue", "issue_number": 1, "target_state": "Ready", "force": True},
     ["move_issue", "force"]),
    ({"op": "simulate_dependency_change", "issue_number": 1, "slip_days": 0},
     ["simulate_dependency_change", "slip_days"]),
    ({"op": "upsert_issue", "number": 1, "title": "x", "state": "merged"},
     ["upsert_issue", "state"]),
    ({"op": "forecast_backlog", "item_count": 0}, ["forecast_backlog", "item_count"]),
])
def test_field_errors(payload, location):
    result = cmd.parse_command(payload)

    assert result.kind == ErrorKind.VALIDATION
    assert result.code == ErrorCode.INVALID_COMMAND
    assert result.message == f"Invalid '{payload['op']}' command: 1 field error(s)"
    assert result.details["op"] == payload["op"]
    assert result.details["errors"][0]["loc"] == location


@pytest.mark.parametrize("payload", [
    {"op": "delete_everything"},
    {"issue_number": 1},
])
def test_unknown_or_missing_op(payload):
    result = cmd.parse_command(payload)
    assert result.code == ErrorCode.INVALID_COMMAND
    assert result.details["op"] == payload.get("op")


def test_operations_catalogue():
    assert len(cmd.OPERATIONS) == 24
    assert {"move_issue", "predict_completion", "forecast_backlog",
            "record_review_outcome", "check_decision_decay"} <= cmd.OPERATIONS


# ---------------------------------------------------------------------------
# Timestamps and closed value sets
# ---------------------------------------------------------------------------


def test_upsert_timestamps_parse_to_aware_datetimes():
    command = cmd.parse_command({"op": "upsert_issue", "number": 1, "title": "x",
                                 "created_at": "2026-03-02T14:00:00+02:00",
                                 "closed_at": "2026-03-03T09:00:00Z"})

    assert command.created_at == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    assert command.closed_at.utcoffset() == timedelta(0)
    assert command.updated_at is None


@pytest.mark.parametrize("value", ["last tuesday", "2026-03-02T14:00:00", ""])
def test_upsert_rejects_bad_timestamps(value):
    result = cmd.parse_command({"op": "upsert_issue", "number": 50, "title": "x",
                                "created_at": value})

    assert result.code == ErrorCode.INVALID_COMMAND
    assert result.details["errors"][0]["loc"] == ["upsert_issue", "created_at"]


@pytest.mark.parametrize("payload,location", [
    ({"op": "move_issue", "issue_number": 1, "target_state": "Shipped"},
     ["move_issue", "target_state"]),
    ({"op": "set_priority", "issue_number": 1, "priority": "urgent"},
     ["set_priority", "priority"]),
    ({"op": "create_issue", "number": 1, "title": "x", "priority": "low"},
     ["create_issue", "priority"]),
    ({"op": "list_issues", "workflow": "Doing"}, ["list_issues", "workflow"]),
    ({"op": "record_outcome", "issue_number": 1, "result": "shipped"},
     ["record_outcome", "result"]),
    ({"op": "record_review_outcome", "issue_number": 1, "finding_type": "naming",
      "severity": "major", "disposition": "accepted"},
     ["record_review_outcome", "severity"]),
    ({"op": "record_review_outcome", "issue_number": 1, "finding_type": "naming",
      "severity": "blocking", "disposition": "ignored"},
     ["record_review_outcome", "disposition"]),
])
def test_closed_value_sets_rejected_at_parse(payload, location):
    result = cmd.parse_command(payload)

    assert isinstance(result, Failure)
    assert result.details["errors"][0]["loc"] == location


@pytest.mark.parametrize("alias,values", [
    (cmd.WorkflowName, WorkflowState.ALL),
    (cmd.SourceStateName, SourceState.ALL),
    (cmd.PriorityName, Priority.ALL),
    (cmd.OutcomeName, OutcomeResult.ALL),
    (cmd.SeverityName, FindingSeverity.ALL),
    (cmd.DispositionName, Disposition.ALL),
])
def test_value_sets_match_engine_constants(alias, values):
    assert set(get_args(alias)) == values
