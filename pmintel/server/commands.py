#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Pydantic command models for the PM intelligence service

Each operation an agent or CLI can request is one model tagged by its `op`
field. parse_command() turns a JSON document (or an already-decoded dict)
into the matching model, or a validation Failure naming the bad fields.
"""

import json
from typing import Annotated, Any, Literal, Union, get_args

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..engine.models import (
    Disposition,
    FindingSeverity,
    OutcomeResult,
    Priority,
    SourceState,
    WorkflowState,
)
from ..engine.results import ErrorCode, ErrorKind, Failure

# Closed value sets accepted at the boundary
WorkflowName = Literal[
    WorkflowState.BACKLOG,
    WorkflowState.READY,
    WorkflowState.ACTIVE,
    WorkflowState.REVIEW,
    WorkflowState.REWORK,
    WorkflowState.DONE,
]
SourceStateName = Literal[SourceState.OPEN, SourceState.CLOSED]
PriorityName = Literal[Priority.CRITICAL, Priority.HIGH, Priority.NORMAL]
OutcomeName = Literal[OutcomeResult.MERGED, OutcomeResult.REWORK, OutcomeResult.ABANDONED]
SeverityName = Literal[
    FindingSeverity.BLOCKING, FindingSeverity.NON_BLOCKING, FindingSeverity.SUGGESTION
]
DispositionName = Literal[
    Disposition.ACCEPTED, Disposition.DISMISSED, Disposition.MODIFIED, Disposition.DEFERRED
]


class CommandModel(BaseModel):
    """Base for all commands. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Store and workflow
# ---------------------------------------------------------------------------


class UpsertIssue(CommandModel):
    op: Literal["upsert_issue"] = "upsert_issue"
    number: int = Field(gt=0)
    title: str
    state: SourceStateName = SourceState.OPEN
    body: str | None = None
    author: str | None = None
    created_at: AwareDatetime | None = None
    updated_at: AwareDatetime | None = None
    closed_at: AwareDatetime | None = None
    labels: list[str] = []
    assignees: list[str] = []


class CreateIssue(CommandModel):
    op: Literal["create_issue"] = "create_issue"
    number: int = Field(gt=0)
    title: str
    body: str | None = None
    labels: list[str] = []
    priority: PriorityName = Priority.NORMAL


class MoveIssue(CommandModel):
    op: Literal["move_issue"] = "move_issue"
    issue_number: int
    target_state: WorkflowName
    actor: str = "engine"


class SetPriority(CommandModel):
    op: Literal["set_priority"] = "set_priority"
    issue_number: int
    priority: PriorityName


class BoardSummary(CommandModel):
    op: Literal["board_summary"] = "board_summary"


class GetIssue(CommandModel):
    op: Literal["get_issue"] = "get_issue"
    issue_number: int


class ListIssues(CommandModel):
    op: Literal["list_issues"] = "list_issues"
    workflow: WorkflowName | None = None
    state: SourceStateName | None = None


class QueryEvents(CommandModel):
    op: Literal["query_events"] = "query_events"
    issue_number: int | None = None
    event_type: str | None = None
    since: str | None = None
    until: str | None = None
    limit: int | None = Field(default=None, gt=0)


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


class AddDependency(CommandModel):
    op: Literal["add_dependency"] = "add_dependency"
    blocker_issue: int
    blocked_issue: int


class AnalyzeDependencyGraph(CommandModel):
    op: Literal["analyze_dependency_graph"] = "analyze_dependency_graph"


class GetIssueDependencies(CommandModel):
    op: Literal["get_issue_dependencies"] = "get_issue_dependencies"
    issue_number: int


# ---------------------------------------------------------------------------
# Analytics and prediction
# ---------------------------------------------------------------------------


class GetSprintAnalytics(CommandModel):
    op: Literal["get_sprint_analytics"] = "get_sprint_analytics"
    window_days: int | None = Field(default=None, gt=0)


class CheckReadiness(CommandModel):
    op: Literal["check_readiness"] = "check_readiness"
    issue_number: int


class SuggestApproach(CommandModel):
    op: Literal["suggest_approach"] = "suggest_approach"
    area: str
    keywords: list[str] = []


class PredictCompletion(CommandModel):
    op: Literal["predict_completion"] = "predict_completion"
    issue_number: int


class PredictRework(CommandModel):
    op: Literal["predict_rework"] = "predict_rework"
    issue_number: int


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


class SimulateSprint(CommandModel):
    op: Literal["simulate_sprint"] = "simulate_sprint"
    window_days: int | None = Field(default=None, gt=0)
    iterations: int | None = None
    seed: int | None = None
    wip_limit: int | None = Field(default=None, gt=0)
    target_items: int | None = Field(default=None, ge=0)


class ForecastBacklog(CommandModel):
    op: Literal["forecast_backlog"] = "forecast_backlog"
    item_count: int = Field(gt=0)
    iterations: int | None = None
    seed: int | None = None
    wip_limit: int | None = Field(default=None, gt=0)


class SimulateDependencyChange(CommandModel):
    op: Literal["simulate_dependency_change"] = "simulate_dependency_change"
    issue_number: int
    slip_days: float = Field(gt=0)
    remove_issue: bool = False


# ---------------------------------------------------------------------------
# Memory and calibration
# ---------------------------------------------------------------------------


class RecordDecision(CommandModel):
    op: Literal["record_decision"] = "record_decision"
    decision: str
    issue_number: int | None = None
    area: str | None = None
    decision_type: str = "architectural"
    rationale: str | None = None
    alternatives: list[str] = []
    files: list[str] = []


class RecordOutcome(CommandModel):
    op: Literal["record_outcome"] = "record_outcome"
    issue_number: int
    result: OutcomeName
    pr_number: int | None = None
    review_rounds: int | None = None
    rework_reasons: list[str] = []
    area: str | None = None
    approach: str | None = None
    lessons: str | None = None


class RecordReviewOutcome(CommandModel):
    op: Literal["record_review_outcome"] = "record_review_outcome"
    issue_number: int
    finding_type: str
    severity: SeverityName
    disposition: DispositionName
    pr_number: int | None = None
    reason: str | None = None
    area: str | None = None
    files: list[str] = []


class GetReviewCalibration(CommandModel):
    op: Literal["get_review_calibration"] = "get_review_calibration"
    window_days: int = Field(default=90, gt=0)


class CheckDecisionDecay(CommandModel):
    op: Literal["check_decision_decay"] = "check_decision_decay"
    window_days: int = Field(default=180, gt=0)


Command = Annotated[
    Union[
        UpsertIssue,
        CreateIssue,
        MoveIssue,
        SetPriority,
        BoardSummary,
        GetIssue,
        ListIssues,
        QueryEvents,
        AddDependency,
        AnalyzeDependencyGraph,
        GetIssueDependencies,
        GetSprintAnalytics,
        CheckReadiness,
        SuggestApproach,
        PredictCompletion,
        PredictRework,
        SimulateSprint,
        ForecastBacklog,
        SimulateDependencyChange,
        RecordDecision,
        RecordOutcome,
        RecordReviewOutcome,
        GetReviewCalibration,
        CheckDecisionDecay,
    ],
    Field(discriminator="op"),
]

_COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)

OPERATIONS = frozenset(
    model.model_fields["op"].default for model in get_args(get_args(Command)[0])
)


def parse_command(payload: dict[str, Any] | str) -> CommandModel | Failure:
    """
    Validate a command document.

    Returns:
        The typed command model, or Failure(validation, invalid_command)
        whose details["errors"] lists each offending field.
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            return Failure(
                ErrorKind.VALIDATION,
                ErrorCode.INVALID_COMMAND,
                f"Command is not valid JSON: {exc}",
            )
    if not isinstance(payload, dict):
        return Failure(
            ErrorKind.VALIDATION,
            ErrorCode.INVALID_COMMAND,
            "Command must be a JSON object with an 'op' field",
        )

    try:
        return _COMMAND_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        op = payload.get("op")
        return Failure(
            ErrorKind.VALIDATION,
            ErrorCode.INVALID_COMMAND,
            f"Invalid '{op}' command: {exc.error_count()} field error(s)",
            {"op": op, "errors": json.loads(exc.json(include_url=False))},
        )
