#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
PM Intelligence Service

Single entry point that owns the store connection and exposes every engine
operation as a typed command. Outer surfaces (CLI, agent protocol, HTTP)
decode a request into a command document and call handle(); the reply is a
JSON-ready dict:

    {"success": true, "value": {...}}
    {"success": false, "error": {"kind", "code", "message", "details"}}

Commands on one service are serialized by a lock. Async hosts use submit(),
which runs the command on a worker thread.
"""

import asyncio
import dataclasses
import logging
import threading
from pathlib import Path
from typing import Any, Callable

from ..engine import analytics, calibration, graph, memory, predict, simulate, store, workflow
from ..engine.config import configure_logging, load_engine_config
from ..engine.events import to_iso
from ..engine.models import EngineConfig, IssueSnapshot
from ..engine.repository import Clock, Repository
from ..engine.results import Failure, Ok, issue_not_found
from . import commands as cmd

logger = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses and containers into plain JSON types."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return value


class IntelligenceService:
    """
    Owns the Repository and dispatches commands to engine operations.

    Args:
        repo: An open Repository. The service closes it on close().
        churn: Optional replacement for history.file_churn, passed to the
            decision-decay check.
    """

    def __init__(
        self,
        repo: Repository,
        churn: calibration.ChurnSource | None = None,
    ):
        self.repo = repo
        self.churn = churn
        self._lock = threading.Lock()
        self._handlers: dict[type, Callable[[Any], Any]] = {
            cmd.UpsertIssue: self._upsert_issue,
            cmd.CreateIssue: self._create_issue,
            cmd.MoveIssue: self._move_issue,
            cmd.SetPriority: self._set_priority,
            cmd.BoardSummary: lambda c: store.board_summary(self.repo),
            cmd.GetIssue: self._get_issue,
            cmd.ListIssues: lambda c: store.list_issues(self.repo, c.workflow, c.state),
            cmd.QueryEvents: self._query_events,
            cmd.AddDependency: self._add_dependency,
            cmd.AnalyzeDependencyGraph: lambda c: graph.analyze_dependency_graph(self.repo),
            cmd.GetIssueDependencies: lambda c: graph.get_issue_dependencies(
                self.repo, c.issue_number
            ),
            cmd.GetSprintAnalytics: lambda c: analytics.get_sprint_analytics(
                self.repo, c.window_days
            ),
            cmd.CheckReadiness: lambda c: analytics.check_readiness(self.repo, c.issue_number),
            cmd.SuggestApproach: lambda c: analytics.suggest_approach(
                self.repo, c.area, c.keywords
            ),
            cmd.PredictCompletion: lambda c: predict.predict_completion(
                self.repo, c.issue_number
            ),
            cmd.PredictRework: lambda c: predict.predict_rework(self.repo, c.issue_number),
            cmd.SimulateSprint: self._simulate_sprint,
            cmd.ForecastBacklog: self._forecast_backlog,
            cmd.SimulateDependencyChange: self._simulate_dependency_change,
            cmd.RecordDecision: self._record_decision,
            cmd.RecordOutcome: self._record_outcome,
            cmd.RecordReviewOutcome: self._record_review_outcome,
            cmd.GetReviewCalibration: lambda c: calibration.get_review_calibration(
                self.repo, c.window_days
            ),
            cmd.CheckDecisionDecay: lambda c: calibration.check_decision_decay(
                self.repo, c.window_days, churn=self.churn
            ),
        }

    @classmethod
    def from_project(
        cls,
        project_root: str | Path,
        config_yaml_path: str | Path | None = None,
        clock: Clock | None = None,
        churn: calibration.ChurnSource | None = None,
    ) -> "IntelligenceService":
        """Load .pm/config.yaml, configure logging and open the store."""
        config = load_engine_config(project_root, config_yaml_path)
        configure_logging(config.log_level)
        repo = Repository.open_path(config.db_path, config=config, clock=clock)
        logger.info("Service ready on %s", config.db_path)
        return cls(repo, churn=churn)

    @property
    def config(self) -> EngineConfig:
        return self.repo.config

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.repo.close()

    def __enter__(self) -> "IntelligenceService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    def execute(self, command: cmd.CommandModel) -> Ok | Failure:
        """Run a validated command. Plain return values are wrapped in Ok."""
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"No handler for command type {type(command).__name__}")
        with self._lock:
            result = handler(command)
        if isinstance(result, (Ok, Failure)):
            if isinstance(result, Failure):
                logger.debug("%s rejected: %s (%s)", command.op, result.code, result.message)
            return result
        return Ok(result)

    def handle(self, payload: dict[str, Any] | str) -> dict[str, Any]:
        """Validate and run a command document; return a JSON-ready reply."""
        command = cmd.parse_command(payload)
        if isinstance(command, Failure):
            return to_jsonable(command.to_dict())
        return to_jsonable(self.execute(command).to_dict())

    async def submit(self, payload: dict[str, Any] | str) -> dict[str, Any]:
        """handle() on a worker thread, for use from an event loop."""
        return await asyncio.to_thread(self.handle, payload)

    # -----------------------------------------------------------------------
    # Handlers needing argument mapping
    # -----------------------------------------------------------------------

    def _upsert_issue(self, c: cmd.UpsertIssue) -> Ok | Failure:
        fields = c.model_dump(exclude={"op"})
        for name in store.TIMESTAMP_FIELDS:
            if fields[name] is not None:
                fields[name] = to_iso(fields[name])
        snapshot = IssueSnapshot(**fields)
        return store.upsert_issue(self.repo, snapshot)

    def _create_issue(self, c: cmd.CreateIssue) -> Ok | Failure:
        return store.create_issue(
            self.repo, c.number, c.title, body=c.body, labels=c.labels, priority=c.priority
        )

    def _move_issue(self, c: cmd.MoveIssue) -> Ok | Failure:
        return workflow.move_issue(self.repo, c.issue_number, c.target_state, actor=c.actor)

    def _set_priority(self, c: cmd.SetPriority) -> Ok | Failure:
        return store.set_priority(self.repo, c.issue_number, c.priority)

    def _get_issue(self, c: cmd.GetIssue) -> Ok | Failure:
        issue = store.get_issue(self.repo, c.issue_number)
        if issue is None:
            return issue_not_found(c.issue_number)
        return Ok(issue)

    def _query_events(self, c: cmd.QueryEvents) -> list:
        return store.query_events(
            self.repo,
            issue_number=c.issue_number,
            event_type=c.event_type,
            since=c.since,
            until=c.until,
            limit=c.limit,
        )

    def _add_dependency(self, c: cmd.AddDependency) -> Ok | Failure:
        return graph.add_dependency(self.repo, c.blocker_issue, c.blocked_issue)

    def _simulate_sprint(self, c: cmd.SimulateSprint) -> Ok | Failure:
        return simulate.simulate_sprint(
            self.repo,
            window_days=c.window_days,
            iterations=c.iterations,
            seed=c.seed,
            wip_limit=c.wip_limit,
            target_items=c.target_items,
        )

    def _forecast_backlog(self, c: cmd.ForecastBacklog) -> Ok | Failure:
        return simulate.forecast_backlog(
            self.repo, c.item_count, iterations=c.iterations, seed=c.seed, wip_limit=c.wip_limit
        )

    def _simulate_dependency_change(self, c: cmd.SimulateDependencyChange) -> Ok | Failure:
        return simulate.simulate_dependency_change(
            self.repo, c.issue_number, c.slip_days, remove_issue=c.remove_issue
        )

    def _record_decision(self, c: cmd.RecordDecision) -> Ok | Failure:
        return memory.record_decision(
            self.repo,
            c.decision,
            issue_number=c.issue_number,
            area=c.area,
            decision_type=c.decision_type,
            rationale=c.rationale,
            alternatives=c.alternatives,
            files=c.files,
        )

    def _record_outcome(self, c: cmd.RecordOutcome) -> Ok | Failure:
        return memory.record_outcome(
            self.repo,
            c.issue_number,
            c.result,
            pr_number=c.pr_number,
            review_rounds=c.review_rounds,
            rework_reasons=c.rework_reasons,
            area=c.area,
            approach=c.approach,
            lessons=c.lessons,
        )

    def _record_review_outcome(self, c: cmd.RecordReviewOutcome) -> Ok | Failure:
        return calibration.record_review_outcome(
            self.repo,
            c.issue_number,
            c.finding_type,
            c.severity,
            c.disposition,
            pr_number=c.pr_number,
            reason=c.reason,
            area=c.area,
            files=c.files,
        )
