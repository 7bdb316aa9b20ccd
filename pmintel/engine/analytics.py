#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Analytics Engine

Derives flow metrics by replaying the workflow_change events in the ledger:
- cycle time: first entry into Active → entry into Done
- time in state: duration between consecutive transitions of an issue
- flow efficiency: share of a completed issue's cycle time spent Active
- rework: outcome records and Rework entries

Nothing here is persisted; every call recomputes from the ledger.
The cycle-time helpers are shared with the predictive and simulation
engines.
"""

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import numpy as np

from .events import parse_iso, query_events, to_iso
from .memory import list_decisions, list_outcomes
from .models import EventType, OutcomeResult, WorkflowState
from .repository import Repository
from .results import Failure, Ok, issue_not_found
from .store import issue_areas

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Statistics helpers
# ---------------------------------------------------------------------------


def percentile(values: list[float], p: float) -> float | None:
    """Nearest-rank percentile: the value at index ceil(n*p)-1 of the sorted sample."""
    if not values:
        return None
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, math.ceil(len(ordered) * p) - 1))
    return ordered[index]


def _round(value: float | None, digits: int = 1) -> float | None:
    return None if value is None else round(float(value), digits)


def summarize(values: list[float]) -> dict[str, Any]:
    """avg / median / p90 / max / count of a sample (None when empty)."""
    if not values:
        return {"avg": None, "median": None, "p90": None, "max": None, "count": 0}
    sample = np.asarray(values, dtype=float)
    return {
        "avg": _round(sample.mean()),
        "median": _round(np.median(sample)),
        "p90": _round(percentile(values, 0.9)),
        "max": _round(sample.max()),
        "count": len(values),
    }


# ---------------------------------------------------------------------------
# Ledger replay
# ---------------------------------------------------------------------------


@dataclass
class Transition:
    timestamp: datetime
    from_state: str | None
    to_state: str


@dataclass
class Timeline:
    """Ordered workflow transitions of one issue."""
    issue_number: int
    transitions: list[Transition] = field(default_factory=list)

    def first_entry(self, state: str, before: datetime | None = None) -> datetime | None:
        for t in self.transitions:
            if t.to_state == state and (before is None or t.timestamp <= before):
                return t.timestamp
        return None

    def last_entry(self, state: str) -> datetime | None:
        found = None
        for t in self.transitions:
            if t.to_state == state:
                found = t.timestamp
        return found

    def entries(self, state: str) -> list[datetime]:
        return [t.timestamp for t in self.transitions if t.to_state == state]

    def intervals(self, until: datetime | None = None) -> list[tuple[str, datetime, datetime]]:
        """
        (state, entered, left) spans between consecutive transitions.

        With `until`, the current (still open) state is closed at that time.
        """
        spans = []
        for current, following in zip(self.transitions, self.transitions[1:]):
            spans.append((current.to_state, current.timestamp, following.timestamp))
        if until is not None and self.transitions:
            last = self.transitions[-1]
            if until > last.timestamp:
                spans.append((last.to_state, last.timestamp, until))
        return spans


def load_timelines(repo: Repository, issue_number: int | None = None) -> dict[int, Timeline]:
    """Group workflow_change events by issue, oldest first."""
    timelines: dict[int, Timeline] = {}
    for event in query_events(
        repo.conn, issue_number=issue_number, event_type=EventType.WORKFLOW_CHANGE
    ):
        if event.issue_number is None or event.to_value is None:
            continue
        timeline = timelines.setdefault(event.issue_number, Timeline(event.issue_number))
        timeline.transitions.append(
            Transition(parse_iso(event.timestamp), event.from_value, event.to_value)
        )
    return timelines


@dataclass
class CycleSample:
    """One completed issue: first Active entry → last Done entry."""
    issue_number: int
    started: datetime
    finished: datetime
    area: str | None = None

    @property
    def days(self) -> float:
        return (self.finished - self.started).total_seconds() / 86400


def cycle_samples(
    repo: Repository,
    since: datetime | None = None,
    until: datetime | None = None,
    timelines: dict[int, Timeline] | None = None,
    areas: dict[int, str] | None = None,
) -> list[CycleSample]:
    """
    Completed-issue cycle times, optionally restricted to issues whose Done
    entry falls within [since, until]. Issues that never went Active, or whose
    Done precedes their first Active entry, are skipped.
    """
    if timelines is None:
        timelines = load_timelines(repo)
    if areas is None:
        areas = issue_areas(repo)

    samples = []
    for number, timeline in sorted(timelines.items()):
        finished = timeline.last_entry(WorkflowState.DONE)
        if finished is None:
            continue
        if since is not None and finished < since:
            continue
        if until is not None and finished > until:
            continue
        started = timeline.first_entry(WorkflowState.ACTIVE, before=finished)
        if started is None or finished <= started:
            continue
        samples.append(CycleSample(number, started, finished, areas.get(number)))
    return samples


def flow_efficiency_of(timeline: Timeline, sample: CycleSample) -> float | None:
    """Active time / total cycle time for one completed issue."""
    total = (sample.finished - sample.started).total_seconds()
    if total <= 0:
        return None
    active = 0.0
    for state, entered, left in timeline.intervals():
        if state != WorkflowState.ACTIVE:
            continue
        start = max(entered, sample.started)
        end = min(left, sample.finished)
        if end > start:
            active += (end - start).total_seconds()
    return active / total


def rework_rate(outcomes: list[Any]) -> float | None:
    """rework / (merged + rework); abandoned work is excluded."""
    merged = sum(1 for o in outcomes if o.result == OutcomeResult.MERGED)
    reworked = sum(1 for o in outcomes if o.result == OutcomeResult.REWORK)
    if merged + reworked == 0:
        return None
    return reworked / (merged + reworked)


# ---------------------------------------------------------------------------
# Sprint analytics
# ---------------------------------------------------------------------------


def _time_in_state(
    timelines: dict[int, Timeline],
    start: datetime,
    end: datetime,
) -> dict[str, list[float]]:
    """Hours per state for spans that ended within [start, end]."""
    hours: dict[str, list[float]] = defaultdict(list)
    for timeline in timelines.values():
        for state, entered, left in timeline.intervals():
            if start <= left <= end:
                hours[state].append((left - entered).total_seconds() / 3600)
    return hours


def _window_metrics(
    repo: Repository,
    timelines: dict[int, Timeline],
    areas: dict[int, str],
    start: datetime,
    end: datetime,
) -> dict[str, Any]:
    samples = cycle_samples(repo, since=start, until=end, timelines=timelines, areas=areas)
    efficiencies = [
        e for e in (flow_efficiency_of(timelines[s.issue_number], s) for s in samples)
        if e is not None
    ]
    outcomes = [
        o for o in list_outcomes(repo, since=to_iso(start))
        if parse_iso(o.timestamp) <= end
    ]
    return {
        "samples": samples,
        "cycle_days": [s.days for s in samples],
        "flow_efficiency": float(np.mean(efficiencies)) if efficiencies else None,
        "outcomes": outcomes,
        "rework_rate": rework_rate(outcomes),
    }


def _bottleneck_states(
    time_in_state: dict[str, dict[str, Any]],
    thresholds: dict[str, float],
) -> list[dict[str, Any]]:
    """Flag states whose average dwell time exceeds the static hour thresholds."""
    high_above = {
        WorkflowState.REVIEW: 72,
        WorkflowState.REWORK: 24,
        WorkflowState.READY: 168,
        WorkflowState.ACTIVE: 168,
    }
    reasons = {
        WorkflowState.REVIEW: "Average {avg}h in Review (target: <{limit}h)",
        WorkflowState.REWORK: "Average {avg}h in Rework (target: <{limit}h)",
        WorkflowState.READY: "Issues wait {avg}h in Ready before starting (target: <{limit}h)",
        WorkflowState.ACTIVE: "Average {avg}h Active (may indicate oversized issues)",
    }

    flagged = []
    for state, limit in thresholds.items():
        stats = time_in_state.get(state)
        if not stats or stats["avg"] is None or stats["avg"] <= limit:
            continue
        avg = stats["avg"]
        if avg > high_above.get(state, limit * 3):
            severity = "high"
        elif state == WorkflowState.READY:
            severity = "low"
        else:
            severity = "medium"
        flagged.append({
            "state": state,
            "severity": severity,
            "avg_hours": avg,
            "reason": reasons.get(state, "Average {avg}h in {state}").format(
                avg=avg, limit=limit, state=state
            ),
        })
    order = {"high": 0, "medium": 1, "low": 2}
    return sorted(flagged, key=lambda b: (order[b["severity"]], b["state"]))


def classify_change(
    before: float | None,
    after: float | None,
    threshold: float,
    lower_is_better: bool,
    relative: bool,
) -> str:
    """improving / stable / declining, comparing `after` against `before`."""
    if before is None or after is None:
        return "stable"
    if relative:
        if before == 0:
            return "stable"
        delta = (after - before) / before
    else:
        delta = after - before
    if lower_is_better:
        delta = -delta
    if delta > threshold:
        return "improving"
    if delta < -threshold:
        return "declining"
    return "stable"


def get_sprint_analytics(repo: Repository, window_days: int | None = None) -> dict[str, Any]:
    """
    Flow analytics over the last `window_days` days (default from config).

    Trends compare the first half of the window with the second half:
    cycle time uses the relative change, flow efficiency and rework rate the
    absolute change, each against the configured threshold.
    """
    config = repo.config
    days = window_days or config.window_days
    end = repo.now()
    start = end - timedelta(days=days)
    middle = start + (end - start) / 2

    timelines = load_timelines(repo)
    areas = issue_areas(repo)
    window = _window_metrics(repo, timelines, areas, start, end)
    first = _window_metrics(repo, timelines, areas, start, middle)
    second = _window_metrics(repo, timelines, areas, middle, end)

    time_in_state = {
        state: summarize(hours)
        for state, hours in sorted(_time_in_state(timelines, start, end).items())
    }

    by_area: dict[str, list[float]] = defaultdict(list)
    for sample in window["samples"]:
        by_area[sample.area or "unknown"].append(sample.days)
    cycle_by_area = sorted(
        (
            {"area": area, "avg_days": round(float(np.mean(values)), 1), "count": len(values)}
            for area, values in by_area.items()
        ),
        key=lambda a: (-a["avg_days"], a["area"]),
    )

    outcomes = window["outcomes"]
    rework_entries: Counter[int] = Counter()
    for number, timeline in timelines.items():
        for entered in timeline.entries(WorkflowState.REWORK):
            if start <= entered <= end:
                rework_entries[number] += 1
    reasons: Counter[str] = Counter()
    for outcome in outcomes:
        if outcome.result == OutcomeResult.REWORK:
            reasons.update(outcome.rework_reasons)

    completed = {
        number
        for number, timeline in timelines.items()
        if any(start <= ts <= end for ts in timeline.entries(WorkflowState.DONE))
    }
    decisions = [
        d for d in list_decisions(repo, since=to_iso(start)) if parse_iso(d.timestamp) <= end
    ]

    threshold = config.trend_threshold
    first_cycle = float(np.mean(first["cycle_days"])) if first["cycle_days"] else None
    second_cycle = float(np.mean(second["cycle_days"])) if second["cycle_days"] else None

    cycle = summarize(window["cycle_days"])
    flow = window["flow_efficiency"]
    rate = window["rework_rate"]
    return {
        "period": {"from": to_iso(start), "to": to_iso(end), "days": days},
        "throughput": {
            "issues_completed": len(completed),
            "prs_merged": sum(
                1 for o in outcomes if o.result == OutcomeResult.MERGED and o.pr_number
            ),
            "decisions_recorded": len(decisions),
        },
        "cycle_time": {
            "average_days": cycle["avg"],
            "median_days": cycle["median"],
            "p90_days": cycle["p90"],
            "count": cycle["count"],
            "by_area": cycle_by_area,
        },
        "time_in_state": time_in_state,
        "bottlenecks": _bottleneck_states(time_in_state, config.bottleneck_hours),
        "flow_efficiency": _round(flow, 2),
        "rework": {
            "rework_rate": _round(rate, 2) if rate is not None else 0.0,
            "issues_reworked": len(rework_entries),
            "avg_rework_cycles": (
                round(sum(rework_entries.values()) / len(rework_entries), 1)
                if rework_entries else 0.0
            ),
            "top_reasons": [
                {"reason": reason, "count": count}
                for reason, count in reasons.most_common(5)
            ],
        },
        "trends": {
            "cycle_time": classify_change(
                first_cycle, second_cycle, threshold, lower_is_better=True, relative=True
            ),
            "flow_efficiency": classify_change(
                first["flow_efficiency"], second["flow_efficiency"], threshold,
                lower_is_better=False, relative=False,
            ),
            "rework_rate": classify_change(
                first["rework_rate"], second["rework_rate"], threshold,
                lower_is_better=True, relative=False,
            ),
            "first_half": {
                "cycle_days": _round(first_cycle),
                "flow_efficiency": _round(first["flow_efficiency"], 2),
                "rework_rate": _round(first["rework_rate"], 2),
            },
            "second_half": {
                "cycle_days": _round(second_cycle),
                "flow_efficiency": _round(second["flow_efficiency"], 2),
                "rework_rate": _round(second["rework_rate"], 2),
            },
        },
    }


# ---------------------------------------------------------------------------
# Readiness and approach suggestions
# ---------------------------------------------------------------------------


def check_readiness(repo: Repository, issue_number: int) -> Ok | Failure:
    """
    Score 0-100 whether an issue is ready to move to Review.

    Blocking checks: the issue was moved to Active, and any Rework was
    followed by a later Review entry. ready is True when no blocking check
    fails.
    """
    row = repo.conn.execute(
        "SELECT number, workflow FROM issues WHERE number = ?", (issue_number,)
    ).fetchone()
    if row is None:
        return issue_not_found(issue_number)

    timeline = load_timelines(repo, issue_number).get(issue_number, Timeline(issue_number))
    checks: list[dict[str, Any]] = []
    missing: list[str] = []

    was_active = timeline.first_entry(WorkflowState.ACTIVE) is not None
    checks.append({
        "name": "Issue moved to Active",
        "passed": was_active,
        "severity": "blocking",
        "detail": "Issue was moved to Active" if was_active
        else "Issue was never moved to Active; was work started properly?",
    })
    if not was_active:
        missing.append("Move issue to Active before starting work")

    in_review = row["workflow"] == WorkflowState.REVIEW
    checks.append({
        "name": "Not already in Review",
        "passed": not in_review,
        "severity": "info",
        "detail": "Issue is already in Review" if in_review
        else f"Issue is in {row['workflow']}",
    })

    reworks = timeline.entries(WorkflowState.REWORK)
    if reworks:
        addressed = any(ts > reworks[-1] for ts in timeline.entries(WorkflowState.REVIEW))
        checks.append({
            "name": "Rework addressed",
            "passed": addressed,
            "severity": "blocking",
            "detail": f"{len(reworks)} rework cycle(s), latest addressed" if addressed
            else "Issue was sent back for rework and has not been resubmitted",
        })
        if not addressed:
            missing.append("Address rework feedback and resubmit to Review")

    decisions = list_decisions(repo, issue_number=issue_number)
    checks.append({
        "name": "Decisions documented",
        "passed": bool(decisions),
        "severity": "info",
        "detail": f"{len(decisions)} decision(s) recorded" if decisions
        else "No decisions recorded; consider documenting key choices",
    })
    if not decisions:
        missing.append("Record key design decisions")

    passed = sum(1 for c in checks if c["passed"])
    return Ok({
        "issue_number": issue_number,
        "ready": not any(not c["passed"] and c["severity"] == "blocking" for c in checks),
        "score": round(passed / len(checks) * 100),
        "checks": checks,
        "missing_steps": missing,
    })


def suggest_approach(repo: Repository, area: str, keywords: list[str]) -> dict[str, Any]:
    """Surface past decisions, lessons and merged approaches for an area."""
    needles = [k.lower() for k in keywords if k]

    def matches(*texts: str | None) -> bool:
        return any(n in (t or "").lower() for n in needles for t in texts)

    suggestions: list[dict[str, Any]] = []
    warnings: list[str] = []
    related: list[dict[str, Any]] = []

    for d in list_decisions(repo, area=area):
        if matches(d.decision, d.rationale):
            context = f"Rationale: {d.rationale}" if d.rationale else f"Issue #{d.issue_number}"
            if d.rationale and d.alternatives:
                context += f". Alternatives considered: {', '.join(d.alternatives)}"
            suggestions.append({
                "source": "decision", "relevance": "high", "text": d.decision, "context": context,
            })

    outcomes = list_outcomes(repo, area=area)
    for o in outcomes:
        related.append({"number": o.issue_number, "area": o.area, "result": o.result})
        if o.result == OutcomeResult.REWORK and o.rework_reasons:
            warnings.append(
                f"Issue #{o.issue_number} in {area} required rework: {', '.join(o.rework_reasons)}"
            )
        if o.lessons:
            suggestions.append({
                "source": "outcome",
                "relevance": "high" if matches(o.lessons) else "medium",
                "text": o.lessons,
                "context": f"From issue #{o.issue_number} "
                           f"({o.result}, {o.review_rounds or 0} review rounds)",
            })
        if o.result == OutcomeResult.MERGED and o.approach:
            suggestions.append({
                "source": "outcome",
                "relevance": "medium",
                "text": f"Previously used approach: {o.approach}",
                "context": f"Issue #{o.issue_number} merged "
                           f"({o.review_rounds or 0} review rounds)",
            })

    rate = rework_rate(outcomes)
    if rate is not None and rate > 0.3:
        warnings.append(
            f"High rework rate ({round(rate * 100)}%) for {area} area. Extra review recommended."
        )

    order = {"high": 0, "medium": 1, "low": 2}
    suggestions.sort(key=lambda s: order[s["relevance"]])
    return {
        "area": area,
        "keywords": list(keywords),
        "suggestions": suggestions[:10],
        "warnings": warnings,
        "related_issues": related[:10],
    }
