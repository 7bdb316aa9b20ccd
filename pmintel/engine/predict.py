#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Predictive Engine

predict_completion: empirical cycle-time percentiles of completed issues in
the same area (falling back to all areas), scaled to the target's current
state. Below the minimum sample count the result is an explicit
insufficient-data Failure; no default estimate is ever invented.

predict_rework: weighted signals layered over the historical rework rate.
"""

import logging
from datetime import timedelta
from typing import Any

from .analytics import (
    CycleSample,
    Timeline,
    cycle_samples,
    load_timelines,
    percentile,
    rework_rate,
)
from .events import parse_iso
from .memory import list_decisions, list_outcomes
from .models import OutcomeResult, WorkflowState
from .repository import Repository
from .results import Failure, Ok, insufficient_data, issue_not_found
from .store import issue_areas

logger = logging.getLogger(__name__)

# Fraction of a full cycle still ahead of an issue in each state
STATE_MULTIPLIERS = {
    WorkflowState.BACKLOG: 1.0,
    WorkflowState.READY: 0.95,
    WorkflowState.ACTIVE: 0.7,
    WorkflowState.REVIEW: 0.15,
    WorkflowState.REWORK: 0.5,
    WorkflowState.DONE: 0.0,
}

DEFAULT_BASELINE_REWORK = 0.2
HIGH_AREA_REWORK = 0.3
AREA_RATE_MIN_SAMPLES = 3
RUSHED_FALLBACK_HOURS = 2.0


def _load_issue(repo: Repository, issue_number: int):
    return repo.conn.execute(
        "SELECT number, title, workflow, state, created_at FROM issues WHERE number = ?",
        (issue_number,),
    ).fetchone()


def _days_in_state(repo: Repository, timeline: Timeline, created_at: str | None) -> float:
    if timeline.transitions:
        since = timeline.transitions[-1].timestamp
    elif created_at:
        since = parse_iso(created_at)
    else:
        return 0.0
    return max(0.0, (repo.now() - since).total_seconds() / 86400)


# ---------------------------------------------------------------------------
# Completion forecast
# ---------------------------------------------------------------------------


def predict_completion(repo: Repository, issue_number: int) -> Ok | Failure:
    """
    P50/P80/P95 completion estimates for an issue.

    Returns:
        Ok(dict) with prediction days/dates, risk score and factors,
        confidence, similar issues and a recommendation; or
        Failure(insufficient_data) when fewer than min_samples analogues exist.
    """
    config = repo.config
    issue = _load_issue(repo, issue_number)
    if issue is None:
        return issue_not_found(issue_number)

    areas = issue_areas(repo)
    area = areas.get(issue_number)
    timelines = load_timelines(repo)
    timeline = timelines.get(issue_number, Timeline(issue_number))

    history = [
        s for s in cycle_samples(repo, timelines=timelines, areas=areas)
        if s.issue_number != issue_number and 0 < s.days < config.max_cycle_days
    ]
    area_history = [s for s in history if area is not None and s.area == area]

    if len(area_history) >= config.min_samples:
        dataset, basis = area_history, f"area '{area}'"
    elif len(history) >= config.min_samples:
        dataset, basis = history, "all areas"
    else:
        logger.info(
            "predict_completion #%s: %d analogues, %d required",
            issue_number, len(history), config.min_samples,
        )
        return insufficient_data(
            len(history), config.min_samples, "completed analogues", issue_number=issue_number
        )

    current = issue["workflow"]
    days_in_state = _days_in_state(repo, timeline, issue["created_at"])
    multiplier = STATE_MULTIPLIERS.get(current, 1.0)
    cycle_days = [s.days for s in dataset]

    now = repo.now()
    prediction: dict[str, Any] = {"expected_date": {}}
    for label, p in (("p50", 0.5), ("p80", 0.8), ("p95", 0.95)):
        remaining = max(0.0, percentile(cycle_days, p) * multiplier - days_in_state)
        remaining = round(remaining, 1)
        prediction[f"{label}_days"] = remaining
        prediction["expected_date"][label] = (now + timedelta(days=remaining)).date().isoformat()

    factors = _completion_risk_factors(repo, issue_number, current, timeline, days_in_state, area)
    risk_score = min(sum(f["contribution"] for f in factors), 100)

    count = len(dataset)
    if count >= 10:
        confidence = "high"
        confidence_reason = f"Based on {count} historical completions ({basis})"
    elif count >= 5:
        confidence = "medium"
        confidence_reason = f"Based on {count} completions ({basis})"
    else:
        confidence = "low"
        confidence_reason = f"Based on {count} completions ({basis}; limited data)"

    if risk_score >= 60:
        recommendation = (
            "High risk: consider breaking into smaller pieces or allocating extra review time"
        )
    elif risk_score >= 30:
        recommendation = "Moderate risk: monitor closely and address rework patterns early"
    else:
        recommendation = "On track: no special attention needed"

    return Ok({
        "issue_number": issue_number,
        "current_state": current,
        "area": area,
        "days_in_state": round(days_in_state, 1),
        "prediction": prediction,
        "risk_score": risk_score,
        "risk_factors": factors,
        "confidence": confidence,
        "confidence_reason": confidence_reason,
        "sample_size": count,
        "similar_issues": _similar(dataset, area),
        "recommendation": recommendation,
    })


def _similar(dataset: list[CycleSample], area: str | None) -> list[dict[str, Any]]:
    peers = [s for s in dataset if area is None or s.area == area]
    peers.sort(key=lambda s: s.finished)
    return [
        {"issue_number": s.issue_number, "area": s.area, "cycle_days": round(s.days, 1)}
        for s in peers[-5:]
    ]


def _completion_risk_factors(
    repo: Repository,
    issue_number: int,
    current: str,
    timeline: Timeline,
    days_in_state: float,
    area: str | None,
) -> list[dict[str, Any]]:
    factors = []

    reworks = len(timeline.entries(WorkflowState.REWORK))
    if reworks:
        factors.append({
            "factor": "Rework history",
            "severity": "high" if reworks > 1 else "medium",
            "contribution": min(reworks * 15, 30),
            "detail": f"{reworks} rework cycle(s) detected",
        })

    if days_in_state > 5 and current != WorkflowState.DONE:
        factors.append({
            "factor": "Stale in current state",
            "severity": "high" if days_in_state > 10 else "medium",
            "contribution": min(round(days_in_state * 3), 25),
            "detail": f"{round(days_in_state)} days in {current}",
        })

    if area is not None:
        rate = rework_rate(list_outcomes(repo, area=area))
        if rate is not None and rate > HIGH_AREA_REWORK:
            factors.append({
                "factor": "High-rework area",
                "severity": "high" if rate > 0.5 else "medium",
                "contribution": round(rate * 25),
                "detail": f"{area} has {round(rate * 100)}% rework rate",
            })

    if current == WorkflowState.ACTIVE and not list_decisions(repo, issue_number=issue_number):
        factors.append({
            "factor": "No decisions documented",
            "severity": "low",
            "contribution": 10,
            "detail": "No design decisions recorded for this issue",
        })
    return factors


# ---------------------------------------------------------------------------
# Rework forecast
# ---------------------------------------------------------------------------


def _active_to_review_hours(timeline: Timeline) -> float | None:
    started = timeline.first_entry(WorkflowState.ACTIVE)
    if started is None:
        return None
    for t in timeline.transitions:
        if t.to_state == WorkflowState.REVIEW and t.timestamp > started:
            return (t.timestamp - started).total_seconds() / 3600
    return None


def predict_rework(repo: Repository, issue_number: int) -> Ok | Failure:
    """
    Probability that an issue will need rework.

    probability = min(base + score * (1 - base), 0.95), where base is the
    area rework rate (with at least 3 outcomes) or the overall rate, and
    score is the summed weight of the signals present.
    """
    issue = _load_issue(repo, issue_number)
    if issue is None:
        return issue_not_found(issue_number)

    areas = issue_areas(repo)
    area = areas.get(issue_number)
    timelines = load_timelines(repo)
    timeline = timelines.get(issue_number, Timeline(issue_number))

    outcomes = list_outcomes(repo)
    overall = rework_rate(outcomes)
    baseline = overall if overall is not None else DEFAULT_BASELINE_REWORK

    area_outcomes = [o for o in outcomes if area is not None and o.area == area]
    area_completed = [
        o for o in area_outcomes if o.result in (OutcomeResult.MERGED, OutcomeResult.REWORK)
    ]
    area_rate = (
        rework_rate(area_outcomes) if len(area_completed) >= AREA_RATE_MIN_SAMPLES else None
    )

    signals: list[dict[str, Any]] = []

    # Prior rework: this issue's own Rework entries or recent same-area reworks
    own_reworks = len(timeline.entries(WorkflowState.REWORK))
    peer_reworks = [
        o for o in area_outcomes[-5:]
        if o.issue_number != issue_number and o.result == OutcomeResult.REWORK
    ]
    prior = own_reworks > 0 or bool(peer_reworks)
    if own_reworks:
        detail = f"{own_reworks} previous rework cycle(s)"
    elif peer_reworks:
        detail = f"{len(peer_reworks)} recent rework(s) among similar {area} issues"
    else:
        detail = "No rework history"
    signals.append({
        "signal": "Prior rework",
        "weight": 0.25,
        "present": prior,
        "detail": detail,
        "mitigation": "Address all previous review feedback explicitly before re-submitting",
    })

    high_area = area_rate is not None and area_rate > HIGH_AREA_REWORK
    signals.append({
        "signal": "High-rework area",
        "weight": 0.15,
        "present": high_area,
        "detail": f"{area}: {round(area_rate * 100)}% rework rate" if area_rate is not None
        else "No area data",
        "mitigation": f"{area} area has a high rework rate; review past issues "
                      f"for common patterns",
    })

    first_active = timeline.first_entry(WorkflowState.ACTIVE)
    decisions = list_decisions(repo, issue_number=issue_number)
    if first_active is not None:
        decisions = [d for d in decisions if parse_iso(d.timestamp) <= first_active]
    no_decisions = not decisions
    signals.append({
        "signal": "No decisions before implementation",
        "weight": 0.15,
        "present": no_decisions,
        "detail": "No design decisions recorded before work started" if no_decisions
        else f"{len(decisions)} decision(s) recorded before work started",
        "mitigation": "Record design decisions before submitting for review",
    })

    hours = _active_to_review_hours(timeline)
    peer_hours = sorted(
        h for n, t in timelines.items()
        if n != issue_number and area is not None and areas.get(n) == area
        for h in [_active_to_review_hours(t)] if h is not None
    )
    if hours is None:
        rushed = False
        pace_detail = "Not yet submitted for review"
    elif len(peer_hours) >= AREA_RATE_MIN_SAMPLES:
        median = percentile(peer_hours, 0.5)
        rushed = hours < median / 2
        pace_detail = (
            f"Active→Review in {hours:.1f}h vs {median:.1f}h median for {area}"
        )
    else:
        rushed = hours < RUSHED_FALLBACK_HOURS
        pace_detail = f"Active→Review in {hours:.1f}h"
    signals.append({
        "signal": "Faster than typical pace",
        "weight": 0.20,
        "present": rushed,
        "detail": pace_detail,
        "mitigation": "Allow more development time; reviews find more issues in rushed work",
    })

    base = area_rate if area_rate is not None else baseline
    score = sum(s["weight"] for s in signals if s["present"])
    probability = min(base + score * (1 - base), 0.95)

    if probability >= 0.7:
        level = "very_high"
    elif probability >= 0.5:
        level = "high"
    elif probability >= 0.3:
        level = "medium"
    else:
        level = "low"

    present = sorted((s for s in signals if s["present"]), key=lambda s: -s["weight"])
    mitigations = [s["mitigation"] for s in present] or [
        "No specific mitigations needed; proceed to review"
    ]

    return Ok({
        "issue_number": issue_number,
        "area": area,
        "rework_probability": round(probability, 2),
        "risk_score": round(probability * 100),
        "risk_level": level,
        "signals": [
            {k: v for k, v in s.items() if k != "mitigation"} for s in signals
        ],
        "dominant_signal": present[0]["signal"] if present else None,
        "mitigations": mitigations,
        "historical_comparison": {
            "baseline_rework_rate": round(baseline, 2),
            "area_rework_rate": round(area_rate, 2) if area_rate is not None else None,
        },
    })
