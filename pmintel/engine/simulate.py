#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Simulation Engine

Monte Carlo forecasts over historical cycle times, and a what-if model of
how a slip propagates through the dependency graph.

Sampling uses numpy.random.default_rng(seed): a given seed reproduces the
same result on the same data.

Sprint trial (one synthetic sprint):
    wip_limit slots each hold the remaining days of one item. Time advances
    in step_days increments; a slot reaching zero counts one completion and
    draws a new cycle time (bootstrap, with replacement).

Delay cascade:
    wave 0 is the slipping issue with delay = slip_days. Each following
    wave visits the issues directly blocked by the previous one; an issue's
    delay is the largest delay among its already-delayed blockers times
    propagation_factor, rounded to 0.1 day. Delays below min_delay_days stop
    the cascade on that branch; at most max_waves waves run.
"""

import logging
import math
from collections import Counter
from datetime import timedelta

import networkx as nx
import numpy as np

from .analytics import cycle_samples, percentile
from .graph import analyze_dependency_graph, build_graph
from .models import WorkflowState
from .repository import Repository
from .results import ErrorCode, Failure, Ok, insufficient_data, issue_not_found, validation_error

logger = logging.getLogger(__name__)

BACKLOG_MAX_DAYS = 365


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def _history(repo: Repository, window_days: int | None = None) -> list[float]:
    """Completed cycle times in days, optionally limited to the last window_days."""
    since = repo.now() - timedelta(days=window_days) if window_days else None
    return [
        s.days for s in cycle_samples(repo, since=since)
        if 0 < s.days < repo.config.max_cycle_days
    ]


def _check_iterations(repo: Repository, iterations: int | None) -> tuple[int, Failure | None]:
    config = repo.config
    requested = config.default_iterations if iterations is None else iterations
    if requested < 1:
        return 0, validation_error(
            ErrorCode.INVALID_VALUE,
            f"iterations must be >= 1, got {requested}",
            field="iterations",
        )
    return min(requested, config.max_iterations), None


def _data_confidence(sample_size: int) -> str:
    if sample_size >= 20:
        return "high"
    if sample_size >= 10:
        return "medium"
    return "low"


def run_sprint_trial(
    rng: np.random.Generator,
    samples: np.ndarray,
    sprint_days: float,
    wip_limit: int,
    step: float,
) -> int:
    """Number of items finished in one synthetic sprint."""
    slots = [float(samples[rng.integers(len(samples))]) for _ in range(wip_limit)]
    completed = 0
    for _ in range(int(round(sprint_days / step))):
        for s in range(wip_limit):
            slots[s] -= step
            if slots[s] <= 0:
                completed += 1
                slots[s] = float(samples[rng.integers(len(samples))])
    return completed


def run_backlog_trial(
    rng: np.random.Generator,
    samples: np.ndarray,
    item_count: int,
    wip_limit: int,
    step: float,
) -> float:
    """Days needed to finish item_count items (capped at BACKLOG_MAX_DAYS)."""
    slots: list[float | None] = [None] * wip_limit
    started = 0
    for s in range(min(wip_limit, item_count)):
        slots[s] = float(samples[rng.integers(len(samples))])
        started += 1

    completed = 0
    elapsed = 0.0
    while completed < item_count and elapsed < BACKLOG_MAX_DAYS:
        elapsed += step
        for s in range(wip_limit):
            if slots[s] is None:
                continue
            slots[s] -= step
            if slots[s] <= 0:
                completed += 1
                if started < item_count:
                    slots[s] = float(samples[rng.integers(len(samples))])
                    started += 1
                else:
                    slots[s] = None
    return round(elapsed, 1)


# ---------------------------------------------------------------------------
# Sprint throughput
# ---------------------------------------------------------------------------


def simulate_sprint(
    repo: Repository,
    window_days: int | None = None,
    iterations: int | None = None,
    seed: int | None = None,
    wip_limit: int | None = None,
    target_items: int | None = None,
) -> Ok | Failure:
    """
    Throughput distribution for a sprint of window_days days.

    Samples come from issues completed within the same window.
    """
    config = repo.config
    days = window_days or config.window_days
    wip = wip_limit or config.wip_limit
    trials, failure = _check_iterations(repo, iterations)
    if failure is not None:
        return failure

    history = _history(repo, days)
    if len(history) < config.min_samples:
        logger.info("simulate_sprint: %d samples, %d required", len(history), config.min_samples)
        return insufficient_data(
            len(history), config.min_samples, "completed issues in window", window_days=days
        )

    rng = np.random.default_rng(seed)
    samples = np.asarray(history, dtype=float)
    results = np.array(
        [run_sprint_trial(rng, samples, days, wip, config.step_days) for _ in range(trials)]
    )
    values = results.tolist()

    counts = Counter(values)
    histogram = [
        {
            "items": items,
            "count": counts[items],
            "percentage": round(counts[items] / trials * 100, 1),
        }
        for items in sorted(counts)
    ]

    target = None
    if target_items is not None:
        probability = float(np.mean(results >= target_items))
        target = {
            "target_items": target_items,
            "probability": round(probability, 3),
            "confidence_level": _target_confidence(probability),
        }

    sample_sorted = sorted(history)
    logger.debug("simulate_sprint: %d trials over %d samples", trials, len(history))
    return Ok({
        "input": {
            "window_days": days,
            "iterations": trials,
            "wip_limit": wip,
            "seed": seed,
        },
        "throughput": {
            "p10": percentile(values, 0.10),
            "p25": percentile(values, 0.25),
            "p50": percentile(values, 0.50),
            "p75": percentile(values, 0.75),
            "p90": percentile(values, 0.90),
            "mean": round(float(results.mean()), 1),
            "std_dev": round(float(results.std(ddof=1)), 1) if trials > 1 else 0.0,
        },
        "histogram": histogram,
        "target": target,
        "data_quality": {
            "sample_size": len(history),
            "cycle_time_range": {
                "min": round(sample_sorted[0], 1),
                "max": round(sample_sorted[-1], 1),
                "median": round(percentile(sample_sorted, 0.5), 1),
            },
            "confidence": _data_confidence(len(history)),
        },
    })


def _target_confidence(probability: float) -> str:
    if probability >= 0.9:
        return "very_likely"
    if probability >= 0.7:
        return "likely"
    if probability >= 0.4:
        return "uncertain"
    if probability >= 0.15:
        return "unlikely"
    return "very_unlikely"


# ---------------------------------------------------------------------------
# Backlog forecast
# ---------------------------------------------------------------------------


def forecast_backlog(
    repo: Repository,
    item_count: int,
    iterations: int | None = None,
    seed: int | None = None,
    wip_limit: int | None = None,
) -> Ok | Failure:
    """How many days until item_count more items are done (p50/p80/p95)."""
    config = repo.config
    if item_count < 1:
        return validation_error(
            ErrorCode.INVALID_VALUE,
            f"item_count must be >= 1, got {item_count}",
            field="item_count",
        )
    trials, failure = _check_iterations(repo, iterations)
    if failure is not None:
        return failure
    wip = wip_limit or config.wip_limit

    history = _history(repo)
    if len(history) < config.min_samples:
        return insufficient_data(len(history), config.min_samples, "completed issues")

    rng = np.random.default_rng(seed)
    samples = np.asarray(history, dtype=float)
    days = np.array([
        run_backlog_trial(rng, samples, item_count, wip, config.step_days)
        for _ in range(trials)
    ])
    values = days.tolist()

    p50 = round(percentile(values, 0.5), 1)
    p80 = round(percentile(values, 0.8), 1)
    p95 = round(percentile(values, 0.95), 1)
    now = repo.now()

    def _date(offset: float) -> str:
        return (now + timedelta(days=offset)).date().isoformat()

    mean = float(days.mean())
    std = float(days.std(ddof=1)) if trials > 1 else 0.0
    variability = round(std / mean, 2) if mean > 0 else 0.0
    tail = round(p95 - p50, 1)

    factors = []
    if variability > 0.5:
        factors.append("High variability in cycle times; estimates have wide intervals")
    if tail > p50 * 0.8:
        factors.append("Large tail risk; worst case is much later than the expected case")
    if len(history) < 10:
        factors.append("Limited historical data; predictions may be unreliable")
    low, high = min(history), max(history)
    if low > 0 and high / low > 5:
        factors.append(
            f"Cycle times vary {round(high / low)}x ({low:.1f}d to {high:.1f}d); "
            f"consider forecasting per area"
        )
    if not factors:
        factors.append("Cycle times are consistent; forecast is reliable")

    if variability > 0.5 or tail > p50:
        risk = "high"
    elif variability > 0.3 or tail > p50 * 0.5:
        risk = "medium"
    else:
        risk = "low"

    sprint_length = config.window_days
    sprints = []
    for sprint in range(1, min(math.ceil(p95 / sprint_length) + 2, 12) + 1):
        end_day = sprint * sprint_length
        done = float(np.mean(days <= end_day))
        sprints.append({
            "sprint": sprint,
            "end_day": end_day,
            "end_date": _date(end_day),
            "probability_done": round(done, 3),
        })
        if done >= 0.95:
            break

    return Ok({
        "input": {"item_count": item_count, "iterations": trials, "wip_limit": wip, "seed": seed},
        "forecast": {
            "p50_days": p50,
            "p80_days": p80,
            "p95_days": p95,
            "p50_date": _date(p50),
            "p80_date": _date(p80),
            "p95_date": _date(p95),
        },
        "sprints": sprints,
        "risk": {
            "tail_risk_days": tail,
            "variability_ratio": variability,
            "risk_level": risk,
            "factors": factors,
        },
        "data_quality": {
            "sample_size": len(history),
            "confidence": _data_confidence(len(history)),
        },
    })


# ---------------------------------------------------------------------------
# What-if: dependency slip cascade
# ---------------------------------------------------------------------------


def propagate_delay(
    blocks: dict[int, list[int]],
    blocked_by: dict[int, list[int]],
    source: int,
    slip_days: float,
    factor: float,
    min_delay: float,
    max_waves: int,
) -> dict[int, float]:
    """Breadth-first delay cascade. Returns issue → delay (source included)."""
    delays = {source: float(slip_days)}
    processed = {source}
    wave = list(blocks.get(source, []))
    count = 1
    while wave and count <= max_waves:
        following = []
        for issue in wave:
            if issue in processed:
                continue
            processed.add(issue)
            upstream = max(
                (delays[b] for b in blocked_by.get(issue, []) if b in delays), default=0.0
            )
            delay = round(upstream * factor, 1)
            if delay >= min_delay:
                delays[issue] = delay
                following.extend(blocks.get(issue, []))
        wave = following
        count += 1
    return delays


def _severity(delay: float, slip_days: float) -> str:
    if delay >= slip_days * 0.8:
        return "critical"
    if delay >= slip_days * 0.5:
        return "high"
    if delay >= slip_days * 0.25:
        return "medium"
    return "low"


def simulate_dependency_change(
    repo: Repository,
    issue_number: int,
    slip_days: float,
    remove_issue: bool = False,
) -> Ok | Failure:
    """
    Impact of issue_number slipping by slip_days (or of removing it from the
    chain when remove_issue is set) on everything it transitively blocks.
    """
    config = repo.config
    if slip_days <= 0:
        return validation_error(
            ErrorCode.INVALID_VALUE,
            f"slip_days must be > 0, got {slip_days}",
            field="slip_days",
        )
    issue = repo.conn.execute(
        "SELECT number, title, workflow FROM issues WHERE number = ?", (issue_number,)
    ).fetchone()
    if issue is None:
        return issue_not_found(issue_number)

    graph = build_graph(repo.conn, unresolved_only=True)
    analysis = analyze_dependency_graph(repo)

    blocks = {n: sorted(graph.successors(n)) for n in graph.nodes}
    blocked_by = {n: sorted(graph.predecessors(n)) for n in graph.nodes}
    direct = blocks.get(issue_number, [])
    downstream = nx.descendants(graph, issue_number) if issue_number in graph else set()

    delays = propagate_delay(
        blocks, blocked_by, issue_number, slip_days,
        config.propagation_factor, config.min_delay_days, config.max_waves,
    )

    critical_path = analysis["critical_path"]
    on_critical_path = issue_number in critical_path or any(n in critical_path for n in downstream)

    cascade = []
    for number, delay in delays.items():
        if number == issue_number:
            continue
        attrs = graph.nodes[number]
        cascade.append({
            "issue_number": number,
            "title": attrs.get("title"),
            "workflow": attrs.get("workflow"),
            "delay_days": delay,
            "direct": number in direct,
            "severity": _severity(delay, slip_days),
        })
    cascade.sort(key=lambda c: (-c["delay_days"], c["issue_number"]))

    total = max((c["delay_days"] for c in cascade), default=0.0)
    delayed = len(cascade)

    mitigations = []
    if len(direct) > 1:
        mitigations.append({
            "action": f"Parallelize work on the {len(direct)} directly blocked issues "
                      f"by resolving #{issue_number} incrementally",
            "impact": f"Could reduce cascade by {round(slip_days * 0.3)} days",
            "effort": "medium",
        })
    if remove_issue:
        mitigations.append({
            "action": f"Remove #{issue_number} from the dependency chain entirely",
            "impact": f"Eliminates all {delayed} cascading delays",
            "effort": "high",
        })
    bottleneck = next((b for b in analysis["bottlenecks"] if b["number"] == issue_number), None)
    if bottleneck is not None:
        mitigations.append({
            "action": f"Split #{issue_number} into smaller deliverables to unblock dependents sooner",
            "impact": f"Unblocks {bottleneck['transitive_blocks_count']} transitive dependents",
            "effort": "medium",
        })
    if issue["workflow"] in (WorkflowState.BACKLOG, WorkflowState.READY):
        mitigations.append({
            "action": f"Prioritize #{issue_number} to Active immediately to reduce slip",
            "impact": "Starting now removes the time it would spend queued",
            "effort": "low",
        })
    if any(c["workflow"] == WorkflowState.ACTIVE for c in cascade):
        mitigations.append({
            "action": "Pause Active issues that are blocked to avoid wasted context switching",
            "impact": f"Saves about {round(delayed * 0.5)} dev-days of rework",
            "effort": "low",
        })

    alternatives = []
    if slip_days > 3:
        alternatives.append({
            "description": f"Slip only {math.ceil(slip_days / 2)} days instead of {slip_days}",
            "delay_reduction": round(total * 0.5, 1),
        })
    alternatives.append({
        "description": f"Remove dependency on #{issue_number} (find a workaround)",
        "delay_reduction": total,
    })
    if direct:
        alternatives.append({
            "description": f"Deliver a partial fix for #{issue_number} to unblock the first dependent",
            "delay_reduction": round(total * 0.4, 1),
        })

    title = issue["title"]
    if remove_issue:
        summary = (
            f"Removing #{issue_number} ({title}) from the dependency chain would unblock "
            f"{delayed} issues. "
            + ("It is on the critical path; removal shortens the timeline. " if on_critical_path else "")
            + f"Mitigations available: {len(mitigations)}."
        )
    else:
        summary = (
            f"If #{issue_number} ({title}) slips by {slip_days} days, it delays {delayed} "
            f"downstream issues by up to {total} days. "
            + ("CRITICAL: this issue is on the critical path. " if on_critical_path else "")
            + f"{len(direct)} directly blocked, {len(downstream) - len(direct)} transitively "
            f"affected. {len(mitigations)} mitigations available."
        )

    logger.debug("What-if #%s +%sd: %d issues delayed", issue_number, slip_days, delayed)
    return Ok({
        "scenario": {
            "issue_number": issue_number,
            "title": title,
            "slip_days": slip_days,
            "workflow": issue["workflow"],
            "remove_issue": remove_issue,
        },
        "direct_impact": {
            "blocked_issues": len(direct),
            "transitively_blocked": len(downstream),
            "critical_path_affected": on_critical_path,
        },
        "cascade": cascade,
        "schedule_impact": {
            "total_delay_days": total,
            "worst_case_delay_days": round(total * 1.5, 1),
            "issues_delayed": delayed,
        },
        "mitigations": mitigations,
        "alternative_scenarios": alternatives,
        "summary": summary,
    })

