#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Calibration Engine

Review calibration:
    Each review finding's disposition is recorded once. Hits are findings
    that were accepted or modified. The report breaks hit rate down by
    finding type, severity and area, and flags false-positive patterns: a
    finding type dismissed more than `false_positive_rate` of the time with
    at least `calibration_min_samples` findings. A pattern is attributed to
    an area when that area holds more than `area_share` of the dismissals.

Decision decay:
    Additive staleness score per decision (capped at 100):
        age            > 120d: 30   > 60d: 15   > 30d: 5
        file churn     > 10 changes: 25   > 3 changes: 10   (git, last 30d)
        supersession   >= 2 newer decisions of the same type and area: 20
        area activity  > 5 decisions in the area and age > 30d: 15
"""

import json
import logging
from collections import Counter, defaultdict
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from . import events
from .events import parse_iso, to_iso
from .history import ChurnResult, file_churn
from .memory import list_decisions
from .models import Disposition, EventType, FindingSeverity, ReviewFinding
from .repository import Repository
from .results import ErrorCode, Failure, Ok, issue_not_found, validation_error

logger = logging.getLogger(__name__)

ChurnSource = Callable[..., ChurnResult]

DEFAULT_CALIBRATION_DAYS = 90
DEFAULT_DECAY_DAYS = 180


# ---------------------------------------------------------------------------
# Review findings
# ---------------------------------------------------------------------------


def record_review_outcome(
    repo: Repository,
    issue_number: int,
    finding_type: str,
    severity: str,
    disposition: str,
    pr_number: int | None = None,
    reason: str | None = None,
    area: str | None = None,
    files: list[str] | tuple[str, ...] = (),
    actor: str = "engine",
) -> Ok | Failure:
    """Append the disposition of one review finding. Returns Ok(ReviewFinding)."""
    if not finding_type or not finding_type.strip():
        return validation_error(
            ErrorCode.INVALID_VALUE, "finding_type must not be empty", field="finding_type"
        )
    if severity not in FindingSeverity.ALL:
        return validation_error(
            ErrorCode.INVALID_VALUE,
            f"severity must be one of {sorted(FindingSeverity.ALL)}, got '{severity}'",
            field="severity",
        )
    if disposition not in Disposition.ALL:
        return validation_error(
            ErrorCode.INVALID_VALUE,
            f"disposition must be one of {sorted(Disposition.ALL)}, got '{disposition}'",
            field="disposition",
        )

    with repo.transaction() as conn:
        if conn.execute(
            "SELECT 1 FROM issues WHERE number = ?", (issue_number,)
        ).fetchone() is None:
            return issue_not_found(issue_number)

        now = repo.now_iso()
        cursor = conn.execute(
            """
            INSERT INTO review_findings (timestamp, issue_number, pr_number, finding_type,
                                         severity, disposition, reason, area, files)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                now, issue_number, pr_number, finding_type, severity, disposition,
                reason, area, json.dumps(list(files)),
            ),
        )
        events.append(
            conn,
            now,
            EventType.REVIEW_RECORDED,
            actor,
            issue_number=issue_number,
            from_value=finding_type,
            to_value=disposition,
            metadata={"finding_id": cursor.lastrowid, "severity": severity, "area": area},
        )
        row = conn.execute(
            "SELECT * FROM review_findings WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()

    logger.info("Recorded %s finding on #%s: %s", finding_type, issue_number, disposition)
    return Ok(ReviewFinding.from_row(row))


def list_review_findings(repo: Repository, since: str | None = None) -> list[ReviewFinding]:
    if since is None:
        rows = repo.conn.execute(
            "SELECT * FROM review_findings ORDER BY timestamp ASC, id ASC"
        ).fetchall()
    else:
        rows = repo.conn.execute(
            "SELECT * FROM review_findings WHERE timestamp >= ? ORDER BY timestamp ASC, id ASC",
            (since,),
        ).fetchall()
    return [ReviewFinding.from_row(row) for row in rows]


def _hit_rate(findings: list[ReviewFinding]) -> float | None:
    if not findings:
        return None
    return sum(1 for f in findings if f.is_hit) / len(findings)


def get_review_calibration(
    repo: Repository,
    window_days: int = DEFAULT_CALIBRATION_DAYS,
) -> dict[str, Any]:
    """Hit-rate report over findings recorded in the last window_days days."""
    config = repo.config
    now = repo.now()
    since = now - timedelta(days=window_days)
    midpoint = since + (now - since) / 2
    findings = list_review_findings(repo, since=to_iso(since))
    overall = _hit_rate(findings) or 0.0

    by_type: dict[str, list[ReviewFinding]] = defaultdict(list)
    by_severity: dict[str, list[ReviewFinding]] = defaultdict(list)
    by_area: dict[str, list[ReviewFinding]] = defaultdict(list)
    for f in findings:
        by_type[f.finding_type].append(f)
        by_severity[f.severity].append(f)
        by_area[f.area or "unknown"].append(f)

    type_rows = []
    for finding_type, group in by_type.items():
        dispositions = Counter(f.disposition for f in group)
        first = _hit_rate([f for f in group if parse_iso(f.timestamp) < midpoint])
        second = _hit_rate([f for f in group if parse_iso(f.timestamp) >= midpoint])
        # A half without findings gives no trend
        if first is None or second is None:
            trend = "stable"
        elif second > first + 0.1:
            trend = "improving"
        elif second < first - 0.1:
            trend = "declining"
        else:
            trend = "stable"
        type_rows.append({
            "type": finding_type,
            "total": len(group),
            **{d: dispositions.get(d, 0) for d in sorted(Disposition.ALL)},
            "hit_rate": round(_hit_rate(group), 2),
            "trend": trend,
        })
    type_rows.sort(key=lambda r: (-r["total"], r["type"]))

    severity_rows = [
        {"severity": severity, "total": len(group), "hit_rate": round(_hit_rate(group), 2)}
        for severity, group in sorted(by_severity.items())
    ]

    area_rows = []
    for area, group in by_area.items():
        dismissed = Counter(
            f.finding_type for f in group if f.disposition == Disposition.DISMISSED
        )
        area_rows.append({
            "area": area,
            "total": len(group),
            "hit_rate": round(_hit_rate(group), 2),
            "top_false_positive": dismissed.most_common(1)[0][0] if dismissed else None,
        })
    area_rows.sort(key=lambda r: (-r["total"], r["area"]))

    patterns = []
    for finding_type, group in sorted(by_type.items()):
        dismissed = [f for f in group if f.disposition == Disposition.DISMISSED]
        rate = len(dismissed) / len(group)
        if rate <= config.false_positive_rate or len(group) < config.calibration_min_samples:
            continue
        reasons = Counter(f.reason for f in dismissed if f.reason)
        areas = Counter(f.area or "unknown" for f in dismissed)
        top_area, top_count = areas.most_common(1)[0]
        area = top_area if top_count / len(dismissed) > config.area_share else None
        percent = round(rate * 100)
        patterns.append({
            "finding_type": finding_type,
            "area": area,
            "dismissal_rate": round(rate, 2),
            "common_reasons": [r for r, _ in reasons.most_common(3)],
            "recommendation": (
                f"Consider reducing {finding_type} checks for {area} area ({percent}% dismissed)"
                if area else
                f"{finding_type} findings are dismissed {percent}% of the time; review relevance"
            ),
        })

    recommendations = []
    if len(findings) >= 10 and overall < 0.5:
        recommendations.append(
            f"Overall hit rate is {round(overall * 100)}%; tighten review criteria to reduce noise"
        )
    if len(findings) >= 10 and overall > 0.9:
        recommendations.append(
            "Very high acceptance rate; reviews may be too shallow. Consider deeper analysis."
        )
    recommendations.extend(p["recommendation"] for p in patterns)
    if not recommendations:
        recommendations.append(
            f"Review calibration looks healthy ({round(overall * 100)}% hit rate "
            f"across {len(findings)} findings)"
        )

    return {
        "period": {"from": to_iso(since), "to": to_iso(now), "total_findings": len(findings)},
        "overall_hit_rate": round(overall, 2),
        "by_finding_type": type_rows,
        "by_severity": severity_rows,
        "by_area": area_rows,
        "false_positive_patterns": patterns,
        "recommendations": recommendations,
    }


# ---------------------------------------------------------------------------
# Decision decay
# ---------------------------------------------------------------------------


def check_decision_decay(
    repo: Repository,
    window_days: int = DEFAULT_DECAY_DAYS,
    churn: ChurnSource | None = None,
) -> dict[str, Any]:
    """
    Score decisions recorded in the last window_days days for staleness.

    Args:
        churn: Replacement for history.file_churn (same signature). Git is
            only consulted when some decision references files.
    """
    config = repo.config
    now = repo.now()
    decisions = list_decisions(repo, since=to_iso(now - timedelta(days=window_days)))

    if not decisions:
        return {
            "total_decisions": 0,
            "stale_decisions": [],
            "healthy_decisions": 0,
            "decaying_decisions": 0,
            "degraded": False,
            "warnings": [],
            "recommendation": "No decisions recorded; start documenting design choices",
        }

    warnings: list[str] = []
    degraded = False
    changes = ChurnResult()
    if any(d.files for d in decisions):
        changes = (churn or file_churn)(
            Path(config.project_root),
            days=config.churn_days,
            timeout=config.git_timeout_seconds,
            max_output_bytes=config.git_max_output_bytes,
        )
        degraded = changes.degraded
        if changes.warning:
            warnings.append(changes.warning)

    area_counts = Counter(d.area for d in decisions if d.area)

    stale = []
    for decision in decisions:
        created = parse_iso(decision.timestamp)
        age = round((now - created).total_seconds() / 86400)
        signals: list[dict[str, str]] = []
        score = 0

        if age > 120:
            score += 30
            signals.append({"signal": "Age", "severity": "high", "detail": f"Decision is {age} days old"})
        elif age > 60:
            score += 15
            signals.append({"signal": "Age", "severity": "medium", "detail": f"Decision is {age} days old"})
        elif age > 30:
            score += 5
            signals.append({"signal": "Age", "severity": "low", "detail": f"Decision is {age} days old"})

        if decision.files:
            touched = sum(changes.churn(path) for path in decision.files)
            detail = f"Referenced files changed {touched} times in last {config.churn_days} days"
            if touched > 10:
                score += 25
                signals.append({"signal": "File churn", "severity": "high", "detail": detail})
            elif touched > 3:
                score += 10
                signals.append({"signal": "File churn", "severity": "medium", "detail": detail})

        if decision.area:
            newer = [
                d for d in decisions
                if d.area == decision.area
                and d.decision_type == decision.decision_type
                and parse_iso(d.timestamp) > created
            ]
            if len(newer) >= 2:
                score += 20
                signals.append({
                    "signal": "Potential supersession",
                    "severity": "medium",
                    "detail": f"{len(newer)} newer {decision.decision_type} decisions "
                              f"in {decision.area}",
                })
            in_area = area_counts[decision.area]
            if in_area > 5 and age > 30:
                score += 15
                signals.append({
                    "signal": "High area activity",
                    "severity": "medium",
                    "detail": f"{in_area} decisions in {decision.area}; context is evolving",
                })

        score = min(score, 100)
        if score < config.decay_report_score:
            continue
        if score >= 60:
            recommendation = "Review and confirm or supersede this decision"
        elif score >= 40:
            recommendation = "May need updating; check whether its assumptions still hold"
        else:
            recommendation = "Monitor; approaching the review threshold"
        stale.append({
            "decision_id": decision.id,
            "decision": decision.decision,
            "decision_type": decision.decision_type,
            "area": decision.area,
            "issue_number": decision.issue_number,
            "age_days": age,
            "decay_score": score,
            "signals": signals,
            "recommendation": recommendation,
        })

    stale.sort(key=lambda s: (-s["decay_score"], s["decision_id"]))
    decaying = len(stale)
    if decaying > len(decisions) * 0.5:
        summary = (
            f"{decaying}/{len(decisions)} decisions showing decay; "
            f"schedule a decision review session"
        )
    elif decaying:
        summary = f"{decaying} decision(s) need review; top priority: \"{stale[0]['decision'][:60]}\""
    else:
        summary = "All decisions are current; no action needed"

    return {
        "total_decisions": len(decisions),
        "stale_decisions": stale[:10],
        "healthy_decisions": len(decisions) - decaying,
        "decaying_decisions": decaying,
        "degraded": degraded,
        "warnings": warnings,
        "recommendation": summary,
    }
