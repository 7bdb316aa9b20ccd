"""
Tests for engine/predict.py

Validates:
- predict_completion returns insufficient_data instead of a guess
- Same-area analogues are preferred; all areas is the fallback
- Percentiles are scaled by state and reduced by time already spent
- Risk factors and recommendation
- predict_rework signals, probability formula, risk level and mitigations
"""

from pmintel.engine.memory import record_decision, record_outcome
from pmintel.engine.models import WorkflowState
from pmintel.engine.predict import predict_completion, predict_rework
from pmintel.engine.results import ErrorCode, ErrorKind


def _history(board, area="graph"):
    """Three completed issues in `area` with cycle times 2, 3 and 4 days."""
    board.complete(1, active_days=1.5, review_days=0.5, area=area)
    board.complete(2, active_days=2.5, review_days=0.5, area=area)
    board.complete(3, active_days=3.5, review_days=0.5, area=area)


# ---------------------------------------------------------------------------
# predict_completion
# ---------------------------------------------------------------------------


def test_completion_with_no_history_is_insufficient(repo, board):
    board.issue(10)

    result = predict_completion(repo, 10)

    assert not result.success
    assert result.kind == ErrorKind.INSUFFICIENT_DATA
    assert result.code == ErrorCode.INSUFFICIENT_HISTORY
    assert result.details["available"] == 0
    assert result.details["required"] == 3


def test_completion_below_min_samples_is_insufficient(repo, board):
    board.complete(1, active_days=1)
    board.complete(2, active_days=1)
    board.issue(10)
    result = predict_completion(repo, 10)
    assert result.kind == ErrorKind.INSUFFICIENT_DATA
    assert result.details["available"] == 2


def test_completion_missing_issue(repo):
    assert predict_completion(repo, 404).code == ErrorCode.ISSUE_NOT_FOUND


def test_completion_percentiles_scaled_by_state(repo, board, clock):
    _history(board)
    board.issue(10, area="graph")
    board.start(10)
    clock.advance(days=1)

    result = predict_completion(repo, 10)

    assert result.success
    value = result.value
    assert value["current_state"] == WorkflowState.ACTIVE
    assert value["area"] == "graph"
    assert value["days_in_state"] == 1.0
    # Active keeps 70% of the cycle; one day already spent
    assert value["prediction"]["p50_days"] == 1.1
    assert value["prediction"]["p80_days"] == 1.8
    assert value["prediction"]["p95_days"] == 1.8
    assert value["prediction"]["expected_date"]["p50"] == "2026-03-13"
    assert value["sample_size"] == 3
    assert value["confidence"] == "low"
    assert "area 'graph'" in value["confidence_reason"]
    assert [s["issue_number"] for s in value["similar_issues"]] == [1, 2, 3]
    # Only factor: Active without decisions
    assert value["risk_score"] == 10
    assert value["recommendation"].startswith("On track")


def test_completion_remaining_floors_at_zero(repo, board, clock):
    _history(board)
    board.issue(10, area="graph")
    board.start(10)
    board.move(10, WorkflowState.REVIEW)
    clock.advance(days=6)

    value = predict_completion(repo, 10).value

    assert value["prediction"]["p95_days"] == 0.0
    stale = [f for f in value["risk_factors"] if f["factor"] == "Stale in current state"]
    assert stale and stale[0]["contribution"] == 18


def test_completion_falls_back_to_all_areas(repo, board):
    _history(board, area="graph")
    board.issue(10, area="calibration")

    value = predict_completion(repo, 10).value

    assert "all areas" in value["confidence_reason"]
    assert value["current_state"] == WorkflowState.BACKLOG


def test_completion_excludes_target_and_long_cycles(repo, board):
    board.complete(1, active_days=1)
    board.complete(2, active_days=1)
    board.complete(3, active_days=120)  # beyond max_cycle_days
    board.complete(4, active_days=1)

    # Issue 4 is itself completed; its own sample is not an analogue
    result = predict_completion(repo, 4)

    assert result.kind == ErrorKind.INSUFFICIENT_DATA
    assert result.details["available"] == 2


def test_completion_risk_from_rework_history(repo, board, clock):
    _history(board)
    board.issue(10, area="graph")
    board.start(10)
    board.move(10, WorkflowState.REVIEW, WorkflowState.REWORK, WorkflowState.REVIEW,
               WorkflowState.REWORK)
    record_decision(repo, "Split parser", issue_number=10)

    value = predict_completion(repo, 10).value

    rework = [f for f in value["risk_factors"] if f["factor"] == "Rework history"]
    assert rework[0]["contribution"] == 30
    assert rework[0]["severity"] == "high"


# ---------------------------------------------------------------------------
# predict_rework
# ---------------------------------------------------------------------------


def test_rework_baseline_without_history(repo, board):
    board.issue(10)

    value = predict_rework(repo, 10).value

    # base 0.2, only "no decisions" present: 0.2 + 0.15 * 0.8
    assert value["rework_probability"] == 0.32
    assert value["risk_score"] == 32
    assert value["risk_level"] == "medium"
    assert value["dominant_signal"] == "No decisions before implementation"
    assert value["mitigations"] == ["Record design decisions before submitting for review"]
    assert value["historical_comparison"] == {
        "baseline_rework_rate": 0.2,
        "area_rework_rate": None,
    }
    assert all("mitigation" not in s for s in value["signals"])


def test_rework_all_signals_present(repo, board, clock):
    for n, result in [(1, "rework"), (2, "rework"), (3, "rework"), (4, "merged")]:
        board.issue(n, area="graph")
        record_outcome(repo, n, result, area="graph")
    board.issue(10, area="graph")
    board.start(10)
    clock.advance(hours=1)
    board.move(10, WorkflowState.REVIEW)

    value = predict_rework(repo, 10).value

    present = [s["signal"] for s in value["signals"] if s["present"]]
    assert present == [
        "Prior rework",
        "High-rework area",
        "No decisions before implementation",
        "Faster than typical pace",
    ]
    # base 0.75 (area rate) + 0.75 * 0.25, capped at 0.95
    assert value["rework_probability"] == 0.94
    assert value["risk_level"] == "very_high"
    assert value["dominant_signal"] == "Prior rework"
    assert len(value["mitigations"]) == 4
    assert value["mitigations"][1].startswith("Allow more development time")
    assert value["historical_comparison"]["area_rework_rate"] == 0.75


def test_rework_decision_before_start_clears_signal(repo, board, clock):
    board.issue(10)
    record_decision(repo, "Reuse the existing tokenizer", issue_number=10)
    clock.advance(hours=1)
    board.start(10)

    value = predict_rework(repo, 10).value

    decisions = next(s for s in value["signals"] if s["signal"] == "No decisions before implementation")
    assert decisions["present"] is False
    assert value["rework_probability"] == 0.2
    assert value["risk_level"] == "low"
    assert value["dominant_signal"] is None


def test_rework_missing_issue(repo):
    assert predict_rework(repo, 404).code == ErrorCode.ISSUE_NOT_FOUND
