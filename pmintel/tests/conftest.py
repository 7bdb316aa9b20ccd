"""
pytest configuration for PM intelligence engine tests.

Adds the project root to sys.path so that 'from pmintel.engine.xxx import
...' works without installing the package, and provides the shared
fixtures: a controllable clock, a fresh repository per test, and a Board
helper that drives issues through the workflow while advancing the clock.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the project root is on the path (pmintel package lives at <root>/pmintel/)
project_dir = Path(__file__).parent.parent.parent
if str(project_dir) not in sys.path:
    sys.path.insert(0, str(project_dir))

from pmintel.engine.models import EngineConfig, IssueSnapshot, WorkflowState
from pmintel.engine.repository import Repository
from pmintel.engine.store import upsert_issue
from pmintel.engine.workflow import move_issue

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class Board:
    """Drives issues through the workflow for history-based tests."""

    def __init__(self, repo: Repository, clock: FakeClock):
        self.repo = repo
        self.clock = clock

    def issue(self, number: int, title: str | None = None, area: str | None = None,
              labels: list[str] | None = None, state: str = "open") -> int:
        all_labels = list(labels or [])
        if area:
            all_labels.append(f"area:{area}")
        result = upsert_issue(self.repo, IssueSnapshot(
            number=number,
            title=title or f"Issue {number}",
            state=state,
            labels=all_labels,
        ))
        assert result.success, result
        return number

    def move(self, number: int, *states: str) -> None:
        for state in states:
            result = move_issue(self.repo, number, state)
            assert result.success, result

    def start(self, number: int) -> None:
        self.move(number, WorkflowState.READY, WorkflowState.ACTIVE)

    def complete(self, number: int, active_days: float, review_days: float = 0.5,
                 area: str | None = None, rework_days: float | None = None) -> None:
        """Create (if needed) and finish an issue: Ready → Active → Review [→ Rework → Review] → Done."""
        self.issue(number, area=area)
        self.start(number)
        self.clock.advance(days=active_days)
        self.move(number, WorkflowState.REVIEW)
        if rework_days is not None:
            self.clock.advance(hours=1)
            self.move(number, WorkflowState.REWORK)
            self.clock.advance(days=rework_days)
            self.move(number, WorkflowState.REVIEW)
        self.clock.advance(days=review_days)
        self.move(number, WorkflowState.DONE)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return EngineConfig(db_path=str(tmp_path / "state.db"), project_root=str(tmp_path))


@pytest.fixture
def repo(config, clock):
    """Open a fresh store with schema."""
    repo = Repository.open_path(config.db_path, config=config, clock=clock)
    yield repo
    repo.close()


@pytest.fixture
def board(repo, clock):
    return Board(repo, clock)
