"""
Tests for engine/schema.py and engine/repository.py

Validates:
- All tables are created on a fresh database
- migrate() is idempotent and the version is recorded
- PRAGMAs (WAL, foreign keys) are applied
- Repository lifecycle: new → open → closed, conn guarded outside open
- transaction() commits on success and rolls back on exceptions
"""

import sqlite3

import pytest

from pmintel.engine.repository import Repository, RepositoryClosedError
from pmintel.engine.schema import create_db, get_schema_version, migrate


EXPECTED_TABLES = {
    "issues",
    "issue_labels",
    "issue_assignees",
    "dependencies",
    "events",
    "decisions",
    "outcomes",
    "review_findings",
    "sync_state",
    "schema_version",
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db_conn(tmp_path):
    """Open a fresh database with schema."""
    conn = create_db(str(tmp_path / "test.db"))
    yield conn
    conn.close()


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def test_all_tables_created(db_conn):
    rows = db_conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    names = {row["name"] for row in rows}
    assert EXPECTED_TABLES <= names


def test_schema_version_is_one(db_conn):
    assert get_schema_version(db_conn) == 1
    versions = [row["version"] for row in db_conn.execute("SELECT version FROM schema_version")]
    assert versions == [1]


def test_migrate_is_idempotent(db_conn):
    migrate(db_conn)
    migrate(db_conn)
    assert get_schema_version(db_conn) == 1
    count = db_conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == 1


def test_wal_and_foreign_keys_enabled(db_conn):
    assert db_conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    assert db_conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def test_self_edge_rejected_by_check_constraint(db_conn):
    db_conn.execute("INSERT INTO issues (number, title) VALUES (1, 'a')")
    with pytest.raises(sqlite3.IntegrityError):
        db_conn.execute(
            "INSERT INTO dependencies (blocker_issue, blocked_issue, created_at) "
            "VALUES (1, 1, '2026-01-01T00:00:00+00:00')"
        )


def test_workflow_check_constraint(db_conn):
    with pytest.raises(sqlite3.IntegrityError):
        db_conn.execute("INSERT INTO issues (number, title, workflow) VALUES (1, 'a', 'Doing')")


def test_create_db_makes_parent_directories(tmp_path):
    path = tmp_path / "nested" / ".pm" / "state.db"
    conn = create_db(path)
    conn.close()
    assert path.exists()


# ---------------------------------------------------------------------------
# Repository lifecycle
# ---------------------------------------------------------------------------


def test_repository_lifecycle(tmp_path):
    repo = Repository(tmp_path / "state.db")
    assert repo.state == Repository.NEW
    with pytest.raises(RepositoryClosedError):
        repo.conn

    repo.open()
    assert repo.state == Repository.OPEN
    assert repo.conn.execute("SELECT 1").fetchone()[0] == 1

    repo.close()
    assert repo.state == Repository.CLOSED
    with pytest.raises(RepositoryClosedError):
        repo.conn
    with pytest.raises(RepositoryClosedError):
        repo.open()


def test_repository_context_manager(tmp_path):
    with Repository(tmp_path / "state.db") as repo:
        assert repo.state == Repository.OPEN
    assert repo.state == Repository.CLOSED


def test_transaction_commits(repo):
    with repo.transaction() as conn:
        conn.execute("INSERT INTO issues (number, title) VALUES (7, 'kept')")
    assert repo.conn.execute("SELECT title FROM issues WHERE number = 7").fetchone()[0] == "kept"


def test_transaction_rolls_back_on_error(repo):
    with pytest.raises(RuntimeError):
        with repo.transaction() as conn:
            conn.execute("INSERT INTO issues (number, title) VALUES (8, 'lost')")
            raise RuntimeError("boom")
    assert repo.conn.execute("SELECT COUNT(*) FROM issues").fetchone()[0] == 0
    assert not repo.conn.in_transaction


def test_now_iso_uses_injected_clock(repo, clock):
    assert repo.now_iso() == "2026-03-02T09:00:00+00:00"
    clock.advance(hours=1)
    assert repo.now_iso() == "2026-03-02T10:00:00+00:00"
