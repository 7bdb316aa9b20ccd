#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Work-Item Store Repository

The Repository owns the single SQLite connection for a process. It is
constructed once at start-up and passed to every engine component; there is
no module-level connection.

Lifecycle is explicit:

    new ──open()──▶ open ──close()──▶ closed

Accessing `conn` outside the open state raises RepositoryClosedError.

transaction() wraps the check-then-write sequences (WIP limit, cycle check)
in BEGIN IMMEDIATE so that two writers, in this process or another one,
can never both pass a precondition before either writes.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from .events import to_iso
from .models import EngineConfig
from .schema import create_db

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RepositoryClosedError(RuntimeError):
    """Raised when a repository is used outside its open state."""

    def __init__(self, db_path: str, state: str):
        self.db_path = db_path
        self.state = state
        super().__init__(f"Repository for '{db_path}' is {state}, not open")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Repository:
    """
    Explicitly owned handle on the work-item store.

    Args:
        db_path: Path to the SQLite file (created with parents if missing).
        config: Engine thresholds; defaults apply when omitted.
        clock: Callable returning an aware UTC datetime. Injected by tests.
    """

    NEW = "new"
    OPEN = "open"
    CLOSED = "closed"

    def __init__(
        self,
        db_path: str | Path,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
    ):
        self.db_path = str(db_path)
        self.config = config or EngineConfig()
        self.clock: Clock = clock or utc_now
        self.state = self.NEW
        self._conn: sqlite3.Connection | None = None

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @classmethod
    def open_path(
        cls,
        db_path: str | Path,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
    ) -> "Repository":
        """Construct and open in one step."""
        repo = cls(db_path, config=config, clock=clock)
        repo.open()
        return repo

    def open(self) -> "Repository":
        """Open the connection and apply migrations. Idempotent while open."""
        if self.state == self.CLOSED:
            raise RepositoryClosedError(self.db_path, self.state)
        if self.state == self.OPEN:
            return self
        self._conn = create_db(self.db_path)
        self.state = self.OPEN
        logger.debug("Opened store %s", self.db_path)
        return self

    def close(self) -> None:
        """Close the connection. A closed repository cannot be reopened."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        if self.state != self.CLOSED:
            logger.debug("Closed store %s", self.db_path)
        self.state = self.CLOSED

    def __enter__(self) -> "Repository":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self.state != self.OPEN or self._conn is None:
            raise RepositoryClosedError(self.db_path, self.state)
        return self._conn

    # -----------------------------------------------------------------------
    # Time
    # -----------------------------------------------------------------------

    def now(self) -> datetime:
        moment = self.clock()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment

    def now_iso(self) -> str:
        return to_iso(self.now())

    # -----------------------------------------------------------------------
    # Transactions
    # -----------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Exclusive write transaction.

        BEGIN IMMEDIATE takes the reserved lock up front, so any reads done
        inside the block (precondition checks) are serialized with the write
        that depends on them. Commits on normal exit; rolls back on any
        exception and re-raises it.

        A block that decides not to write (a failed precondition) simply
        returns; the empty transaction is committed.
        """
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error:
                logger.exception("ROLLBACK failed on %s", self.db_path)
            raise
