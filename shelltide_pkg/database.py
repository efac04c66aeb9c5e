"""SQLite local store for shelltide.

This module provides connection management, schema initialization, the
migration journal (one row per migrate run plus one row per applied or failed
step), and the exclusive lock that serializes concurrent invocations.

Database location: ~/.shelltide/shelltide.db
Lock location: ~/.shelltide/shelltide.lock
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Generator, Optional

from .constants import DATABASE_FILENAME, LOCK_FILENAME, LOCK_TIMEOUT, get_home_dir
from .enums import RunState, StepOutcome
from .errors import ConfigBusy
from .logging_setup import log_debug, log_error, log_info, log_warning
from .models import MigrationRequest


# ========== Database Configuration ==========

def get_database_path() -> Path:
    """Get path to the journal database file."""
    db_dir = get_home_dir()
    db_dir.mkdir(parents=True, exist_ok=True)
    return db_dir / DATABASE_FILENAME


def get_lock_path() -> Path:
    """Get path to the lock file."""
    lock_dir = get_home_dir()
    lock_dir.mkdir(parents=True, exist_ok=True)
    return lock_dir / LOCK_FILENAME


# ========== Schema ==========

SCHEMA_VERSION = 1
"""Current schema version.

Version history:
- 1: migration_runs and migration_steps journal tables
"""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS migration_runs (
    run_id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_ref TEXT NOT NULL,
    source_label TEXT NOT NULL,
    target_ref TEXT NOT NULL,
    requested_target TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'validating',
    started_at TIMESTAMP NOT NULL,
    finished_at TIMESTAMP,
    start_marker_id INTEGER,
    final_marker_id INTEGER,
    failing_change_id INTEGER,
    diagnostic TEXT,
    CONSTRAINT valid_state CHECK (state IN ('idle', 'validating', 'executing', 'completed', 'partially_failed', 'aborted'))
);

CREATE INDEX IF NOT EXISTS idx_runs_target ON migration_runs(target_ref);
CREATE INDEX IF NOT EXISTS idx_runs_started ON migration_runs(started_at);

CREATE TABLE IF NOT EXISTS migration_steps (
    step_id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    change_id INTEGER NOT NULL,
    outcome TEXT NOT NULL,
    applied_at TIMESTAMP,
    diagnostic TEXT,
    FOREIGN KEY (run_id) REFERENCES migration_runs(run_id) ON DELETE CASCADE,
    CONSTRAINT valid_outcome CHECK (outcome IN ('applied', 'failed', 'unknown'))
);

CREATE INDEX IF NOT EXISTS idx_steps_run ON migration_steps(run_id);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


# ========== Connection Management ==========

def get_connection(database_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get SQLite connection with WAL mode and foreign keys enabled.

    Args:
        database_path: Path to database file (default: get_database_path())
    """
    db_path = database_path or get_database_path()

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA synchronous=NORMAL")

    return conn


@contextmanager
def db_transaction(
    conn: Optional[sqlite3.Connection] = None,
    database_path: Optional[Path] = None
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for database transactions with auto-commit/rollback.

    Args:
        conn: Existing connection (if None, creates new connection)
        database_path: Path to database (only used if conn is None)

    Example:
        with db_transaction() as conn:
            conn.execute("INSERT INTO migration_runs ...")
        # Auto-committed on success, rolled back on exception
    """
    if conn is None:
        conn = get_connection(database_path)
        close_on_exit = True
    else:
        close_on_exit = False

    try:
        yield conn
        conn.commit()
    except Exception as e:
        conn.rollback()
        log_error(f"Database transaction failed: {e}")
        raise
    finally:
        if close_on_exit:
            conn.close()


def initialize_database(database_path: Optional[Path] = None) -> bool:
    """Create the journal schema if needed and record its version.

    Returns:
        True if initialization succeeded, False otherwise
    """
    try:
        with db_transaction(database_path=database_path) as conn:
            conn.executescript(SCHEMA_SQL)
            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            current_version = row[0] if row else 0
            if current_version < SCHEMA_VERSION:
                conn.execute(
                    "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                    (SCHEMA_VERSION,)
                )
                log_info(f"Journal schema initialized (version {SCHEMA_VERSION})")
        return True
    except sqlite3.Error as e:
        log_error(f"Failed to initialize database: {e}")
        return False


# ========== Exclusive lock ==========

@contextmanager
def exclusive_lock(
    timeout: float = LOCK_TIMEOUT,
    lock_path: Optional[Path] = None,
) -> Generator[None, None, None]:
    """Hold an exclusive, cross-process lock for the duration of the block.

    The lock is a BEGIN EXCLUSIVE transaction on a dedicated SQLite file, so
    it is released by the OS if the process dies.

    Raises:
        ConfigBusy: If the lock is not acquired within ``timeout`` seconds.
    """
    path = lock_path or get_lock_path()
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    try:
        try:
            conn.execute("BEGIN EXCLUSIVE")
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                log_warning(f"Store lock busy after {timeout:g}s: {path}")
                raise ConfigBusy(timeout) from e
            raise
        log_debug(f"Acquired store lock {path}")
        try:
            yield
        finally:
            conn.execute("ROLLBACK")
            log_debug(f"Released store lock {path}")
    finally:
        conn.close()


# ========== Migration journal ==========

@dataclass
class RunRecord:
    """One migration_runs row."""

    run_id: int
    source_ref: str
    source_label: str
    target_ref: str
    requested_target: str
    state: str
    started_at: str
    finished_at: Optional[str]
    start_marker_id: Optional[int]
    final_marker_id: Optional[int]
    failing_change_id: Optional[int]
    diagnostic: Optional[str]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RunRecord:
        return cls(**{k: row[k] for k in row.keys()})


@dataclass
class StepRecord:
    """One migration_steps row."""

    step_id: int
    run_id: int
    change_id: int
    outcome: str
    applied_at: Optional[str]
    diagnostic: Optional[str]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> StepRecord:
        return cls(**{k: row[k] for k in row.keys()})


class MigrationJournal:
    """Best-effort audit trail of migrate runs.

    Write failures are logged and swallowed: the journal never decides the
    outcome of a migration. Pass ``conn`` to share a connection (tests).
    """

    def __init__(
        self,
        database_path: Optional[Path] = None,
        conn: Optional[sqlite3.Connection] = None,
    ):
        self.database_path = database_path
        self.conn = conn

    def _write(self, action: str, sql: str, params: tuple[Any, ...]) -> Optional[int]:
        try:
            with db_transaction(self.conn, self.database_path) as c:
                cursor = c.execute(sql, params)
                return cursor.lastrowid
        except sqlite3.Error as e:
            log_error(f"Failed to {action} in migration journal: {e}")
            return None

    def start_run(self, request: MigrationRequest, start_marker_id: Optional[int] = None) -> Optional[int]:
        """Insert a run row and return its id (None if the journal is unavailable)."""
        return self._write(
            "record run start",
            """
            INSERT INTO migration_runs
                (source_ref, source_label, target_ref, requested_target, state, started_at, start_marker_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(request.source),
                request.source_label,
                str(request.target),
                str(request.requested_target),
                RunState.VALIDATING.value,
                datetime.now().isoformat(),
                start_marker_id,
            ),
        )

    def update_state(self, run_id: Optional[int], state: RunState, start_marker_id: Optional[int] = None) -> None:
        if run_id is None:
            return
        self._write(
            "update run state",
            "UPDATE migration_runs SET state = ?, start_marker_id = COALESCE(?, start_marker_id) WHERE run_id = ?",
            (state.value, start_marker_id, run_id),
        )

    def record_step(
        self,
        run_id: Optional[int],
        change_id: int,
        outcome: StepOutcome,
        applied_at: Optional[datetime] = None,
        diagnostic: str = "",
    ) -> None:
        if run_id is None:
            return
        self._write(
            "record step",
            """
            INSERT INTO migration_steps (run_id, change_id, outcome, applied_at, diagnostic)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                run_id,
                change_id,
                outcome.value,
                applied_at.isoformat() if applied_at else None,
                diagnostic or None,
            ),
        )

    def finish_run(
        self,
        run_id: Optional[int],
        state: RunState,
        *,
        final_marker_id: Optional[int] = None,
        failing_change_id: Optional[int] = None,
        diagnostic: str = "",
    ) -> None:
        if run_id is None:
            return
        self._write(
            "record run finish",
            """
            UPDATE migration_runs
            SET state = ?, finished_at = ?, final_marker_id = ?, failing_change_id = ?, diagnostic = ?
            WHERE run_id = ?
            """,
            (
                state.value,
                datetime.now().isoformat(),
                final_marker_id,
                failing_change_id,
                diagnostic or None,
                run_id,
            ),
        )

    def recent_runs(
        self,
        environment: Optional[str] = None,
        database: Optional[str] = None,
        limit: int = 20,
    ) -> list[RunRecord]:
        """Most recent runs first, optionally filtered by target env (and db)."""
        sql = "SELECT * FROM migration_runs"
        params: list[Any] = []
        if environment and database:
            sql += " WHERE target_ref = ?"
            params.append(f"{environment}/{database}")
        elif environment:
            sql += " WHERE target_ref LIKE ?"
            params.append(f"{environment}/%")
        sql += " ORDER BY run_id DESC LIMIT ?"
        params.append(limit)

        with db_transaction(self.conn, self.database_path) as c:
            rows = c.execute(sql, tuple(params)).fetchall()
        return [RunRecord.from_row(r) for r in rows]

    def steps_for_run(self, run_id: int) -> list[StepRecord]:
        with db_transaction(self.conn, self.database_path) as c:
            rows = c.execute(
                "SELECT * FROM migration_steps WHERE run_id = ? ORDER BY step_id",
                (run_id,),
            ).fetchall()
        return [StepRecord.from_row(r) for r in rows]
