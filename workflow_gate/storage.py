"""
SQLite storage for the workflow gate.

Tasks, checkpoints, authorization records and audit events live in flat
tables keyed by id. Each component opens a short-lived connection per
operation; writes that must be atomic run inside BEGIN IMMEDIATE so the
write lock is held from the first read to the commit.

- WAL mode for concurrent readers during writes
- busy_timeout for handling concurrent access
- Retry on "database is locked"
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from .errors import StorageError

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    complexity_level INTEGER NOT NULL,
    status TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS checkpoints (
    id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    branch TEXT NOT NULL,
    baseline_ref TEXT NOT NULL,
    snapshot_ref TEXT NOT NULL,
    rollback_ref TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (task_id, id)
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_session
ON checkpoints(task_id, session_id);

CREATE TABLE IF NOT EXISTS authorizations (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    command_pattern TEXT NOT NULL,
    authorized_by TEXT NOT NULL,
    authorized_at TEXT NOT NULL,
    scope TEXT NOT NULL CHECK (scope IN ('single-use', 'session')),
    consumed_at TEXT,
    consumed_by TEXT,
    revoked_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_authorizations_task
ON authorizations(task_id, command_pattern);

CREATE TABLE IF NOT EXISTS audit_events (
    position INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    task_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    body TEXT NOT NULL,
    prev_hash TEXT,
    hash TEXT NOT NULL,
    UNIQUE(task_id, sequence)
);

CREATE TRIGGER IF NOT EXISTS audit_events_no_update
BEFORE UPDATE ON audit_events
BEGIN
    SELECT RAISE(ABORT, 'audit events are append-only');
END;

CREATE TRIGGER IF NOT EXISTS audit_events_no_delete
BEFORE DELETE ON audit_events
BEGIN
    SELECT RAISE(ABORT, 'audit events are append-only');
END;

CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    body TEXT NOT NULL,
    proposed_at TEXT NOT NULL,
    result_event_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_proposals_task
ON proposals(task_id, proposed_at);

CREATE TABLE IF NOT EXISTS approval_requests (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    command TEXT NOT NULL,
    rule TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    decided_at TEXT,
    decided_by TEXT,
    scope TEXT,
    pattern TEXT,
    reason TEXT,
    CHECK (status IN ('pending', 'approved', 'rejected', 'cancelled'))
);

CREATE INDEX IF NOT EXISTS idx_approval_requests_status
ON approval_requests(status, task_id);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
"""


class Database:
    """
    Connection factory for the gate database.

    Features:
    - WAL mode for concurrent read/write access
    - Atomic write transactions (BEGIN IMMEDIATE)
    - Append-only enforcement for audit_events via triggers
    """

    SCHEMA_VERSION = 1
    BUSY_TIMEOUT_MS = 5000
    MAX_RETRIES = 3
    RETRY_DELAY_MS = 100

    def __init__(self, db_path: Union[str, Path]):
        """
        Initialize the database, creating the schema if needed.

        Args:
            db_path: Path to SQLite database file

        Raises:
            StorageError: If the database cannot be opened or initialized
        """
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self.connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,)
                )
                conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot initialize gate database {self.db_path}: {e}")

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with row factory."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {self.BUSY_TIMEOUT_MS}")
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open gate database {self.db_path}: {e}")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a write transaction holding the write lock from the start.

        Retries lock acquisition a few times; any sqlite failure is
        raised as StorageError and the transaction is rolled back.
        """
        with self.connection() as conn:
            self._begin_immediate(conn)
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise StorageError(f"Database write failed: {e}")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def _begin_immediate(self, conn: sqlite3.Connection) -> None:
        for attempt in range(self.MAX_RETRIES):
            try:
                conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < self.MAX_RETRIES - 1:
                    logger.debug(f"Database locked, retrying ({attempt + 1}/{self.MAX_RETRIES})")
                    time.sleep(self.RETRY_DELAY_MS / 1000)
                    continue
                raise StorageError(f"Could not acquire database write lock: {e}")

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Read-only access; sqlite failures become StorageError."""
        try:
            with self.connection() as conn:
                yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Database read failed: {e}")
