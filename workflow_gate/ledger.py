"""
Authorization Ledger - explicit, consumable grants for mutating commands.

State machine for a single-use record: UNCONSUMED → CONSUMED (exactly once).
Session records are never consumed; they last for the task's lifetime and
are revoked when the task is archived.

Matching is exact-command. A session record may instead name a classifier
rule (e.g. ``git-push``) and then covers every command classified under it.

Usage:
    ledger = AuthorizationLedger(db)
    ledger.record("task-1", "git push origin main", authorized_by="alice")

    record = ledger.is_authorized("task-1", "git push origin main")  # lookup only
    record = ledger.authorize_and_consume("task-1", "git push origin main",
                                          rule="git-push", consumed_by="prop-1")
"""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from .classifier import normalize_command
from .schema import AuthorizationRecord, AuthorizationScope
from .storage import Database

logger = logging.getLogger(__name__)


class AuthorizationLedger:
    """
    SQLite-backed ledger of user authorizations.

    Features:
    - Exact-command matching
    - Atomic check-and-consume (no double spend across threads or processes)
    - Task-lifetime session scope
    """

    def __init__(self, db: Database):
        self.db = db
        self._lock = threading.Lock()

    # =========================================================================
    # Recording
    # =========================================================================

    def record(
        self,
        task_id: str,
        command_pattern: str,
        authorized_by: str,
        scope: AuthorizationScope = AuthorizationScope.SINGLE_USE,
    ) -> AuthorizationRecord:
        """
        Record an explicit authorization.

        Args:
            task_id: Task the grant belongs to
            command_pattern: The exact command (or, for session scope, a
                             classifier rule name)
            authorized_by: Identity of the approver
            scope: single-use (default) or session

        Returns:
            The stored AuthorizationRecord

        Raises:
            ValueError: If the pattern or approver is empty
            StorageError: If the record cannot be written
        """
        pattern = normalize_command(command_pattern)
        if not pattern:
            raise ValueError("command_pattern must not be empty")
        if not authorized_by:
            raise ValueError("authorized_by must not be empty")

        record = AuthorizationRecord(
            id=f"auth-{uuid.uuid4().hex[:12]}",
            task_id=task_id,
            command_pattern=pattern,
            authorized_by=authorized_by,
            scope=AuthorizationScope(scope),
        )

        with self._lock, self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO authorizations
                (id, task_id, command_pattern, authorized_by, authorized_at, scope)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.task_id,
                record.command_pattern,
                record.authorized_by,
                record.authorized_at.isoformat(),
                record.scope.value,
            ))

        logger.info(
            f"Recorded {record.scope.value} authorization {record.id} for "
            f"`{record.command_pattern}` by {authorized_by}"
        )
        return record

    # =========================================================================
    # Lookup and consumption
    # =========================================================================

    def is_authorized(
        self,
        task_id: str,
        command: str,
        rule: Optional[str] = None,
    ) -> Optional[AuthorizationRecord]:
        """
        Find a usable record for this exact command. Never consumes.

        Args:
            task_id: Task to look in
            command: The proposed command
            rule: Classifier rule the command matched, for session grants
                  that name a category

        Returns:
            The matching record or None
        """
        with self.db.reading() as conn:
            row = self._find_usable(conn, task_id, normalize_command(command), rule)
        return _from_row(row) if row else None

    def authorize_and_consume(
        self,
        task_id: str,
        command: str,
        rule: Optional[str] = None,
        consumed_by: Optional[str] = None,
    ) -> Optional[AuthorizationRecord]:
        """
        Atomically find a usable record and spend it if it is single-use.

        The lookup and the update run in one write transaction, so two
        proposals can never both be satisfied by one single-use record.

        Returns:
            The record that authorized the command, or None

        Raises:
            StorageError: If the ledger cannot be read or written
        """
        normalized = normalize_command(command)
        now = datetime.now(timezone.utc)

        with self._lock, self.db.transaction() as conn:
            row = self._find_usable(conn, task_id, normalized, rule)
            if row is None:
                return None

            if row["scope"] == AuthorizationScope.SINGLE_USE.value:
                cursor = conn.execute("""
                    UPDATE authorizations
                    SET consumed_at = ?, consumed_by = ?
                    WHERE id = ? AND consumed_at IS NULL
                """, (now.isoformat(), consumed_by, row["id"]))
                if cursor.rowcount != 1:
                    return None
                row = conn.execute(
                    "SELECT * FROM authorizations WHERE id = ?", (row["id"],)
                ).fetchone()

        record = _from_row(row)
        logger.info(f"Authorization {record.id} used for `{normalized}` ({record.scope.value})")
        return record

    def _find_usable(
        self,
        conn: sqlite3.Connection,
        task_id: str,
        command: str,
        rule: Optional[str],
    ) -> Optional[sqlite3.Row]:
        return conn.execute("""
            SELECT * FROM authorizations
            WHERE task_id = ?
              AND revoked_at IS NULL
              AND (
                    (scope = 'single-use' AND consumed_at IS NULL AND command_pattern = ?)
                 OR (scope = 'session' AND (command_pattern = ? OR command_pattern = ?))
              )
            ORDER BY authorized_at, id
            LIMIT 1
        """, (task_id, command, command, rule or command)).fetchone()

    # =========================================================================
    # Lifecycle and queries
    # =========================================================================

    def revoke_session_scope(self, task_id: str) -> int:
        """
        Revoke every session-scoped record of a task.

        Returns:
            Number of records revoked
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._lock, self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE authorizations
                SET revoked_at = ?
                WHERE task_id = ? AND scope = 'session' AND revoked_at IS NULL
            """, (now, task_id))
            revoked = cursor.rowcount

        if revoked:
            logger.info(f"Revoked {revoked} session authorization(s) for task {task_id}")
        return revoked

    def get(self, record_id: str) -> Optional[AuthorizationRecord]:
        """Get a specific record by id."""
        with self.db.reading() as conn:
            row = conn.execute(
                "SELECT * FROM authorizations WHERE id = ?", (record_id,)
            ).fetchone()
        return _from_row(row) if row else None

    def list_for_task(self, task_id: str) -> List[AuthorizationRecord]:
        """All records of a task, oldest first."""
        with self.db.reading() as conn:
            rows = conn.execute(
                "SELECT * FROM authorizations WHERE task_id = ? ORDER BY authorized_at, id",
                (task_id,)
            ).fetchall()
        return [_from_row(row) for row in rows]

    def used_for_task(self, task_id: str, authorization_ids: List[str]) -> List[AuthorizationRecord]:
        """
        Records that authorized at least one command.

        Single-use records count once consumed; session records count when
        an audit event references them.
        """
        referenced = set(authorization_ids)
        return [
            record for record in self.list_for_task(task_id)
            if record.is_consumed or record.id in referenced
        ]


def _from_row(row: sqlite3.Row) -> AuthorizationRecord:
    return AuthorizationRecord(
        id=row["id"],
        task_id=row["task_id"],
        command_pattern=row["command_pattern"],
        authorized_by=row["authorized_by"],
        authorized_at=row["authorized_at"],
        scope=AuthorizationScope(row["scope"]),
        consumed_at=row["consumed_at"],
        consumed_by=row["consumed_by"],
        revoked_at=row["revoked_at"],
    )
