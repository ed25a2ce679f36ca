"""
Append-only audit log of proposal outcomes.

Provides tamper-evident audit logging with chained hashes.

Features:
- One hash chain per task; each event hashes its content plus the
  previous event's hash
- Per-task sequence numbers in proposal arrival order
- No update or delete path (the table also rejects them via triggers)
- Credential-looking arguments redacted before they are stored
"""

import hashlib
import hmac
import json
import logging
import re
import threading
from typing import List, Optional

from .errors import AuditTamperError
from .schema import AuditEvent
from .storage import Database

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Tamper-evident, append-only audit log.

    ``record`` either appends the event or raises StorageError; a caller
    that gets StorageError must treat the action as not having happened.
    """

    # Credential-looking arguments to redact from stored commands
    SENSITIVE_PATTERNS = [
        re.compile(r"(?i)((?:--?)?(?:password|passwd|token|secret|api[_-]?key)[=:\s]+)(\S+)"),
        re.compile(r"(?i)(authorization:\s*(?:bearer|token|basic)\s+)(\S+)"),
    ]

    def __init__(self, db: Database):
        self.db = db
        self._lock = threading.Lock()

    def _compute_hash(self, content: str, prev_hash: Optional[str] = None) -> str:
        """Compute hash for entry including previous hash."""
        to_hash = content
        if prev_hash:
            to_hash = f"{prev_hash}:{content}"
        return hashlib.sha256(to_hash.encode()).hexdigest()[:32]

    def _content(self, event: AuditEvent) -> str:
        return json.dumps(event.hash_payload(), sort_keys=True)

    def _sanitize_command(self, command: str) -> str:
        for pattern in self.SENSITIVE_PATTERNS:
            command = pattern.sub(r"\1[REDACTED]", command)
        return command

    def record(self, event: AuditEvent) -> AuditEvent:
        """
        Append an event.

        Args:
            event: Event to append; sequence and hashes are assigned here

        Returns:
            The stored event

        Raises:
            StorageError: If the event could not be written
        """
        with self._lock, self.db.transaction() as conn:
            row = conn.execute("""
                SELECT sequence, hash FROM audit_events
                WHERE task_id = ?
                ORDER BY sequence DESC
                LIMIT 1
            """, (event.task_id,)).fetchone()

            sequence = (row["sequence"] + 1) if row else 1
            prev_hash = row["hash"] if row else None

            stored = event.model_copy(update={
                "sequence": sequence,
                "proposed_command": self._sanitize_command(event.proposed_command),
                "prev_hash": prev_hash,
                "hash": None,
            })
            entry_hash = self._compute_hash(self._content(stored), prev_hash)
            stored = stored.model_copy(update={"hash": entry_hash})

            conn.execute("""
                INSERT INTO audit_events (id, task_id, sequence, body, prev_hash, hash)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                stored.id,
                stored.task_id,
                stored.sequence,
                stored.model_dump_json(),
                prev_hash,
                entry_hash,
            ))

        logger.debug(
            f"Audit #{stored.sequence} task={stored.task_id} {stored.decision_code.value} "
            f"`{stored.proposed_command}`"
        )
        return stored

    def events_for_task(self, task_id: str) -> List[AuditEvent]:
        """Events of a task in arrival order."""
        with self.db.reading() as conn:
            rows = conn.execute(
                "SELECT body FROM audit_events WHERE task_id = ? ORDER BY sequence",
                (task_id,)
            ).fetchall()
        return [AuditEvent.model_validate_json(row["body"]) for row in rows]

    def get(self, event_id: str) -> Optional[AuditEvent]:
        with self.db.reading() as conn:
            row = conn.execute(
                "SELECT body FROM audit_events WHERE id = ?", (event_id,)
            ).fetchone()
        return AuditEvent.model_validate_json(row["body"]) if row else None

    def count(self, task_id: str) -> int:
        with self.db.reading() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM audit_events WHERE task_id = ?", (task_id,)
            ).fetchone()
        return row["n"]

    def verify_integrity(self, task_id: str) -> bool:
        """
        Verify a task's audit chain.

        Returns:
            True if the chain is intact, raises AuditTamperError otherwise
        """
        with self.db.reading() as conn:
            rows = conn.execute("""
                SELECT sequence, body, prev_hash, hash FROM audit_events
                WHERE task_id = ?
                ORDER BY sequence
            """, (task_id,)).fetchall()

        prev_hash = None
        expected_sequence = 1
        for row in rows:
            if row["sequence"] != expected_sequence:
                raise AuditTamperError(
                    f"Event #{row['sequence']}: sequence gap, expected #{expected_sequence}"
                )
            if row["prev_hash"] != prev_hash:
                raise AuditTamperError(
                    f"Event #{row['sequence']}: previous hash mismatch. "
                    f"Expected {prev_hash}, got {row['prev_hash']}"
                )

            try:
                event = AuditEvent.model_validate_json(row["body"])
            except ValueError as e:
                raise AuditTamperError(f"Event #{row['sequence']}: unreadable body - {e}")

            expected_hash = self._compute_hash(self._content(event), prev_hash)
            if not hmac.compare_digest(row["hash"], expected_hash) or event.hash != row["hash"]:
                raise AuditTamperError(
                    f"Event #{row['sequence']}: hash mismatch. "
                    f"Expected {expected_hash}, got {row['hash']}"
                )

            prev_hash = row["hash"]
            expected_sequence += 1

        return True
