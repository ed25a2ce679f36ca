"""
Approved proposals awaiting (or holding) their execution result.

Every approval is stored here when ``propose`` returns it. The result of the
command can only be recorded against a stored approval, and only once, so
the audit log never holds an approved event the engine did not decide.
"""

from typing import List, Optional

from .schema import Decision
from .storage import Database


class ProposalStore:
    """SQLite-backed record of approved proposals."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, decision: Decision) -> None:
        """
        Persist an approved decision.

        Raises:
            ValueError: If the decision is a denial
            StorageError: If it cannot be written
        """
        if not decision.approved:
            raise ValueError(f"proposal {decision.proposal_id} was denied; only approvals are stored")
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO proposals (id, task_id, body, proposed_at)
                VALUES (?, ?, ?, ?)
            """, (
                decision.proposal_id,
                decision.task_id,
                decision.model_dump_json(),
                decision.decided_at.isoformat(),
            ))

    def get(self, proposal_id: str) -> Optional[Decision]:
        with self.db.reading() as conn:
            row = conn.execute(
                "SELECT body FROM proposals WHERE id = ?", (proposal_id,)
            ).fetchone()
        return Decision.model_validate_json(row["body"]) if row else None

    def result_event_id(self, proposal_id: str) -> Optional[str]:
        with self.db.reading() as conn:
            row = conn.execute(
                "SELECT result_event_id FROM proposals WHERE id = ?", (proposal_id,)
            ).fetchone()
        return row["result_event_id"] if row else None

    def mark_recorded(self, proposal_id: str, event_id: str) -> bool:
        """Link a proposal to its result event. False if it already had one."""
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE proposals SET result_event_id = ?
                WHERE id = ? AND result_event_id IS NULL
            """, (event_id, proposal_id))
            return cursor.rowcount == 1

    def awaiting_result(self, task_id: str) -> List[Decision]:
        """Approvals whose result was never reported, in arrival order."""
        with self.db.reading() as conn:
            rows = conn.execute("""
                SELECT body FROM proposals
                WHERE task_id = ? AND result_event_id IS NULL
                ORDER BY proposed_at, id
            """, (task_id,)).fetchall()
        return [Decision.model_validate_json(row["body"]) for row in rows]
