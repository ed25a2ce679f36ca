"""
Checkpoint creation and lookup.

A checkpoint is taken before the first write of a work session and
consists of three parts: the baseline ref (and branch) the work started
from, a snapshot of the full working state including untracked files, and
a rollback branch pointing at the baseline. Creation is all-or-nothing.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import List, Optional

from .errors import CheckpointFailureError, StorageError
from .schema import Checkpoint
from .storage import Database
from .vcs import VcsError, VersionControl

logger = logging.getLogger(__name__)


class CheckpointManager:
    """
    Manages checkpoint creation, storage, and retrieval.

    Checkpoints are immutable and retained for audit; nothing here deletes
    them.
    """

    DEFAULT_BRANCH_PREFIX = "workflow-gate/rollback"

    def __init__(
        self,
        db: Database,
        vcs: VersionControl,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
    ):
        self.db = db
        self.vcs = vcs
        self.branch_prefix = branch_prefix.rstrip("/")
        self._lock = threading.Lock()

    def create_checkpoint(self, task_id: str, session_id: str) -> Checkpoint:
        """
        Create a new checkpoint for a task.

        Args:
            task_id: Task the checkpoint protects
            session_id: Work session the checkpoint anchors

        Returns:
            Checkpoint: The created checkpoint

        Raises:
            CheckpointFailureError: If any step fails. Nothing is recorded
                and partially created refs are removed.
        """
        with self._lock:
            checkpoint_id = self._new_checkpoint_id(task_id)
            created_refs: List[tuple] = []

            try:
                # 1. Baseline
                head = self.vcs.current_head()

                # 2. Snapshot of the full working state
                snapshot_ref = self.vcs.snapshot(
                    f"{task_id}/{checkpoint_id}",
                    f"workflow-gate checkpoint {checkpoint_id} for task {task_id}",
                )
                created_refs.append(("ref", snapshot_ref))

                # 3. Rollback anchor at the pre-change baseline
                rollback_ref = self.vcs.create_branch(
                    f"{self.branch_prefix}/{task_id}/{checkpoint_id}", head.ref
                )
                created_refs.append(("branch", rollback_ref))

                checkpoint = Checkpoint(
                    id=checkpoint_id,
                    task_id=task_id,
                    session_id=session_id,
                    branch=head.branch,
                    baseline_ref=head.ref,
                    snapshot_ref=snapshot_ref,
                    rollback_ref=rollback_ref,
                )
                self._save_checkpoint(checkpoint)

            except (VcsError, StorageError) as e:
                self._undo(created_refs)
                logger.error(f"Checkpoint {checkpoint_id} for task {task_id} failed: {e}")
                raise CheckpointFailureError(
                    f"could not establish a rollback anchor for task {task_id}: {e}"
                ) from e

        logger.info(f"Created checkpoint: {checkpoint_id} (baseline {head.ref[:12]} on {head.branch})")
        return checkpoint

    def _new_checkpoint_id(self, task_id: str) -> str:
        """
        Time-derived id, unique within the task.

        Two checkpoints inside the same microsecond get a numeric suffix.
        """
        timestamp = datetime.now(timezone.utc)
        base = f"cp_{timestamp.strftime('%Y%m%d_%H%M%S')}_{timestamp.microsecond:06d}"
        existing = set(self._ids_with_prefix(task_id, base))

        candidate = base
        suffix = 1
        while candidate in existing:
            candidate = f"{base}_{suffix}"
            suffix += 1
        return candidate

    def _ids_with_prefix(self, task_id: str, prefix: str) -> List[str]:
        try:
            with self.db.reading() as conn:
                rows = conn.execute(
                    "SELECT id FROM checkpoints WHERE task_id = ? AND id LIKE ?",
                    (task_id, f"{prefix}%")
                ).fetchall()
        except StorageError as e:
            raise CheckpointFailureError(f"could not check existing checkpoint ids: {e}") from e
        return [row["id"] for row in rows]

    def _save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Save a checkpoint row."""
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO checkpoints
                (id, task_id, session_id, branch, baseline_ref, snapshot_ref, rollback_ref, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                checkpoint.id,
                checkpoint.task_id,
                checkpoint.session_id,
                checkpoint.branch,
                checkpoint.baseline_ref,
                checkpoint.snapshot_ref,
                checkpoint.rollback_ref,
                checkpoint.created_at.isoformat(),
            ))

    def _undo(self, created_refs: List[tuple]) -> None:
        """Best-effort removal of refs created before a failure."""
        for kind, name in reversed(created_refs):
            try:
                if kind == "branch":
                    self.vcs.delete_branch(name)
                else:
                    self.vcs.delete_ref(name)
            except VcsError as e:
                logger.warning(f"Could not remove partial checkpoint {kind} {name}: {e}")

    def get_checkpoint(self, task_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        """Get a specific checkpoint by ID."""
        with self.db.reading() as conn:
            row = conn.execute(
                "SELECT * FROM checkpoints WHERE task_id = ? AND id = ?",
                (task_id, checkpoint_id)
            ).fetchone()
        return _from_row(row) if row else None

    def list_checkpoints(self, task_id: str) -> List[Checkpoint]:
        """
        List a task's checkpoints.

        Returns:
            List of checkpoints, oldest first
        """
        with self.db.reading() as conn:
            rows = conn.execute(
                "SELECT * FROM checkpoints WHERE task_id = ? ORDER BY created_at, id",
                (task_id,)
            ).fetchall()
        return [_from_row(row) for row in rows]

    def latest_for_session(self, task_id: str, session_id: str) -> Optional[Checkpoint]:
        """Most recent checkpoint of a work session, if any."""
        with self.db.reading() as conn:
            row = conn.execute("""
                SELECT * FROM checkpoints
                WHERE task_id = ? AND session_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
            """, (task_id, session_id)).fetchone()
        return _from_row(row) if row else None

    def rollback_instructions(self, checkpoint: Checkpoint) -> str:
        """
        Human-readable steps for returning to a checkpoint.

        The engine never runs these itself.
        """
        lines = [
            f"Checkpoint: {checkpoint.id}",
            f"Created: {checkpoint.created_at.isoformat()}",
            f"Baseline: {checkpoint.baseline_ref} ({checkpoint.branch})",
            "",
            "To discard changes and return to the baseline:",
            f"  git reset --hard {checkpoint.rollback_ref}",
            "",
            "To restore the working state captured at the checkpoint:",
            f"  git checkout {checkpoint.snapshot_ref} -- .",
        ]
        return "\n".join(lines)


def _from_row(row: sqlite3.Row) -> Checkpoint:
    return Checkpoint(
        id=row["id"],
        task_id=row["task_id"],
        session_id=row["session_id"],
        branch=row["branch"],
        baseline_ref=row["baseline_ref"],
        snapshot_ref=row["snapshot_ref"],
        rollback_ref=row["rollback_ref"],
        created_at=row["created_at"],
    )
