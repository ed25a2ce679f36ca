"""
Phase requirements and the per-task phase state machine.

The required phase sequence is a closed lookup keyed by complexity level.
A task moves forward one required phase at a time, may re-enter its
current phase, and never moves backward (re-opening a phase means a new
task). Entering Build before a required Creative phase is complete is a
hard block: write-class proposals are denied until Creative is done.
"""

import logging
import threading
import uuid
from typing import Dict, List, Optional, Tuple

from .errors import PhaseViolationError, TaskNotFoundError
from .schema import Phase, Task, TaskStatus
from .storage import Database

logger = logging.getLogger(__name__)


PHASE_REQUIREMENTS: Dict[int, Tuple[Phase, ...]] = {
    1: (Phase.INIT, Phase.BUILD, Phase.REVIEW),
    2: (Phase.INIT, Phase.PLAN, Phase.QA, Phase.BUILD, Phase.REVIEW),
    3: (Phase.INIT, Phase.PLAN, Phase.CREATIVE, Phase.QA, Phase.BUILD, Phase.REVIEW, Phase.ARCHIVE),
    4: (Phase.INIT, Phase.PLAN, Phase.CREATIVE, Phase.QA, Phase.BUILD, Phase.REVIEW, Phase.ARCHIVE),
}

# Phases that must be complete before any write-class proposal is approved
WRITE_GATING_PHASES: Tuple[Phase, ...] = (Phase.CREATIVE,)


def required_phases(complexity_level: int) -> Tuple[Phase, ...]:
    """Required phase sequence for a complexity level."""
    try:
        return PHASE_REQUIREMENTS[complexity_level]
    except KeyError:
        raise ValueError(
            f"Unknown complexity level {complexity_level}; expected one of {sorted(PHASE_REQUIREMENTS)}"
        )


def new_session_id() -> str:
    return f"sess-{uuid.uuid4().hex[:8]}"


class TaskStore:
    """
    Persists tasks in the ``tasks`` table.

    Tasks are never deleted; archiving only changes their status.
    """

    def __init__(self, db: Database):
        self.db = db

    def create(self, complexity_level: int, description: str = "", task_id: Optional[str] = None) -> Task:
        phases = list(required_phases(complexity_level))
        task = Task(
            id=task_id or f"task-{uuid.uuid4().hex[:8]}",
            complexity_level=complexity_level,
            required_phases=phases,
            current_phase=phases[0],
            session_id=new_session_id(),
            description=description,
        )
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO tasks (id, complexity_level, status, body, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                task.id,
                task.complexity_level,
                task.status.value,
                task.model_dump_json(),
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
            ))
        logger.info(f"Created task {task.id} (level {complexity_level}: {' → '.join(p.value for p in phases)})")
        return task

    def get(self, task_id: str) -> Task:
        """
        Load a task.

        Raises:
            TaskNotFoundError: If no task has this id
        """
        with self.db.reading() as conn:
            row = conn.execute("SELECT body FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise TaskNotFoundError(f"unknown task {task_id}")
        return Task.model_validate_json(row["body"])

    def save(self, task: Task) -> None:
        task.update_timestamp()
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE tasks SET status = ?, body = ?, updated_at = ?
                WHERE id = ?
            """, (task.status.value, task.model_dump_json(), task.updated_at.isoformat(), task.id))
            if cursor.rowcount != 1:
                raise TaskNotFoundError(f"unknown task {task.id}")

    def list(self, include_archived: bool = False) -> List[Task]:
        query = "SELECT body FROM tasks"
        params: tuple = ()
        if not include_archived:
            query += " WHERE status = ?"
            params = (TaskStatus.ACTIVE.value,)
        query += " ORDER BY created_at"
        with self.db.reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Task.model_validate_json(row["body"]) for row in rows]


class PhaseStateMachine:
    """
    Enforces the required phase order of each task.

    Each task is driven by one sequential actor; the lock only guards
    against accidental concurrent use of one machine instance.
    """

    def __init__(self, tasks: TaskStore):
        self.tasks = tasks
        self._lock = threading.Lock()

    def advance(self, task_id: str, target: Phase) -> Task:
        """
        Move a task into ``target``.

        Legal moves: the next required phase after the current one, or
        re-entering the current phase.

        Raises:
            PhaseViolationError: If the move skips, reorders or leaves the
                task's required phases. Entering Build with Creative
                incomplete also records a hard block on the task.
        """
        target = Phase(target)
        with self._lock:
            task = self.tasks.get(task_id)
            try:
                self._check_transition(task, target)
            except PhaseViolationError as e:
                if target == Phase.BUILD and e.missing_phase in {p.value for p in WRITE_GATING_PHASES}:
                    task.blocked_reason = e.reason
                    self.tasks.save(task)
                    logger.warning(f"Hard block on task {task.id}: {e.reason}")
                else:
                    logger.warning(f"Rejected phase transition on task {task.id}: {e.reason}")
                raise

            if target == task.current_phase:
                count = task.reentries.get(target.value, 0) + 1
                task.reentries[target.value] = count
                logger.info(f"Task {task.id} re-entered {target.value} (run {count + 1})")
            else:
                previous = task.current_phase
                if previous not in task.completed_phases:
                    task.completed_phases.append(previous)
                task.current_phase = target
                logger.info(f"Task {task.id} advanced {previous.value} → {target.value}")

            if task.blocked_reason and self.pending_block(task) is None:
                logger.info(f"Hard block on task {task.id} resolved")
                task.blocked_reason = None

            self.tasks.save(task)
            return task

    def _check_transition(self, task: Task, target: Phase) -> None:
        if task.is_archived:
            raise PhaseViolationError(
                f"task {task.id} is archived",
                "create a new task to continue work",
            )

        phases = task.required_phases
        if target not in phases:
            raise PhaseViolationError(
                f"{target.value} is not a required phase for complexity level {task.complexity_level}",
                f"advance through {' → '.join(p.value for p in phases)}",
            )

        if target == task.current_phase:
            return

        current_index = phases.index(task.current_phase)
        target_index = phases.index(target)

        if target_index < current_index:
            raise PhaseViolationError(
                f"cannot move task {task.id} backward from {task.current_phase.value} to {target.value}",
                f"create a new task to re-open {target.value}",
            )

        if target_index > current_index + 1:
            # The first skipped phase is the one that must be completed
            missing = phases[current_index + 1]
            if target == Phase.BUILD:
                for gating in WRITE_GATING_PHASES:
                    if gating in phases and not task.is_completed(gating):
                        missing = gating
                        break
            raise PhaseViolationError(
                f"cannot enter {target.value} before {missing.value} is complete "
                f"(task {task.id} is in {task.current_phase.value})",
                f"complete {missing.value} phase before {target.value}",
                missing_phase=missing.value,
            )

    def pending_block(self, task: Task) -> Optional[PhaseViolationError]:
        """
        The hard block currently in force for a task, if any.

        A write-gating phase that is required and not yet completed blocks
        every write-class proposal.
        """
        for gating in WRITE_GATING_PHASES:
            if gating in task.required_phases and not task.is_completed(gating):
                reason = task.blocked_reason or (
                    f"{gating.value} phase is required for complexity level "
                    f"{task.complexity_level} and is not complete"
                )
                return PhaseViolationError(
                    reason,
                    f"complete {gating.value} phase before Build",
                    missing_phase=gating.value,
                )
        return None

    def archive(self, task_id: str) -> Task:
        """
        Close a task. Tasks that end in Archive must be in it; others must
        be in their terminal phase.
        """
        with self._lock:
            task = self.tasks.get(task_id)
            if task.is_archived:
                return task
            if task.current_phase != task.terminal_phase:
                raise PhaseViolationError(
                    f"task {task.id} is in {task.current_phase.value}, not its terminal phase "
                    f"{task.terminal_phase.value}",
                    missing_phase=task.terminal_phase.value,
                )
            if task.current_phase not in task.completed_phases:
                task.completed_phases.append(task.current_phase)
            task.status = TaskStatus.ARCHIVED
            self.tasks.save(task)
            logger.info(f"Archived task {task.id}")
            return task
