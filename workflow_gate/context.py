"""
Context mirror - a human-readable projection of gate state.

The gate database is the source of truth. After each state change the
engine hands a ContextSnapshot to the injected mirror, which may persist it
however it likes. MarkdownContextMirror writes three files an agent or human
can read at a glance:

    tasks.md           every task with its level, phase and status
    active-context.md  the task being worked on now
    progress.md        phase checklist of the active task

plus a machine-readable context.json used by ``load``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from .schema import Task, _utc_now
from .utils import atomic_write_text

logger = logging.getLogger(__name__)


class ContextSnapshot(BaseModel):
    """State handed to a context mirror."""
    tasks: List[Task] = Field(default_factory=list)
    active_task_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def active_task(self) -> Optional[Task]:
        for task in self.tasks:
            if task.id == self.active_task_id:
                return task
        return None


class ContextMirror(ABC):
    """Persisted projection of gate state."""

    @abstractmethod
    def load(self) -> Optional[ContextSnapshot]:
        """Last saved snapshot, or None if nothing was saved."""

    @abstractmethod
    def save(self, snapshot: ContextSnapshot) -> None:
        """Persist a snapshot."""


class MarkdownContextMirror(ContextMirror):
    """Writes the snapshot as markdown files in a directory."""

    SNAPSHOT_FILE = "context.json"

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def load(self) -> Optional[ContextSnapshot]:
        path = self.directory / self.SNAPSHOT_FILE
        if not path.exists():
            return None
        try:
            return ContextSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable context snapshot {path}: {e}")
            return None

    def save(self, snapshot: ContextSnapshot) -> None:
        atomic_write_text(self.directory / "tasks.md", self._render_tasks(snapshot))
        atomic_write_text(self.directory / "active-context.md", self._render_active(snapshot))
        atomic_write_text(self.directory / "progress.md", self._render_progress(snapshot))
        atomic_write_text(self.directory / self.SNAPSHOT_FILE, snapshot.model_dump_json(indent=2))
        logger.debug(f"Context mirror updated in {self.directory}")

    def _render_tasks(self, snapshot: ContextSnapshot) -> str:
        lines = ["# Tasks", ""]
        if not snapshot.tasks:
            lines.append("_No tasks._")
        for task in snapshot.tasks:
            marker = "x" if task.is_archived else " "
            title = task.description or task.id
            lines.append(
                f"- [{marker}] **{task.id}** {title} "
                f"(level {task.complexity_level}, {task.current_phase.value}, {task.status.value})"
            )
        lines.append("")
        return "\n".join(lines)

    def _render_active(self, snapshot: ContextSnapshot) -> str:
        task = snapshot.active_task
        lines = ["# Active Context", ""]
        if task is None:
            lines.extend(["_No active task._", ""])
            return "\n".join(lines)
        lines.extend([
            f"- **Task:** {task.id}",
            f"- **Description:** {task.description or '-'}",
            f"- **Phase:** {task.current_phase.value}",
            f"- **Session:** {task.session_id}",
            f"- **Updated:** {task.updated_at.isoformat()}",
        ])
        if task.blocked_reason:
            lines.append(f"- **Blocked:** {task.blocked_reason}")
        lines.append("")
        return "\n".join(lines)

    def _render_progress(self, snapshot: ContextSnapshot) -> str:
        task = snapshot.active_task
        lines = ["# Progress", ""]
        if task is None:
            lines.extend(["_No active task._", ""])
            return "\n".join(lines)
        for phase in task.required_phases:
            if task.is_completed(phase):
                lines.append(f"- [x] {phase.value}")
            elif phase == task.current_phase:
                lines.append(f"- [ ] {phase.value} (in progress)")
            else:
                lines.append(f"- [ ] {phase.value}")
        lines.append("")
        return "\n".join(lines)
