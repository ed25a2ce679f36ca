"""
Audit report rendering.

Produces a markdown report of everything the gate decided for a task:
phase summary, every audit event, checkpoints, the authorizations that
were used, net file changes since the first checkpoint, and the result of
the audit chain integrity check.

Rendering only reads state, so two renders of the same state differ only
in the ``Rendered:`` line.
"""

import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .audit import AuditLog
from .checkpoint import CheckpointManager
from .errors import AuditTamperError
from .ledger import AuthorizationLedger
from .phases import TaskStore
from .proposals import ProposalStore
from .schema import AuditEvent, AuthorizationRecord, Checkpoint, Decision, Task
from .utils import atomic_write_text, slugify
from .vcs import DiffStat, VcsError, VersionControl

logger = logging.getLogger(__name__)


def _both_zones(ts: Optional[datetime]) -> str:
    if ts is None:
        return "-"
    utc = ts.astimezone(timezone.utc)
    local = ts.astimezone()
    return f"{local.strftime('%Y-%m-%d %H:%M:%S %Z')} ({utc.strftime('%Y-%m-%d %H:%M:%S')} UTC)"


def _cell(text: Optional[str]) -> str:
    if text is None or text == "":
        return "-"
    return str(text).replace("|", "\\|").replace("\n", " ")


@dataclass
class AuditReport:
    """Everything needed to render the report for one task."""
    task: Task
    events: List[AuditEvent]
    checkpoints: List[Checkpoint]
    authorizations: List[AuthorizationRecord]
    diff: Optional[DiffStat]
    diff_error: Optional[str]
    integrity_ok: bool
    integrity_detail: str
    awaiting_result: List[Decision] = field(default_factory=list)
    rendered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def started_at(self) -> datetime:
        return self.task.created_at

    @property
    def ended_at(self) -> Optional[datetime]:
        if self.events:
            return max(self.events[-1].timestamp, self.task.updated_at)
        return self.task.updated_at

    def to_markdown(self) -> str:
        task = self.task
        lines = [
            f"# Audit Report: {task.id}",
            "",
            f"Rendered: {self.rendered_at.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            "## Task",
            "",
            f"- **Description:** {task.description or '-'}",
            f"- **Complexity level:** {task.complexity_level}",
            f"- **Status:** {task.status.value}",
            f"- **Started:** {_both_zones(self.started_at)}",
            f"- **Ended:** {_both_zones(self.ended_at)}",
            "",
            "## Phases",
            "",
            "| Phase | State | Re-entries |",
            "|-------|-------|------------|",
        ]
        for phase in task.required_phases:
            if task.is_completed(phase):
                state = "completed"
            elif phase == task.current_phase:
                state = "current"
            else:
                state = "pending"
            lines.append(f"| {phase.value} | {state} | {task.reentries.get(phase.value, 0)} |")
        if task.blocked_reason:
            lines.extend(["", f"**Hard block:** {task.blocked_reason}"])

        lines.extend(["", "## Events", ""])
        if self.events:
            lines.append("| # | Time (UTC) | Phase | Command | Class | Decision | Exit | Duration |")
            lines.append("|---|------------|-------|---------|-------|----------|------|----------|")
            for event in self.events:
                exit_code = "-" if event.exit_code is None else str(event.exit_code)
                lines.append(
                    f"| {event.sequence} "
                    f"| {event.timestamp.astimezone(timezone.utc).strftime('%H:%M:%S')} "
                    f"| {event.phase.value if event.phase else '-'} "
                    f"| `{_cell(event.proposed_command)}` "
                    f"| {event.classification.value} "
                    f"| {event.decision_code.value} "
                    f"| {exit_code} "
                    f"| {event.duration_ms}ms |"
                )
            denials = [e for e in self.events if e.reason and e.decision.value == "denied"]
            if denials:
                lines.extend(["", "### Denials", ""])
                for event in denials:
                    lines.append(f"- #{event.sequence} `{event.proposed_command}`: {event.reason}")
        else:
            lines.append("_No commands proposed._")

        if self.awaiting_result:
            lines.extend(["", "### Approved, No Result Recorded", ""])
            for decision in self.awaiting_result:
                lines.append(
                    f"- `{decision.command}` ({decision.classification.value}) approved "
                    f"{_both_zones(decision.decided_at)} as {decision.proposal_id}"
                )

        lines.extend(["", "## Checkpoints", ""])
        if self.checkpoints:
            for cp in self.checkpoints:
                lines.append(
                    f"- **{cp.id}** at {_both_zones(cp.created_at)}: baseline `{cp.baseline_ref[:12]}` "
                    f"on {cp.branch}, rollback `{cp.rollback_ref}`"
                )
        else:
            lines.append("_No checkpoints._")

        lines.extend(["", "## Authorizations Used", ""])
        if self.authorizations:
            for record in self.authorizations:
                used = f", consumed {_both_zones(record.consumed_at)}" if record.consumed_at else ""
                lines.append(
                    f"- `{record.command_pattern}` ({record.scope.value}) "
                    f"by {record.authorized_by}{used}"
                )
        else:
            lines.append("_None._")

        lines.extend(["", "## Net Changes", ""])
        if self.diff is not None:
            lines.append(
                f"{self.diff.files_changed} file(s) changed, "
                f"{self.diff.insertions} insertion(s), {self.diff.deletions} deletion(s)"
            )
            if self.diff.files:
                lines.append("")
                for change in self.diff.files:
                    if change.binary:
                        lines.append(f"- {change.path} (binary)")
                    else:
                        lines.append(f"- {change.path} (+{change.insertions} -{change.deletions})")
        else:
            lines.append(f"_Unavailable: {self.diff_error}_")

        lines.extend([
            "",
            "## Integrity",
            "",
            f"{'PASS' if self.integrity_ok else 'FAIL'}: {self.integrity_detail}",
            "",
        ])
        return "\n".join(lines)


class ReportBuilder:
    """Collects task state into an AuditReport and writes it out."""

    def __init__(
        self,
        tasks: TaskStore,
        audit: AuditLog,
        checkpoints: CheckpointManager,
        ledger: AuthorizationLedger,
        vcs: VersionControl,
        proposals: Optional[ProposalStore] = None,
    ):
        self.tasks = tasks
        self.audit = audit
        self.checkpoints = checkpoints
        self.ledger = ledger
        self.vcs = vcs
        self.proposals = proposals

    def render(self, task_id: str) -> AuditReport:
        task = self.tasks.get(task_id)
        events = self.audit.events_for_task(task_id)
        checkpoints = self.checkpoints.list_checkpoints(task_id)
        awaiting = self.proposals.awaiting_result(task_id) if self.proposals else []
        used_ids = [e.authorization_id for e in events if e.authorization_id]
        used_ids += [d.authorization_id for d in awaiting if d.authorization_id]
        authorizations = self.ledger.used_for_task(task_id, used_ids)

        diff, diff_error = None, None
        if checkpoints:
            try:
                diff = self.vcs.diff_stat(checkpoints[0].baseline_ref)
            except VcsError as e:
                diff_error = str(e)
                logger.warning(f"Could not compute diff for report of task {task_id}: {e}")
        else:
            diff_error = "no checkpoint was taken"

        try:
            self.audit.verify_integrity(task_id)
            integrity_ok = True
            integrity_detail = f"{len(events)} event(s), hash chain intact"
        except AuditTamperError as e:
            integrity_ok = False
            integrity_detail = e.reason
            logger.error(f"Audit chain for task {task_id} failed verification: {e.reason}")

        return AuditReport(
            task=task,
            events=events,
            checkpoints=checkpoints,
            authorizations=authorizations,
            diff=diff,
            diff_error=diff_error,
            integrity_ok=integrity_ok,
            integrity_detail=integrity_detail,
            awaiting_result=awaiting,
        )

    def output_directory(self, extras_dir: Path) -> Path:
        """
        The project extras directory if it exists and is ignored by version
        control, otherwise the system temp directory.
        """
        extras_dir = Path(extras_dir)
        if extras_dir.is_dir():
            try:
                if self.vcs.is_ignored(extras_dir):
                    return extras_dir
            except VcsError as e:
                logger.warning(f"Could not check ignore status of {extras_dir}: {e}")
            logger.info(f"{extras_dir} is not ignored by version control; writing report to temp dir")
        return Path(tempfile.gettempdir())

    def filename(self, report: AuditReport) -> str:
        try:
            repo = self.vcs.repo_name()
            branch = self.vcs.current_head().branch
        except VcsError as e:
            logger.warning(f"Could not read repo/branch for report name: {e}")
            repo, branch = "repo", "unknown"
        stamp = report.rendered_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        return f"audit-{slugify(repo)}-{slugify(branch)}-{stamp.lower()}.md"

    def write(self, report: AuditReport, extras_dir: Path) -> Path:
        """Write a rendered report. Returns the file path.

        Never overwrites an earlier report; a clashing name gets a numeric
        suffix.
        """
        directory = self.output_directory(extras_dir)
        name = self.filename(report)
        path = directory / name
        counter = 1
        while path.exists():
            path = directory / f"{Path(name).stem}-{counter}.md"
            counter += 1
        atomic_write_text(path, report.to_markdown())
        logger.info(f"Wrote audit report for task {report.task.id} to {path}")
        return path
