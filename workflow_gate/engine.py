"""
Workflow Gate Engine - the single entry point for agent proposals.

Every command an agent wants to run is proposed here first. The engine
classifies it, checks the task's phase gating, requires an explicit
authorization for remote writes, takes a checkpoint before the first write
of a work session, and answers with a Decision. The engine never executes
anything itself; the caller runs approved commands and reports the result
back with ``record_result``.

Decision flow for ``propose``:
    1. classify
    2. write-class while a hard block is in force  -> denied:phase-violation
    3. remote-write without a usable authorization -> ask the approval
       channel if one is configured, else denied:unauthorized
    4. write-class without a checkpoint for the current session -> create
       one; failure -> denied:checkpoint-failed
    5. spend the authorization (single-use), persist the approval and approve

Denials are appended to the audit log immediately. Approvals are stored
until ``record_result`` appends their event; only stored approvals can be
recorded.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .approval import ApprovalChannel, QueueApprovalChannel
from .audit import AuditLog
from .checkpoint import CheckpointManager
from .classifier import CommandClassifier
from .commands import TRIGGERS, Trigger, parse_trigger
from .config import GateConfig, load_config
from .context import ContextMirror, ContextSnapshot, MarkdownContextMirror
from .errors import (
    AuthorizationError,
    CheckpointFailureError,
    GateError,
    PhaseViolationError,
    StorageError,
)
from .ledger import AuthorizationLedger
from .paths import GatePaths
from .phases import PhaseStateMachine, TaskStore, new_session_id
from .proposals import ProposalStore
from .report import AuditReport, ReportBuilder
from .schema import (
    AuditEvent,
    AuthorizationRecord,
    AuthorizationScope,
    Category,
    Checkpoint,
    Classification,
    Decision,
    DecisionCode,
    DecisionOutcome,
    Phase,
    Task,
)
from .storage import Database
from .vcs import GitVersionControl, VersionControl

logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    """Outcome of running a trigger word."""
    trigger: Trigger
    task: Task
    report: Optional[AuditReport] = None
    report_path: Optional[Path] = None


class WorkflowGateEngine:
    """
    Gates agent-proposed commands for a set of tasks.

    One sequential actor per task; independent tasks may be driven
    concurrently through the same engine.
    """

    def __init__(
        self,
        db: Database,
        vcs: VersionControl,
        classifier: Optional[CommandClassifier] = None,
        approval_channel: Optional[ApprovalChannel] = None,
        context_mirror: Optional[ContextMirror] = None,
        branch_prefix: str = CheckpointManager.DEFAULT_BRANCH_PREFIX,
        extras_dir: Union[str, Path] = ".extras",
    ):
        self.db = db
        self.vcs = vcs
        self.classifier = classifier or CommandClassifier()
        self.approval_channel = approval_channel
        self.context_mirror = context_mirror
        self.extras_dir = Path(extras_dir)

        self.tasks = TaskStore(db)
        self.phases = PhaseStateMachine(self.tasks)
        self.ledger = AuthorizationLedger(db)
        self.audit = AuditLog(db)
        self.checkpoints = CheckpointManager(db, vcs, branch_prefix=branch_prefix)
        self.proposals = ProposalStore(db)
        self.reports = ReportBuilder(
            self.tasks, self.audit, self.checkpoints, self.ledger, vcs, proposals=self.proposals
        )

    @classmethod
    def from_config(
        cls,
        paths: Optional[GatePaths] = None,
        config: Optional[GateConfig] = None,
        use_approval_queue: bool = False,
    ) -> "WorkflowGateEngine":
        """
        Build an engine for a repository from its .workflow_gate.yaml.

        Raises:
            ConfigurationError: If the config or rule files are invalid
            StorageError: If the gate database cannot be opened
        """
        paths = paths or GatePaths()
        config = config or load_config(paths)
        paths.ensure_dirs()

        db = Database(paths.db_file(config.db_path))
        mirror = None
        if config.context.enabled:
            mirror = MarkdownContextMirror(paths.context_dir(config.context.directory))

        return cls(
            db=db,
            vcs=GitVersionControl(paths.base_dir),
            classifier=config.build_classifier(paths),
            approval_channel=QueueApprovalChannel(db) if use_approval_queue else None,
            context_mirror=mirror,
            branch_prefix=config.checkpoint.branch_prefix,
            extras_dir=paths.resolve(config.report.extras_dir),
        )

    # =========================================================================
    # Tasks and phases
    # =========================================================================

    def create_task(self, complexity_level: int, description: str = "", task_id: Optional[str] = None) -> Task:
        task = self.tasks.create(complexity_level, description=description, task_id=task_id)
        self._sync_context(task.id)
        return task

    def get_task(self, task_id: str) -> Task:
        return self.tasks.get(task_id)

    def advance(self, task_id: str, phase: Union[Phase, str]) -> Task:
        """
        Move a task to a phase.

        Raises:
            PhaseViolationError: If the move is not allowed
        """
        try:
            task = self.phases.advance(task_id, Phase(phase))
        finally:
            self._sync_context(task_id)
        return task

    def start_session(self, task_id: str) -> Task:
        """
        Begin a new work session; the next write takes a fresh checkpoint.
        """
        task = self.tasks.get(task_id)
        previous = task.session_id
        task.session_id = new_session_id()
        self.tasks.save(task)
        logger.info(f"Task {task_id}: new work session {task.session_id} (was {previous})")
        self._sync_context(task_id)
        return task

    def archive(self, task_id: str) -> Task:
        """Close a task and revoke its session-scoped authorizations."""
        task = self.phases.archive(task_id)
        self.ledger.revoke_session_scope(task_id)
        self._sync_context(task_id)
        return task

    def run_command(self, task_id: str, trigger: Union[Trigger, str]) -> TriggerResult:
        """
        Run a trigger word against a task.

        Raises:
            ValueError: If the trigger is unknown
            PhaseViolationError: If the phase move is not allowed
        """
        trigger = trigger if isinstance(trigger, Trigger) else parse_trigger(trigger)
        action = TRIGGERS[trigger]
        task = self.tasks.get(task_id)
        logger.info(f"Trigger {trigger.value} on task {task_id}")

        if action.archive and action.phase not in task.required_phases:
            # Lower levels end in Review and archive from there
            task = self.archive(task_id)
            return TriggerResult(trigger=trigger, task=task)

        target = action.phase or task.current_phase
        task = self.advance(task_id, target)
        if action.archive:
            task = self.archive(task_id)

        result = TriggerResult(trigger=trigger, task=task)
        if action.render_report:
            result.report = self.render_report(task_id)
            result.report_path = self.reports.write(result.report, self.extras_dir)
        return result

    # =========================================================================
    # Authorization
    # =========================================================================

    def authorize(
        self,
        task_id: str,
        command: str,
        authorized_by: str,
        scope: AuthorizationScope = AuthorizationScope.SINGLE_USE,
    ) -> AuthorizationRecord:
        """
        Record an explicit authorization for a command (or, with session
        scope, a classifier rule name such as ``git-push``).

        Raises:
            PhaseViolationError: If the task is archived
        """
        task = self.tasks.get(task_id)
        if task.is_archived:
            raise PhaseViolationError(
                f"task {task_id} is archived",
                "create a new task to continue work",
            )
        return self.ledger.record(task_id, command, authorized_by, scope=scope)

    # =========================================================================
    # Proposals
    # =========================================================================

    def propose(
        self,
        task_id: str,
        command: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Decision:
        """
        Decide whether a command may run.

        Args:
            task_id: Task the command belongs to
            command: The exact command line the agent wants to run
            cancel: Aborts a pending human approval when set
            timeout: Seconds to wait for a human approval

        Returns:
            Decision. Gate errors never escape; they become denials.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        proposal_id = f"prop-{uuid.uuid4().hex[:12]}"
        classification = self.classifier.classify(command)
        logger.debug(
            f"Proposal {proposal_id} task={task_id}: `{command}` -> "
            f"{classification.category.value} ({classification.rule})"
        )
        try:
            task = self.tasks.get(task_id)
        except StorageError as e:
            logger.error(f"Task store unavailable for task {task_id}: {e}")
            return self._deny(
                proposal_id, task_id, None, command, classification,
                DecisionCode.DENIED_UNAUTHORIZED,
                AuthorizationError(command, f"task store unavailable: {e.reason}"),
            )

        try:
            if task.is_archived:
                raise PhaseViolationError(
                    f"task {task_id} is archived",
                    "create a new task to continue work",
                )

            if classification.category.is_write:
                block = self.phases.pending_block(task)
                if block is not None:
                    raise block

            if classification.category == Category.REMOTE_WRITE:
                self._require_authorization(task, command, classification, cancel, timeout)

            checkpoint = None
            if classification.category.is_write:
                checkpoint = self._ensure_checkpoint(task)

            authorization = None
            if classification.category == Category.REMOTE_WRITE:
                authorization = self._consume_authorization(task, command, classification, proposal_id)

            decision = Decision(
                proposal_id=proposal_id,
                task_id=task_id,
                command=command,
                code=DecisionCode.APPROVED,
                classification=classification.category,
                matched_rule=classification.rule,
                phase=task.current_phase,
                checkpoint_id=checkpoint.id if checkpoint else None,
                authorization_id=authorization.id if authorization else None,
            )
            self._save_proposal(decision)

        except PhaseViolationError as e:
            code, error = DecisionCode.DENIED_PHASE_VIOLATION, e
        except AuthorizationError as e:
            code, error = DecisionCode.DENIED_UNAUTHORIZED, e
        except CheckpointFailureError as e:
            code, error = DecisionCode.DENIED_CHECKPOINT_FAILED, e
        except StorageError as e:
            logger.error(f"Storage failure while deciding `{command}` for task {task_id}: {e}")
            code, error = DecisionCode.DENIED_UNAUTHORIZED, e
        else:
            logger.info(f"Approved {classification.category.value} `{command}` for task {task_id}")
            return decision

        return self._deny(proposal_id, task_id, task.current_phase, command, classification, code, error)

    def _require_authorization(
        self,
        task: Task,
        command: str,
        classification: Classification,
        cancel: Optional[threading.Event],
        timeout: Optional[float],
    ) -> None:
        try:
            if self.ledger.is_authorized(task.id, command, rule=classification.rule):
                return
        except StorageError as e:
            logger.error(f"Authorization ledger unavailable for task {task.id}: {e}")
            raise AuthorizationError(command, f"authorization ledger unavailable: {e.reason}")

        if self.approval_channel is None:
            raise AuthorizationError(command)

        try:
            response = self.approval_channel.request(
                task.id, command, rule=classification.rule, cancel=cancel, timeout=timeout
            )
        except StorageError as e:
            logger.error(f"Approval channel unavailable for task {task.id}: {e}")
            raise AuthorizationError(command, f"approval channel unavailable: {e.reason}")
        if not response.approved:
            detail = f": {response.reason}" if response.reason else ""
            raise AuthorizationError(
                command,
                f"approval for remote-write `{command}` was {response.outcome.value}{detail}",
            )

        try:
            self.ledger.record(
                task.id,
                response.pattern or command,
                authorized_by=response.decided_by or "approval-channel",
                scope=response.scope,
            )
        except StorageError as e:
            logger.error(f"Could not record approval for task {task.id}: {e}")
            raise AuthorizationError(command, f"approval could not be recorded: {e.reason}")

    def _ensure_checkpoint(self, task: Task) -> Checkpoint:
        try:
            existing = self.checkpoints.latest_for_session(task.id, task.session_id)
        except StorageError as e:
            raise CheckpointFailureError(f"could not look up checkpoints for task {task.id}: {e.reason}")
        if existing is not None:
            return existing
        return self.checkpoints.create_checkpoint(task.id, task.session_id)

    def _consume_authorization(
        self,
        task: Task,
        command: str,
        classification: Classification,
        proposal_id: str,
    ) -> AuthorizationRecord:
        try:
            record = self.ledger.authorize_and_consume(
                task.id, command, rule=classification.rule, consumed_by=proposal_id
            )
        except StorageError as e:
            logger.error(f"Authorization ledger unavailable for task {task.id}: {e}")
            raise AuthorizationError(command, f"authorization ledger unavailable: {e.reason}")
        if record is None:
            raise AuthorizationError(
                command, f"authorization for `{command}` was already used by another proposal"
            )
        return record

    def _save_proposal(self, decision: Decision) -> None:
        try:
            self.proposals.save(decision)
        except StorageError as e:
            logger.error(f"Could not persist approval of `{decision.command}` for task {decision.task_id}: {e}")
            raise AuthorizationError(decision.command, f"approval could not be persisted: {e.reason}")

    def _deny(
        self,
        proposal_id: str,
        task_id: str,
        phase: Optional[Phase],
        command: str,
        classification: Classification,
        code: DecisionCode,
        error: GateError,
    ) -> Decision:
        logger.warning(f"{code.value} for task {task_id} `{command}`: {error.reason}")

        event_id = None
        try:
            event = self.audit.record(AuditEvent(
                id=proposal_id,
                task_id=task_id,
                proposed_command=command,
                classification=classification.category,
                matched_rule=classification.rule,
                phase=phase,
                decision=DecisionOutcome.DENIED,
                decision_code=code,
                reason=error.reason,
            ))
            event_id = event.id
        except StorageError as e:
            logger.error(f"Could not record denial of `{command}` for task {task_id}: {e}")

        return Decision(
            proposal_id=proposal_id,
            task_id=task_id,
            command=command,
            code=code,
            classification=classification.category,
            matched_rule=classification.rule,
            phase=phase,
            reason=error.reason,
            resolution=error.resolution,
            audit_event_id=event_id,
        )

    def record_result(
        self,
        proposal: Union[Decision, str],
        exit_code: int,
        duration_ms: int = 0,
    ) -> AuditEvent:
        """
        Record the outcome of an approved command the caller ran.

        Only proposals this engine approved can be recorded, once each. The
        event is built from the stored approval; a Decision passed in only
        identifies it and must agree with what was approved.

        Args:
            proposal: The approved Decision, or its proposal id
            exit_code: Exit status of the command
            duration_ms: How long it ran

        Raises:
            ValueError: If the proposal is unknown, was denied, does not
                match the stored approval, or already has a result
            StorageError: If the event could not be appended. The action
                must then be treated as not having happened.
        """
        proposal_id = proposal.proposal_id if isinstance(proposal, Decision) else proposal
        approved = self.proposals.get(proposal_id)
        if approved is None:
            raise ValueError(f"proposal {proposal_id} was not approved by this gate; nothing to record")
        if isinstance(proposal, Decision) and (
            proposal.task_id != approved.task_id or proposal.command != approved.command
        ):
            raise ValueError(
                f"proposal {proposal_id} was approved for `{approved.command}` on task "
                f"{approved.task_id}, not `{proposal.command}` on task {proposal.task_id}"
            )
        if self.proposals.result_event_id(proposal_id) is not None:
            raise ValueError(f"proposal {proposal_id} already has a recorded result")

        event = AuditEvent(
            id=approved.proposal_id,
            task_id=approved.task_id,
            proposed_command=approved.command,
            classification=approved.classification,
            matched_rule=approved.matched_rule,
            phase=approved.phase,
            decision=DecisionOutcome.APPROVED,
            decision_code=DecisionCode.APPROVED,
            checkpoint_id=approved.checkpoint_id,
            authorization_id=approved.authorization_id,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
        try:
            stored = self.audit.record(event)
            self.proposals.mark_recorded(proposal_id, stored.id)
        except StorageError as e:
            logger.error(
                f"Could not record result of `{approved.command}` for task {approved.task_id}; "
                f"treat it as not having happened: {e}"
            )
            raise
        self._sync_context(approved.task_id)
        return stored

    def awaiting_result(self, task_id: str) -> List[Decision]:
        """Approved proposals of a task whose result was never recorded."""
        return self.proposals.awaiting_result(task_id)

    # =========================================================================
    # Reporting
    # =========================================================================

    def render_report(self, task_id: str) -> AuditReport:
        return self.reports.render(task_id)

    def write_report(self, task_id: str) -> Path:
        """Render a task's report and write it. Returns the file path."""
        return self.reports.write(self.render_report(task_id), self.extras_dir)

    def verify(self, task_id: str) -> bool:
        """
        Raises:
            AuditTamperError: If the task's audit chain does not verify
        """
        self.tasks.get(task_id)
        return self.audit.verify_integrity(task_id)

    # =========================================================================
    # Context mirror
    # =========================================================================

    def _sync_context(self, active_task_id: Optional[str]) -> None:
        if self.context_mirror is None:
            return
        try:
            snapshot = ContextSnapshot(
                tasks=self.tasks.list(include_archived=True),
                active_task_id=active_task_id,
            )
            self.context_mirror.save(snapshot)
        except (OSError, StorageError) as e:
            logger.warning(f"Context mirror not updated: {e}")
