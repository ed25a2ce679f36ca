"""
Workflow Gate - phase gating, authorization and audit for AI agent commands

Sits between an agent and the shell: every proposed command is classified,
checked against the task's required phases, gated on explicit human
authorization for remote writes, checkpointed before the first write, and
recorded in a tamper-evident audit log.
"""

from .schema import (
    Task,
    TaskStatus,
    Phase,
    Category,
    Checkpoint,
    AuthorizationRecord,
    AuthorizationScope,
    AuditEvent,
    Classification,
    Decision,
    DecisionCode,
    DecisionOutcome,
)

from .errors import (
    GateError,
    PhaseViolationError,
    AuthorizationError,
    CheckpointFailureError,
    StorageError,
    TaskNotFoundError,
    ConfigurationError,
    AuditTamperError,
)

from .engine import WorkflowGateEngine, TriggerResult
from .classifier import CommandClassifier
from .approval import (
    ApprovalChannel,
    ApprovalOutcome,
    ApprovalResponse,
    InMemoryApprovalChannel,
    QueueApprovalChannel,
)
from .context import ContextMirror, MarkdownContextMirror
from .vcs import VersionControl, GitVersionControl

__version__ = "0.1.0"
