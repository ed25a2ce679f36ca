"""
Workflow Gate Schema Definitions using Pydantic

This module defines the entities the engine stores (tasks, checkpoints,
authorization records, audit events) and the values it returns (decisions).
Entities live in flat tables keyed by id; a Task refers to its checkpoints
and audit events by id only.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime, timezone
from enum import Enum


def _utc_now():
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    """Lifecycle stage of a task."""
    INIT = "Init"
    PLAN = "Plan"
    CREATIVE = "Creative"
    QA = "QA"
    BUILD = "Build"
    REVIEW = "Review"
    ARCHIVE = "Archive"


class TaskStatus(str, Enum):
    """Status of a task. Tasks are never deleted, only archived."""
    ACTIVE = "active"
    ARCHIVED = "archived"


class Category(str, Enum):
    """Classification of a proposed command."""
    LOCAL_READ = "local-read"
    LOCAL_WRITE = "local-write"
    REMOTE_WRITE = "remote-write"

    @property
    def is_write(self) -> bool:
        return self is not Category.LOCAL_READ

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    Category.LOCAL_READ: 0,
    Category.LOCAL_WRITE: 1,
    Category.REMOTE_WRITE: 2,
}


class AuthorizationScope(str, Enum):
    """How long an authorization record stays valid."""
    SINGLE_USE = "single-use"
    SESSION = "session"


class DecisionOutcome(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"


class DecisionCode(str, Enum):
    """Result codes returned by WorkflowGateEngine.propose."""
    APPROVED = "approved"
    DENIED_PHASE_VIOLATION = "denied:phase-violation"
    DENIED_UNAUTHORIZED = "denied:unauthorized"
    DENIED_CHECKPOINT_FAILED = "denied:checkpoint-failed"

    @property
    def outcome(self) -> DecisionOutcome:
        if self is DecisionCode.APPROVED:
            return DecisionOutcome.APPROVED
        return DecisionOutcome.DENIED


# ============================================================================
# Stored entities
# ============================================================================

class Task(BaseModel):
    """A unit of agent work moving through its required phases."""
    id: str
    complexity_level: int
    required_phases: list[Phase]
    current_phase: Phase = Phase.INIT
    completed_phases: list[Phase] = Field(default_factory=list)
    reentries: dict[str, int] = Field(default_factory=dict)
    blocked_reason: Optional[str] = None
    session_id: str
    description: str = ""
    status: TaskStatus = TaskStatus.ACTIVE
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @field_validator('complexity_level')
    @classmethod
    def level_must_be_known(cls, v):
        if v not in (1, 2, 3, 4):
            raise ValueError('complexity_level must be 1, 2, 3 or 4')
        return v

    def is_completed(self, phase: Phase) -> bool:
        return phase in self.completed_phases

    @property
    def terminal_phase(self) -> Phase:
        return self.required_phases[-1]

    @property
    def is_archived(self) -> bool:
        return self.status == TaskStatus.ARCHIVED

    def update_timestamp(self):
        """Update the updated_at timestamp."""
        self.updated_at = _utc_now()


class Checkpoint(BaseModel):
    """Reversible snapshot taken before the first write of a session."""
    id: str
    task_id: str
    session_id: str
    branch: str
    baseline_ref: str
    snapshot_ref: str
    rollback_ref: str
    created_at: datetime = Field(default_factory=_utc_now)

    model_config = {"frozen": True}


class AuthorizationRecord(BaseModel):
    """An explicit grant for a named mutating command (or rule category)."""
    id: str
    task_id: str
    command_pattern: str
    authorized_by: str
    authorized_at: datetime = Field(default_factory=_utc_now)
    scope: AuthorizationScope = AuthorizationScope.SINGLE_USE
    consumed_at: Optional[datetime] = None
    consumed_by: Optional[str] = None  # proposal id that spent the record
    revoked_at: Optional[datetime] = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    @property
    def is_usable(self) -> bool:
        if self.revoked_at is not None:
            return False
        if self.scope == AuthorizationScope.SESSION:
            return True
        return not self.is_consumed


class AuditEvent(BaseModel):
    """One proposal outcome. Never mutated after it is appended."""
    id: str
    task_id: str
    sequence: Optional[int] = None  # assigned by AuditLog on append
    timestamp: datetime = Field(default_factory=_utc_now)
    proposed_command: str
    classification: Category
    matched_rule: Optional[str] = None
    phase: Optional[Phase] = None
    decision: DecisionOutcome
    decision_code: DecisionCode
    reason: Optional[str] = None
    checkpoint_id: Optional[str] = None
    authorization_id: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: int = 0
    prev_hash: Optional[str] = None
    hash: Optional[str] = None

    model_config = {"frozen": True}

    def hash_payload(self) -> dict:
        """Fields covered by the chained hash."""
        return self.model_dump(mode="json", exclude={"hash", "prev_hash"})


# ============================================================================
# Return values
# ============================================================================

class Classification(BaseModel):
    """Result of CommandClassifier.classify."""
    command: str
    category: Category
    rule: str

    model_config = {"frozen": True}


class Decision(BaseModel):
    """What the engine decided about a proposed command."""
    proposal_id: str
    task_id: str
    command: str
    code: DecisionCode
    classification: Category
    matched_rule: Optional[str] = None
    phase: Optional[Phase] = None
    reason: str = ""
    resolution: str = ""
    checkpoint_id: Optional[str] = None
    authorization_id: Optional[str] = None
    audit_event_id: Optional[str] = None
    decided_at: datetime = Field(default_factory=_utc_now)

    @property
    def approved(self) -> bool:
        return self.code == DecisionCode.APPROVED

    def describe(self) -> str:
        """One-line, user-facing summary."""
        if self.approved:
            return f"{self.code.value}: {self.command}"
        return f"{self.code.value}: {self.reason} (to resolve: {self.resolution})"
