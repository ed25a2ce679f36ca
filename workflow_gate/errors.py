"""
Error taxonomy for the workflow gate.

Every gate error carries the violated invariant (``reason``) and the action
that would resolve it (``resolution``). The engine converts them into
denied decisions; components raise them.
"""

from typing import Optional


class GateError(Exception):
    """Base exception for workflow gate errors"""

    default_resolution = ""

    def __init__(self, reason: str, resolution: Optional[str] = None):
        self.reason = reason
        self.resolution = resolution or self.default_resolution
        message = reason
        if self.resolution:
            message = f"{reason} (to resolve: {self.resolution})"
        super().__init__(message)


class PhaseViolationError(GateError):
    """Attempted to skip or reorder a required phase."""

    def __init__(
        self,
        reason: str,
        resolution: Optional[str] = None,
        missing_phase: Optional[str] = None,
    ):
        self.missing_phase = missing_phase
        if resolution is None and missing_phase:
            resolution = f"complete {missing_phase} phase first"
        super().__init__(reason, resolution)


class AuthorizationError(GateError):
    """Remote-write proposed without a matching authorization record."""

    def __init__(self, command: str, reason: Optional[str] = None):
        self.command = command
        super().__init__(
            reason or f"remote-write command `{command}` has no matching unconsumed authorization",
            f"obtain explicit authorization for `{command}`",
        )


class CheckpointFailureError(GateError):
    """Could not establish a rollback anchor."""

    default_resolution = "fix the version-control state and propose the command again"


class StorageError(GateError):
    """Ledger or audit log write failed."""

    default_resolution = "check the gate database is writable and propose the command again"


class TaskNotFoundError(GateError):
    """Raised when a task id is unknown."""

    default_resolution = "create the task with `workflow-gate init` first"


class ConfigurationError(GateError):
    """Configuration or classifier rule data is invalid"""

    default_resolution = "fix .workflow_gate.yaml"


class AuditTamperError(GateError):
    """Raised when audit log tampering is detected."""

    default_resolution = "restore the gate database from a trusted copy"
