"""
Approval Channel - blocking, cancellable requests for human authorization.

When a remote-write proposal has no matching authorization record, the
engine may ask a human through an ApprovalChannel. The call blocks until a
decision arrives; there is no timeout unless the caller passes one or a
cancel event. Cancellation and timeout are outcomes, not errors.

Only one outstanding approval per task is meaningful: a second request
for a task that is already waiting is rejected immediately.

Two channels are provided:
- InMemoryApprovalChannel: decisions come from another thread in the same
  process (embedding, tests)
- QueueApprovalChannel: requests are stored in the gate database, so a
  human can decide from another shell (`workflow-gate approve <id>`)

Usage:
    channel = QueueApprovalChannel(db)
    response = channel.request("task-1", "git push", rule="git-push", cancel=stop_event)
    if response.approved:
        ...
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from .errors import StorageError
from .schema import AuthorizationScope
from .storage import Database

logger = logging.getLogger(__name__)


class ApprovalOutcome(Enum):
    """Result of waiting for approval."""
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass
class ApprovalResponse:
    """What the human decided."""
    request_id: str
    outcome: ApprovalOutcome
    decided_by: Optional[str] = None
    scope: AuthorizationScope = AuthorizationScope.SINGLE_USE
    pattern: Optional[str] = None  # Category name for session grants; None = the command
    reason: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.outcome == ApprovalOutcome.APPROVED


@dataclass
class PendingApproval:
    """An approval request awaiting a decision."""
    id: str
    task_id: str
    command: str
    rule: Optional[str]
    created_at: str


class ApprovalChannel(ABC):
    """
    Agent-side interface for requesting human approval.

    Subclasses store requests and decisions; the wait loop lives here.
    Polls with backoff:
    - First 30s: every INITIAL_INTERVAL (user actively reviewing)
    - 30s-5min: every MEDIUM_INTERVAL
    - 5min+: every MAX_INTERVAL (user away)
    """

    INITIAL_INTERVAL = 2.0
    MEDIUM_INTERVAL = 10.0
    MAX_INTERVAL = 30.0

    MEDIUM_THRESHOLD = 30
    MAX_THRESHOLD = 300

    def request(
        self,
        task_id: str,
        command: str,
        rule: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ApprovalResponse:
        """
        Ask for approval and block until decided, cancelled or timed out.

        Args:
            task_id: Task the command belongs to
            command: The exact command awaiting authorization
            rule: Classifier rule the command matched
            cancel: Event that aborts the wait when set
            timeout: Seconds to wait; None waits indefinitely

        Returns:
            ApprovalResponse
        """
        if self.has_pending(task_id):
            logger.warning(f"Approval already pending for task {task_id}; rejecting `{command}`")
            return ApprovalResponse(
                request_id="",
                outcome=ApprovalOutcome.REJECTED,
                reason=f"another approval request is already pending for task {task_id}",
            )

        request_id = self.submit(task_id, command, rule)
        logger.info(f"Approval needed for task {task_id}: `{command}` (request {request_id})")

        try:
            response = self._wait(request_id, cancel, timeout)
        except BaseException:
            self._withdraw_after_failure(request_id)
            raise
        if not response.approved and response.outcome != ApprovalOutcome.REJECTED:
            self.withdraw(request_id)
        return response

    def _withdraw_after_failure(self, request_id: str) -> None:
        try:
            self.withdraw(request_id)
        except StorageError as e:
            logger.error(f"Could not withdraw approval request {request_id}: {e}")

    def _wait(
        self,
        request_id: str,
        cancel: Optional[threading.Event],
        timeout: Optional[float],
    ) -> ApprovalResponse:
        start = time.monotonic()
        cancel = cancel or threading.Event()

        while True:
            response = self.check(request_id)
            if response is not None:
                return response

            elapsed = time.monotonic() - start
            if timeout is not None and elapsed >= timeout:
                logger.warning(f"Approval request {request_id} timed out after {timeout}s")
                return ApprovalResponse(request_id=request_id, outcome=ApprovalOutcome.TIMEOUT)

            if elapsed < self.MEDIUM_THRESHOLD:
                interval = self.INITIAL_INTERVAL
            elif elapsed < self.MAX_THRESHOLD:
                interval = self.MEDIUM_INTERVAL
            else:
                interval = self.MAX_INTERVAL
            if timeout is not None:
                interval = min(interval, max(timeout - elapsed, 0.0))

            if cancel.wait(interval):
                logger.info(f"Approval request {request_id} cancelled by caller")
                return ApprovalResponse(request_id=request_id, outcome=ApprovalOutcome.CANCELLED)

    @abstractmethod
    def submit(self, task_id: str, command: str, rule: Optional[str]) -> str:
        """Store a pending request. Returns its id."""

    @abstractmethod
    def check(self, request_id: str) -> Optional[ApprovalResponse]:
        """Decision for a request, or None while still pending."""

    @abstractmethod
    def withdraw(self, request_id: str) -> None:
        """Mark a still-pending request cancelled."""

    @abstractmethod
    def has_pending(self, task_id: str) -> bool:
        """Whether a task already has a request waiting."""

    @abstractmethod
    def pending(self, task_id: Optional[str] = None) -> List[PendingApproval]:
        """Requests awaiting a decision."""

    @abstractmethod
    def decide(
        self,
        request_id: str,
        approved: bool,
        decided_by: str,
        scope: AuthorizationScope = AuthorizationScope.SINGLE_USE,
        pattern: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Record a human decision. Returns False if the request is not pending."""

    @staticmethod
    def _check_pattern(scope: AuthorizationScope, pattern: Optional[str]) -> None:
        """A pattern only widens session grants; single-use grants match the exact command."""
        if pattern and AuthorizationScope(scope) != AuthorizationScope.SESSION:
            raise ValueError(
                f"pattern `{pattern}` needs session scope; a single-use approval covers the exact command only"
            )


def _new_request_id(task_id: str) -> str:
    return f"{task_id}-{uuid.uuid4().hex[:8]}"


class InMemoryApprovalChannel(ApprovalChannel):
    """Approval channel whose decisions come from another thread."""

    INITIAL_INTERVAL = 0.05
    MEDIUM_INTERVAL = 0.25
    MAX_INTERVAL = 1.0

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: Dict[str, PendingApproval] = {}
        self._decisions: Dict[str, ApprovalResponse] = {}
        self._withdrawn: set = set()

    def submit(self, task_id: str, command: str, rule: Optional[str]) -> str:
        request = PendingApproval(
            id=_new_request_id(task_id),
            task_id=task_id,
            command=command,
            rule=rule,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._requests[request.id] = request
        return request.id

    def check(self, request_id: str) -> Optional[ApprovalResponse]:
        with self._lock:
            return self._decisions.get(request_id)

    def withdraw(self, request_id: str) -> None:
        with self._lock:
            if request_id not in self._decisions:
                self._withdrawn.add(request_id)

    def has_pending(self, task_id: str) -> bool:
        return bool(self.pending(task_id))

    def pending(self, task_id: Optional[str] = None) -> List[PendingApproval]:
        with self._lock:
            return [
                r for r in self._requests.values()
                if r.id not in self._decisions and r.id not in self._withdrawn
                and (task_id is None or r.task_id == task_id)
            ]

    def decide(
        self,
        request_id: str,
        approved: bool,
        decided_by: str,
        scope: AuthorizationScope = AuthorizationScope.SINGLE_USE,
        pattern: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        if approved:
            self._check_pattern(scope, pattern)
        with self._lock:
            if (request_id not in self._requests or request_id in self._decisions
                    or request_id in self._withdrawn):
                return False
            self._decisions[request_id] = ApprovalResponse(
                request_id=request_id,
                outcome=ApprovalOutcome.APPROVED if approved else ApprovalOutcome.REJECTED,
                decided_by=decided_by,
                scope=AuthorizationScope(scope),
                pattern=pattern,
                reason=reason,
            )
        return True


class QueueApprovalChannel(ApprovalChannel):
    """
    SQLite-backed approval channel.

    State machine: PENDING → APPROVED | REJECTED | CANCELLED.
    """

    def __init__(self, db: Database):
        self.db = db

    def submit(self, task_id: str, command: str, rule: Optional[str]) -> str:
        request_id = _new_request_id(task_id)
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO approval_requests (id, task_id, command, rule, status, created_at)
                VALUES (?, ?, ?, ?, 'pending', ?)
            """, (request_id, task_id, command, rule, datetime.now(timezone.utc).isoformat()))
        return request_id

    def check(self, request_id: str) -> Optional[ApprovalResponse]:
        with self.db.reading() as conn:
            row = conn.execute(
                "SELECT * FROM approval_requests WHERE id = ?", (request_id,)
            ).fetchone()
        if row is None or row["status"] == "pending":
            return None
        return ApprovalResponse(
            request_id=request_id,
            outcome=ApprovalOutcome(row["status"]),
            decided_by=row["decided_by"],
            scope=AuthorizationScope(row["scope"] or AuthorizationScope.SINGLE_USE.value),
            pattern=row["pattern"],
            reason=row["reason"],
        )

    def withdraw(self, request_id: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("""
                UPDATE approval_requests
                SET status = 'cancelled', decided_at = ?
                WHERE id = ? AND status = 'pending'
            """, (datetime.now(timezone.utc).isoformat(), request_id))

    def has_pending(self, task_id: str) -> bool:
        return bool(self.pending(task_id))

    def pending(self, task_id: Optional[str] = None) -> List[PendingApproval]:
        query = "SELECT * FROM approval_requests WHERE status = 'pending'"
        params: tuple = ()
        if task_id is not None:
            query += " AND task_id = ?"
            params = (task_id,)
        query += " ORDER BY created_at"
        with self.db.reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            PendingApproval(
                id=row["id"],
                task_id=row["task_id"],
                command=row["command"],
                rule=row["rule"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def decide(
        self,
        request_id: str,
        approved: bool,
        decided_by: str,
        scope: AuthorizationScope = AuthorizationScope.SINGLE_USE,
        pattern: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        if approved:
            self._check_pattern(scope, pattern)
        status = ApprovalOutcome.APPROVED.value if approved else ApprovalOutcome.REJECTED.value
        with self.db.transaction() as conn:
            cursor = conn.execute("""
                UPDATE approval_requests
                SET status = ?, decided_at = ?, decided_by = ?, scope = ?, pattern = ?, reason = ?
                WHERE id = ? AND status = 'pending'
            """, (
                status,
                datetime.now(timezone.utc).isoformat(),
                decided_by,
                AuthorizationScope(scope).value,
                pattern,
                reason,
                request_id,
            ))
            decided = cursor.rowcount > 0

        if decided:
            logger.info(f"Approval request {request_id} {status} by {decided_by}")
        return decided
