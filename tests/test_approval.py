"""
Tests for approval channels - blocking, cancellable human approval.
"""

import threading
import time
from unittest.mock import patch

import pytest

from workflow_gate.approval import (
    ApprovalOutcome,
    InMemoryApprovalChannel,
    QueueApprovalChannel,
)
from workflow_gate.errors import StorageError
from workflow_gate.schema import AuthorizationScope


@pytest.fixture
def queue(db):
    channel = QueueApprovalChannel(db)
    # Poll fast in tests
    channel.INITIAL_INTERVAL = 0.02
    return channel


def _approve_later(channel, delay=0.05, **kwargs):
    def answer():
        time.sleep(delay)
        for request in channel.pending():
            channel.decide(request.id, decided_by="alice", **kwargs)

    thread = threading.Thread(target=answer)
    thread.start()
    return thread


class TestQueueApprovalChannel:

    def test_submit_is_pending(self, queue):
        request_id = queue.submit("task-1", "git push", "git-push")
        pending = queue.pending("task-1")

        assert [r.id for r in pending] == [request_id]
        assert pending[0].rule == "git-push"
        assert queue.check(request_id) is None

    def test_decide_approved(self, queue):
        request_id = queue.submit("task-1", "git push", "git-push")
        assert queue.decide(request_id, approved=True, decided_by="alice",
                            scope=AuthorizationScope.SESSION, pattern="git-push")

        response = queue.check(request_id)
        assert response.outcome == ApprovalOutcome.APPROVED
        assert response.scope == AuthorizationScope.SESSION
        assert response.pattern == "git-push"
        assert queue.pending() == []

    def test_decide_only_once(self, queue):
        request_id = queue.submit("task-1", "git push", None)
        assert queue.decide(request_id, approved=False, decided_by="alice")
        assert not queue.decide(request_id, approved=True, decided_by="bob")
        assert queue.check(request_id).outcome == ApprovalOutcome.REJECTED

    def test_pattern_needs_session_scope(self, queue):
        request_id = queue.submit("task-1", "git push origin main", "git-push")

        with pytest.raises(ValueError, match="needs session scope"):
            queue.decide(request_id, approved=True, decided_by="alice", pattern="git-push")

        assert [r.id for r in queue.pending("task-1")] == [request_id]

    def test_rejection_ignores_pattern(self, queue):
        request_id = queue.submit("task-1", "git push", "git-push")
        assert queue.decide(request_id, approved=False, decided_by="alice", pattern="git-push")

    def test_storage_failure_while_waiting_withdraws(self, queue):
        with patch.object(queue, "check", side_effect=StorageError("disk I/O error")):
            with pytest.raises(StorageError):
                queue.request("task-1", "git push", timeout=1)

        assert queue.pending("task-1") == []

    def test_request_blocks_until_decided(self, queue):
        thread = _approve_later(queue, approved=True)
        response = queue.request("task-1", "git push", rule="git-push", timeout=5)
        thread.join()

        assert response.approved
        assert response.decided_by == "alice"

    def test_timeout_withdraws_request(self, queue):
        response = queue.request("task-1", "git push", timeout=0.05)

        assert response.outcome == ApprovalOutcome.TIMEOUT
        assert queue.pending("task-1") == []
        assert queue.check(response.request_id).outcome == ApprovalOutcome.CANCELLED

    def test_cancel_event(self, queue):
        cancel = threading.Event()
        cancel.set()
        response = queue.request("task-1", "git push", cancel=cancel)
        assert response.outcome == ApprovalOutcome.CANCELLED

    def test_second_request_for_task_rejected(self, queue):
        """Only one outstanding approval per task."""
        queue.submit("task-1", "git push", None)
        response = queue.request("task-1", "npm publish", timeout=1)

        assert response.outcome == ApprovalOutcome.REJECTED
        assert "already pending" in response.reason

    def test_other_tasks_not_blocked(self, queue):
        queue.submit("task-1", "git push", None)
        thread = _approve_later(queue, approved=True)
        response = queue.request("task-2", "git push", timeout=5)
        thread.join()
        assert response.approved


class TestInMemoryApprovalChannel:

    def test_decided_from_other_thread(self):
        channel = InMemoryApprovalChannel()
        thread = _approve_later(channel, approved=False, reason="no")
        response = channel.request("task-1", "git push", timeout=5)
        thread.join()

        assert response.outcome == ApprovalOutcome.REJECTED
        assert response.reason == "no"

    def test_withdrawn_request_cannot_be_decided(self):
        channel = InMemoryApprovalChannel()
        response = channel.request("task-1", "git push", timeout=0.05)

        assert response.outcome == ApprovalOutcome.TIMEOUT
        assert not channel.decide(response.request_id, approved=True, decided_by="alice")

    def test_pattern_needs_session_scope(self):
        channel = InMemoryApprovalChannel()
        request_id = channel.submit("task-1", "git push", "git-push")

        with pytest.raises(ValueError):
            channel.decide(request_id, approved=True, decided_by="alice",
                           scope=AuthorizationScope.SINGLE_USE, pattern="git-push")
        assert channel.decide(request_id, approved=True, decided_by="alice",
                              scope=AuthorizationScope.SESSION, pattern="git-push")
