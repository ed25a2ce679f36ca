"""
Tests for CheckpointManager.
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from workflow_gate.checkpoint import CheckpointManager
from workflow_gate.errors import CheckpointFailureError, StorageError


@pytest.fixture
def manager(db, vcs):
    return CheckpointManager(db, vcs)


class TestCreateCheckpoint:

    def test_create_records_all_parts(self, manager, vcs):
        cp = manager.create_checkpoint("task-1", "sess-1")

        assert cp.id.startswith("cp_")
        assert cp.baseline_ref == vcs.head.ref
        assert cp.branch == "main"
        assert cp.snapshot_ref in vcs.refs
        assert cp.rollback_ref == f"workflow-gate/rollback/task-1/{cp.id}"
        assert vcs.branches[cp.rollback_ref] == vcs.head.ref
        assert manager.get_checkpoint("task-1", cp.id) == cp

    def test_ids_unique_within_same_second(self, manager):
        """Checkpoints created at the same instant get distinct ids."""
        frozen = datetime(2026, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
        with patch("workflow_gate.checkpoint.datetime") as mock_dt:
            mock_dt.now.return_value = frozen
            ids = [manager.create_checkpoint("task-1", "sess-1").id for _ in range(3)]

        assert len(set(ids)) == 3
        assert ids[0] == "cp_20260102_030405_678901"
        assert ids[1] == "cp_20260102_030405_678901_1"

    def test_custom_branch_prefix(self, db, vcs):
        manager = CheckpointManager(db, vcs, branch_prefix="agents/rollback/")
        cp = manager.create_checkpoint("task-1", "sess-1")
        assert cp.rollback_ref.startswith("agents/rollback/task-1/")


class TestCheckpointFailure:
    """Creation is all-or-nothing."""

    def test_head_failure(self, manager, vcs):
        vcs.fail_on.add("current_head")
        with pytest.raises(CheckpointFailureError):
            manager.create_checkpoint("task-1", "sess-1")
        assert manager.list_checkpoints("task-1") == []

    def test_branch_failure_removes_snapshot(self, manager, vcs):
        vcs.fail_on.add("create_branch")
        with pytest.raises(CheckpointFailureError):
            manager.create_checkpoint("task-1", "sess-1")

        assert vcs.refs == {}
        assert manager.list_checkpoints("task-1") == []

    def test_persist_failure_removes_refs(self, manager, vcs):
        with patch.object(manager, "_save_checkpoint", side_effect=StorageError("disk full")):
            with pytest.raises(CheckpointFailureError):
                manager.create_checkpoint("task-1", "sess-1")

        assert vcs.refs == {}
        assert vcs.branches == {}

    def test_failed_cleanup_still_raises_checkpoint_failure(self, manager, vcs):
        vcs.fail_on.update({"create_branch", "delete_ref"})
        with pytest.raises(CheckpointFailureError):
            manager.create_checkpoint("task-1", "sess-1")


class TestQueries:

    def test_list_oldest_first(self, manager):
        first = manager.create_checkpoint("task-1", "sess-1")
        second = manager.create_checkpoint("task-1", "sess-2")
        assert [cp.id for cp in manager.list_checkpoints("task-1")] == [first.id, second.id]

    def test_latest_for_session(self, manager):
        manager.create_checkpoint("task-1", "sess-1")
        latest = manager.create_checkpoint("task-1", "sess-1")
        manager.create_checkpoint("task-1", "sess-2")

        assert manager.latest_for_session("task-1", "sess-1").id == latest.id
        assert manager.latest_for_session("task-1", "sess-3") is None

    def test_rollback_instructions_reference_anchor(self, manager):
        cp = manager.create_checkpoint("task-1", "sess-1")
        text = manager.rollback_instructions(cp)
        assert f"git reset --hard {cp.rollback_ref}" in text
        assert cp.snapshot_ref in text
