"""
Shared fixtures: a temp gate database and an in-memory version control.
"""

from pathlib import Path
from typing import Dict, Optional, Set

import pytest

from workflow_gate.engine import WorkflowGateEngine
from workflow_gate.storage import Database
from workflow_gate.vcs import DiffStat, FileChange, HeadInfo, VcsError, VersionControl


class FakeVersionControl(VersionControl):
    """
    Records refs in memory. Set ``fail_on`` to an operation name to make it
    raise VcsError.
    """

    def __init__(self):
        self.head = HeadInfo(ref="a1b2c3d4" * 5, branch="main")
        self.refs: Dict[str, str] = {}
        self.branches: Dict[str, str] = {}
        self.fail_on: Set[str] = set()
        self.diff = DiffStat(files=[
            FileChange(path="src/app.py", insertions=10, deletions=2),
            FileChange(path="README.md", insertions=1, deletions=0),
        ])
        self.ignored: Set[str] = set()
        self.snapshot_count = 0

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise VcsError(f"{operation} failed")

    def current_head(self) -> HeadInfo:
        self._maybe_fail("current_head")
        return self.head

    def snapshot(self, name: str, message: str) -> str:
        self._maybe_fail("snapshot")
        self.snapshot_count += 1
        ref = f"refs/workflow-gate/snapshots/{name}"
        self.refs[ref] = f"snap{self.snapshot_count:036d}"
        return ref

    def create_branch(self, name: str, ref: str) -> str:
        self._maybe_fail("create_branch")
        if name in self.branches:
            raise VcsError(f"branch {name} already exists")
        self.branches[name] = ref
        return name

    def delete_branch(self, name: str) -> None:
        self._maybe_fail("delete_branch")
        self.branches.pop(name, None)

    def delete_ref(self, ref: str) -> None:
        self._maybe_fail("delete_ref")
        self.refs.pop(ref, None)

    def diff_stat(self, ref: str) -> DiffStat:
        self._maybe_fail("diff_stat")
        return self.diff

    def repo_name(self) -> str:
        return "demo-repo"

    def is_ignored(self, path: Path) -> bool:
        self._maybe_fail("is_ignored")
        return Path(path).name in self.ignored


@pytest.fixture
def db(tmp_path):
    """Gate database in a temp directory."""
    return Database(tmp_path / "gate.db")


@pytest.fixture
def vcs():
    return FakeVersionControl()


@pytest.fixture
def engine(db, vcs, tmp_path):
    """Engine with no approval channel and no context mirror."""
    return WorkflowGateEngine(db=db, vcs=vcs, extras_dir=tmp_path / ".extras")

