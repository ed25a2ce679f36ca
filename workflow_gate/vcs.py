"""Version-control collaborator for checkpoints and reports.

The engine only needs a handful of operations: the current baseline ref and
branch, a snapshot of the full working state (untracked files included), a
branch to serve as rollback anchor, and a diff summary for the audit report.
``VersionControl`` names those operations; ``GitVersionControl`` implements
them with git.
"""

import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

SNAPSHOT_REF_PREFIX = "refs/workflow-gate/snapshots"


class VcsError(Exception):
    """Raised when a version-control operation fails"""
    pass


@dataclass
class HeadInfo:
    """Current baseline of the working tree"""
    ref: str
    branch: str


@dataclass
class FileChange:
    path: str
    insertions: int = 0
    deletions: int = 0
    binary: bool = False


@dataclass
class DiffStat:
    """Net file changes between a ref and the working tree"""
    files: List[FileChange] = field(default_factory=list)

    @property
    def files_changed(self) -> int:
        return len(self.files)

    @property
    def insertions(self) -> int:
        return sum(f.insertions for f in self.files)

    @property
    def deletions(self) -> int:
        return sum(f.deletions for f in self.files)


class VersionControl(ABC):
    """Operations the gate needs from the version-control system."""

    @abstractmethod
    def current_head(self) -> HeadInfo:
        """Return the current baseline ref and branch name."""

    @abstractmethod
    def snapshot(self, name: str, message: str) -> str:
        """Snapshot the full working state, untracked files included. Returns a ref."""

    @abstractmethod
    def create_branch(self, name: str, ref: str) -> str:
        """Create a branch at ref. Returns the branch name."""

    @abstractmethod
    def delete_branch(self, name: str) -> None:
        """Delete a branch (used to undo a partially created checkpoint)."""

    @abstractmethod
    def delete_ref(self, ref: str) -> None:
        """Delete a snapshot ref."""

    @abstractmethod
    def diff_stat(self, ref: str) -> DiffStat:
        """Net changes between ref and the working tree."""

    @abstractmethod
    def repo_name(self) -> str:
        """Short repository name."""

    @abstractmethod
    def is_ignored(self, path: Path) -> bool:
        """Whether path is ignored by version control."""


class GitVersionControl(VersionControl):
    """git implementation of the version-control collaborator"""

    def __init__(self, repo_root: Path, timeout: int = 60):
        """Initialize GitVersionControl.

        Args:
            repo_root: Path to the git repository root
            timeout: Seconds before a git command is abandoned
        """
        self.repo_root = Path(repo_root)
        self.timeout = timeout

    def _run_git(self, args: List[str], env: Optional[dict] = None, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command.

        Args:
            args: Git command arguments (without 'git')
            env: Extra environment variables
            check: Whether to raise VcsError on non-zero exit

        Returns:
            CompletedProcess result
        """
        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.repo_root,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=run_env,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise VcsError(f"git {' '.join(args)} failed: {e}")

        if check and result.returncode != 0:
            raise VcsError(f"git {' '.join(args)} exited {result.returncode}: {result.stderr.strip()}")
        return result

    def current_head(self) -> HeadInfo:
        ref = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        branch = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()
        return HeadInfo(ref=ref, branch=branch)

    def snapshot(self, name: str, message: str) -> str:
        """Commit the whole working tree to a private ref.

        Uses a throwaway index so neither the real index nor the working
        tree is touched. Untracked (non-ignored) files are included.
        """
        head = self._run_git(["rev-parse", "HEAD"]).stdout.strip()
        # git must create the index itself; an empty file is a corrupt index
        with tempfile.TemporaryDirectory(prefix="workflow-gate-") as index_dir:
            env = {"GIT_INDEX_FILE": str(Path(index_dir) / "index")}
            self._run_git(["read-tree", head], env=env)
            self._run_git(["add", "--all"], env=env)
            tree = self._run_git(["write-tree"], env=env).stdout.strip()
            commit = self._run_git(["commit-tree", tree, "-p", head, "-m", message]).stdout.strip()

        ref = f"{SNAPSHOT_REF_PREFIX}/{name}"
        self._run_git(["update-ref", ref, commit])
        return ref

    def create_branch(self, name: str, ref: str) -> str:
        self._run_git(["branch", name, ref])
        return name

    def delete_branch(self, name: str) -> None:
        self._run_git(["branch", "-D", name])

    def delete_ref(self, ref: str) -> None:
        self._run_git(["update-ref", "-d", ref])

    def diff_stat(self, ref: str) -> DiffStat:
        output = self._run_git(["diff", "--numstat", ref]).stdout
        stat = DiffStat()
        for line in output.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            added, removed, path = parts
            if added == "-" or removed == "-":
                stat.files.append(FileChange(path=path, binary=True))
            else:
                stat.files.append(FileChange(path=path, insertions=int(added), deletions=int(removed)))
        return stat

    def repo_name(self) -> str:
        top = self._run_git(["rev-parse", "--show-toplevel"]).stdout.strip()
        return Path(top).name

    def is_ignored(self, path: Path) -> bool:
        result = self._run_git(["check-ignore", "-q", str(path)], check=False)
        return result.returncode == 0
