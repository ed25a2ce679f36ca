"""Tests for GitVersionControl against a real temporary repository"""

import subprocess

import pytest

from workflow_gate.checkpoint import CheckpointManager
from workflow_gate.vcs import GitVersionControl, VcsError


def _git(repo, *args):
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture
def git_repo(tmp_path):
    """Create a temporary git repository for testing"""
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    _git(repo_path, "init", "-b", "main")
    _git(repo_path, "config", "user.email", "test@test.com")
    _git(repo_path, "config", "user.name", "Test User")

    (repo_path / "README.md").write_text("# Test Repo\n")
    (repo_path / ".gitignore").write_text(".extras/\n")
    _git(repo_path, "add", ".")
    _git(repo_path, "commit", "-m", "Initial commit")

    return repo_path


@pytest.fixture
def git(git_repo):
    return GitVersionControl(git_repo)


class TestGitVersionControl:

    def test_current_head(self, git, git_repo):
        head = git.current_head()
        assert head.ref == _git(git_repo, "rev-parse", "HEAD")
        assert head.branch == "main"

    def test_snapshot_includes_untracked_without_touching_worktree(self, git, git_repo):
        (git_repo / "README.md").write_text("# Changed\n")
        (git_repo / "new.txt").write_text("untracked\n")
        status_before = _git(git_repo, "status", "--porcelain")

        ref = git.snapshot("task-1/cp_1", "checkpoint")

        files = _git(git_repo, "ls-tree", "--name-only", ref).splitlines()
        assert "new.txt" in files
        assert _git(git_repo, "show", f"{ref}:README.md") == "# Changed"
        assert _git(git_repo, "status", "--porcelain") == status_before

    def test_create_and_delete_branch(self, git, git_repo):
        head = git.current_head()
        name = git.create_branch("workflow-gate/rollback/task-1/cp_1", head.ref)
        assert _git(git_repo, "rev-parse", name) == head.ref

        git.delete_branch(name)
        with pytest.raises(subprocess.CalledProcessError):
            _git(git_repo, "rev-parse", "--verify", name)

    def test_duplicate_branch_fails(self, git):
        head = git.current_head()
        git.create_branch("rollback-x", head.ref)
        with pytest.raises(VcsError):
            git.create_branch("rollback-x", head.ref)

    def test_diff_stat(self, git, git_repo):
        base = git.current_head().ref
        (git_repo / "README.md").write_text("# Test Repo\nmore\nlines\n")

        stat = git.diff_stat(base)

        assert stat.files_changed == 1
        assert stat.insertions == 2
        assert stat.deletions == 0

    def test_is_ignored(self, git, git_repo):
        (git_repo / ".extras").mkdir()
        assert git.is_ignored(git_repo / ".extras")
        assert not git.is_ignored(git_repo / "README.md")

    def test_repo_name(self, git):
        assert git.repo_name() == "test_repo"

    def test_not_a_repository(self, tmp_path):
        with pytest.raises(VcsError):
            GitVersionControl(tmp_path).current_head()


class TestCheckpointOnGit:

    def test_checkpoint_anchors_baseline(self, db, git, git_repo):
        manager = CheckpointManager(db, git)
        baseline = git.current_head().ref
        (git_repo / "work.txt").write_text("in progress\n")

        cp = manager.create_checkpoint("task-1", "sess-1")

        assert cp.baseline_ref == baseline
        assert _git(git_repo, "rev-parse", cp.rollback_ref) == baseline
        assert "work.txt" in _git(git_repo, "ls-tree", "--name-only", cp.snapshot_ref)
