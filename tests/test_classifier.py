"""
Tests for CommandClassifier - rule-driven command classification.
"""

import pytest

from workflow_gate.classifier import (
    RULE_EMPTY,
    RULE_UNPARSEABLE,
    RULE_UNRECOGNIZED,
    ClassifierRule,
    CommandClassifier,
    load_rules,
    parse_rules,
    split_segments,
)
from workflow_gate.errors import ConfigurationError
from workflow_gate.schema import Category


@pytest.fixture(scope="module")
def classifier():
    return CommandClassifier()


class TestDefaultRules:
    """Classification with the bundled rules."""

    @pytest.mark.parametrize("command,rule", [
        ("git push origin main", "git-push"),
        ("git -C repo push --tags", "git-push"),
        ("gh pr create --fill", "gh-pr-write"),
        ("gh issue comment 12 --body done", "gh-issue-write"),
        ("gh api -X POST repos/o/r/issues", "gh-api-write"),
        ("gh api repos/o/r/issues -f title=bug", "gh-api-write"),
        ("terraform apply -auto-approve", "terraform-apply"),
        ("kubectl apply -f deploy.yaml", "kubectl-apply"),
        ("alembic upgrade head", "database-migration"),
        ("npm publish", "package-publish"),
    ])
    def test_remote_writes(self, classifier, command, rule):
        """Remote mutations classify as remote-write under their rule."""
        result = classifier.classify(command)
        assert result.category == Category.REMOTE_WRITE
        assert result.rule == rule

    @pytest.mark.parametrize("command,rule", [
        ("gh pr view 12", "gh-read-query"),
        ("gh issue list --state open", "gh-read-query"),
        ("gh api repos/o/r/pulls", "gh-api-read"),
        ("git fetch origin", "remote-fetch"),
        ("kubectl get pods", "cluster-read"),
        ("terraform plan", "cluster-read"),
    ])
    def test_read_only_remote_queries_are_exempt(self, classifier, command, rule):
        """Read-only remote queries are not remote-write."""
        result = classifier.classify(command)
        assert result.category == Category.LOCAL_READ
        assert result.rule == rule

    @pytest.mark.parametrize("command,rule", [
        ("git commit -m wip", "git-local-write"),
        ("git branch feature", "git-local-write"),
        ("rm -rf build", "file-write"),
        ("sed -i s/a/b/ file.txt", "in-place-edit"),
        ("pip install requests", "dependency-install"),
        ("echo hello > out.txt", "shell-redirect"),
        ("black src", "formatter-write"),
        ("find . -name '*.pyc' -delete", "find-write"),
        (r"find . -exec rm {} \;", "find-write"),
        ("find . -type f -fprint0 files.txt", "find-write"),
        ("kubectl get pods -o yaml > pods.yaml", "shell-redirect"),
        ("gh pr view 12 > pr.txt", "shell-redirect"),
        ("gh api repos/o/r > repo.json", "shell-redirect"),
        ("git log >> history.txt", "shell-redirect"),
    ])
    def test_local_writes(self, classifier, command, rule):
        result = classifier.classify(command)
        assert result.category == Category.LOCAL_WRITE
        assert result.rule == rule

    @pytest.mark.parametrize("command,rule", [
        ("git status", "git-read"),
        ("git diff HEAD~1", "git-read"),
        ("git branch --list", "git-branch-read"),
        ("ls -la", "file-read"),
        ("cat README.md", "file-read"),
        ("pytest -x tests", "test-runner"),
        ("run tests", "agent-read-action"),
    ])
    def test_local_reads(self, classifier, command, rule):
        result = classifier.classify(command)
        assert result.category == Category.LOCAL_READ
        assert result.rule == rule

    def test_redirect_to_dev_null_is_not_a_write(self, classifier):
        """Discarding output does not write a file."""
        assert classifier.classify("ls 2>/dev/null").category == Category.LOCAL_READ

    def test_find_without_actions_is_a_read(self, classifier):
        result = classifier.classify("find . -name '*.py' -newer setup.cfg")
        assert result.category == Category.LOCAL_READ
        assert result.rule == "file-read"

    def test_redirect_does_not_downgrade_remote_write(self, classifier):
        assert classifier.classify("git push origin main > push.log").rule == "git-push"


class TestFailClosed:
    """Anything the rules cannot place is remote-write."""

    def test_unrecognized_command(self, classifier):
        result = classifier.classify("frobnicate --all")
        assert result.category == Category.REMOTE_WRITE
        assert result.rule == RULE_UNRECOGNIZED

    def test_empty_command(self, classifier):
        result = classifier.classify("   ")
        assert result.category == Category.REMOTE_WRITE
        assert result.rule == RULE_EMPTY

    @pytest.mark.parametrize("command", ["env", "sudo", "sudo env FOO=1"])
    def test_prefixes_only_is_unrecognized(self, classifier, command):
        result = classifier.classify(command)
        assert result.category == Category.REMOTE_WRITE
        assert result.rule == RULE_UNRECOGNIZED

    def test_unbalanced_quotes(self, classifier):
        result = classifier.classify('echo "unterminated')
        assert result.category == Category.REMOTE_WRITE
        assert result.rule == RULE_UNPARSEABLE


class TestCompoundCommands:
    """The most restrictive segment decides."""

    def test_read_then_push_is_remote_write(self, classifier):
        result = classifier.classify("git status && git push")
        assert result.category == Category.REMOTE_WRITE
        assert result.rule == "git-push"

    def test_cd_then_commit_is_local_write(self, classifier):
        result = classifier.classify("cd repo; git commit -am wip")
        assert result.category == Category.LOCAL_WRITE

    def test_pipe_into_tee_is_local_write(self, classifier):
        assert classifier.classify("cat a.txt | tee b.txt").category == Category.LOCAL_WRITE

    def test_quoted_separator_does_not_split(self, classifier):
        """A separator inside quotes is an argument, not a new command."""
        result = classifier.classify("echo 'a && git push'")
        assert result.category == Category.LOCAL_READ

    def test_transparent_prefixes_are_ignored(self, classifier):
        assert classifier.classify("sudo git push").rule == "git-push"
        assert classifier.classify("GIT_TRACE=1 git push").rule == "git-push"

    def test_split_segments(self):
        assert split_segments("a && b || c; d | e") == ["a", "b", "c", "d", "e"]


class TestClassifierRules:
    """Rule data loading and ordering."""

    def test_bundled_rules_load(self):
        names = [rule.name for rule in load_rules()]
        assert "git-push" in names
        assert len(names) == len(set(names))

    def test_extra_rules_take_precedence(self):
        extra = ClassifierRule(
            name="safe-push-dry-run",
            category=Category.LOCAL_READ,
            pattern=r"^git\s+push\s+--dry-run\b",
        )
        classifier = CommandClassifier(extra_rules=[extra])

        assert classifier.classify("git push --dry-run").category == Category.LOCAL_READ
        assert classifier.classify("git push").category == Category.REMOTE_WRITE
        assert classifier.rule_names()[0] == "safe-push-dry-run"

    def test_classification_is_deterministic(self, classifier):
        first = classifier.classify("make deploy")
        assert all(classifier.classify("make deploy") == first for _ in range(5))

    def test_invalid_pattern_rejected(self):
        with pytest.raises(ConfigurationError):
            ClassifierRule(name="broken", category=Category.LOCAL_READ, pattern="(unclosed")

    def test_invalid_category_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules({"rules": [{"name": "x", "category": "maybe", "pattern": "x"}]})

    def test_missing_rules_list_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules({"version": 1})

    def test_rules_file(self, tmp_path):
        rules_file = tmp_path / "rules.yaml"
        rules_file.write_text(
            "rules:\n"
            "  - name: anything\n"
            "    category: local-read\n"
            "    pattern: '.*'\n"
        )
        classifier = CommandClassifier(rules=load_rules(rules_file))
        assert classifier.classify("git push").category == Category.LOCAL_READ

    def test_missing_rules_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_rules(tmp_path / "nope.yaml")
