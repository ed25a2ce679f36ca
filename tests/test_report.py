"""
Tests for ReportBuilder and AuditReport rendering.
"""

import tempfile
from pathlib import Path

import pytest

from workflow_gate.schema import AuthorizationScope


def _strip_rendered(markdown: str) -> str:
    return "\n".join(line for line in markdown.splitlines() if not line.startswith("Rendered:"))


@pytest.fixture
def worked_task(engine):
    """A level-1 task with a write, an authorized push and a denial."""
    task = engine.create_task(1, description="Fix typo")
    engine.advance(task.id, "Build")

    decision = engine.propose(task.id, "sed -i s/teh/the/ README.md")
    engine.record_result(decision, exit_code=0, duration_ms=12)

    engine.propose(task.id, "git push origin main")  # denied
    engine.authorize(task.id, "git push origin main", authorized_by="alice")
    decision = engine.propose(task.id, "git push origin main")
    engine.record_result(decision, exit_code=0, duration_ms=900)
    return task


class TestRender:

    def test_report_contents(self, engine, worked_task):
        report = engine.render_report(worked_task.id)
        markdown = report.to_markdown()

        assert f"# Audit Report: {worked_task.id}" in markdown
        assert "sed -i s/teh/the/ README.md" in markdown
        assert "denied:unauthorized" in markdown
        assert "approved" in markdown
        assert "git push origin main` (single-use) by alice" in markdown
        assert "2 file(s) changed, 11 insertion(s), 2 deletion(s)" in markdown
        assert "PASS: 3 event(s), hash chain intact" in markdown
        assert "UTC" in markdown
        assert len(report.checkpoints) == 1

    def test_render_is_idempotent(self, engine, worked_task):
        """Two renders differ only in the Rendered line."""
        first = engine.render_report(worked_task.id).to_markdown()
        second = engine.render_report(worked_task.id).to_markdown()
        assert _strip_rendered(first) == _strip_rendered(second)

    def test_render_without_checkpoint(self, engine):
        task = engine.create_task(1)
        markdown = engine.render_report(task.id).to_markdown()
        assert "_No commands proposed._" in markdown
        assert "no checkpoint was taken" in markdown

    def test_diff_failure_is_reported(self, engine, vcs, worked_task):
        vcs.fail_on.add("diff_stat")
        markdown = engine.render_report(worked_task.id).to_markdown()
        assert "_Unavailable: diff_stat failed_" in markdown

    def test_session_authorization_listed_when_used(self, engine):
        task = engine.create_task(1)
        engine.advance(task.id, "Build")
        engine.authorize(task.id, "git-push", authorized_by="bob", scope=AuthorizationScope.SESSION)
        engine.authorize(task.id, "npm publish", authorized_by="bob")  # never used

        decision = engine.propose(task.id, "git push")
        engine.record_result(decision, exit_code=0)

        markdown = engine.render_report(task.id).to_markdown()
        assert "`git-push` (session) by bob" in markdown
        assert "npm publish" not in markdown

    def test_approval_without_result_is_listed(self, engine):
        task = engine.create_task(1)
        engine.advance(task.id, "Build")
        decision = engine.propose(task.id, "touch notes.txt")

        markdown = engine.render_report(task.id).to_markdown()
        assert "### Approved, No Result Recorded" in markdown
        assert "`touch notes.txt` (local-write) approved" in markdown
        assert decision.proposal_id in markdown

        engine.record_result(decision.proposal_id, exit_code=0)
        markdown = engine.render_report(task.id).to_markdown()
        assert "No Result Recorded" not in markdown


class TestWrite:

    def test_writes_to_ignored_extras_dir(self, engine, vcs, worked_task, tmp_path):
        extras = tmp_path / ".extras"
        extras.mkdir()
        vcs.ignored.add(".extras")

        path = engine.write_report(worked_task.id)

        assert path.parent == extras
        assert path.name.startswith("audit-demo-repo-main-")
        assert path.suffix == ".md"
        assert path.read_text().startswith(f"# Audit Report: {worked_task.id}")

    def test_unignored_extras_dir_falls_back_to_temp(self, engine, worked_task, tmp_path):
        (tmp_path / ".extras").mkdir()
        path = engine.write_report(worked_task.id)
        try:
            assert path.parent == Path(tempfile.gettempdir())
        finally:
            path.unlink()

    def test_missing_extras_dir_falls_back_to_temp(self, engine, worked_task):
        path = engine.write_report(worked_task.id)
        try:
            assert path.parent == Path(tempfile.gettempdir())
            assert path.exists()
        finally:
            path.unlink()

    def test_same_timestamp_does_not_overwrite(self, engine, vcs, worked_task, tmp_path):
        (tmp_path / ".extras").mkdir()
        vcs.ignored.add(".extras")
        report = engine.render_report(worked_task.id)

        first = engine.reports.write(report, engine.extras_dir)
        second = engine.reports.write(report, engine.extras_dir)

        assert first != second
        assert first.exists() and second.exists()
        assert second.name == f"{first.stem}-1.md"

    def test_filename_has_sub_second_resolution(self, engine, worked_task):
        report = engine.render_report(worked_task.id)
        name = engine.reports.filename(report)
        assert report.rendered_at.strftime("%H%M%S%f") in name
