"""
Tests for AuditLog - append-only, hash-chained audit events.
"""

import sqlite3

import pytest

from workflow_gate.audit import AuditLog
from workflow_gate.errors import AuditTamperError, StorageError
from workflow_gate.schema import (
    AuditEvent,
    Category,
    DecisionCode,
    DecisionOutcome,
    Phase,
)


@pytest.fixture
def audit(db):
    return AuditLog(db)


def make_event(event_id, task_id="task-1", command="git status", code=DecisionCode.APPROVED):
    return AuditEvent(
        id=event_id,
        task_id=task_id,
        proposed_command=command,
        classification=Category.LOCAL_READ,
        phase=Phase.BUILD,
        decision=code.outcome,
        decision_code=code,
        exit_code=0 if code == DecisionCode.APPROVED else None,
    )


class TestRecord:

    def test_sequence_and_chain(self, audit):
        first = audit.record(make_event("prop-1"))
        second = audit.record(make_event("prop-2"))

        assert (first.sequence, second.sequence) == (1, 2)
        assert first.prev_hash is None
        assert second.prev_hash == first.hash
        assert len(first.hash) == 32

    def test_sequences_are_per_task(self, audit):
        audit.record(make_event("prop-1", task_id="task-1"))
        other = audit.record(make_event("prop-2", task_id="task-2"))
        assert other.sequence == 1
        assert other.prev_hash is None

    def test_events_in_arrival_order(self, audit):
        for n in range(5):
            audit.record(make_event(f"prop-{n}", command=f"echo {n}"))
        events = audit.events_for_task("task-1")
        assert [e.proposed_command for e in events] == [f"echo {n}" for n in range(5)]
        assert audit.count("task-1") == 5

    def test_duplicate_event_id_rejected(self, audit):
        audit.record(make_event("prop-1"))
        with pytest.raises(StorageError):
            audit.record(make_event("prop-1"))

    def test_secrets_redacted(self, audit):
        event = audit.record(make_event("prop-1", command="deploy --token abc123 --env prod"))
        assert "abc123" not in event.proposed_command
        assert "[REDACTED]" in audit.get("prop-1").proposed_command

    def test_denied_event_fields(self, audit):
        event = audit.record(make_event("prop-1", code=DecisionCode.DENIED_UNAUTHORIZED))
        assert event.decision == DecisionOutcome.DENIED
        assert event.exit_code is None


class TestAppendOnly:
    """There is no path to change or remove a stored event."""

    def test_no_update_or_delete_api(self, audit):
        assert not any(hasattr(audit, name) for name in ("update", "delete", "remove", "clear"))

    def test_update_rejected_by_database(self, audit, db):
        audit.record(make_event("prop-1"))
        conn = sqlite3.connect(db.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("UPDATE audit_events SET hash = 'x' WHERE id = 'prop-1'")
        finally:
            conn.close()

    def test_delete_rejected_by_database(self, audit, db):
        audit.record(make_event("prop-1"))
        conn = sqlite3.connect(db.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute("DELETE FROM audit_events")
        finally:
            conn.close()
        assert audit.count("task-1") == 1


class TestIntegrity:

    def test_intact_chain_verifies(self, audit):
        for n in range(3):
            audit.record(make_event(f"prop-{n}"))
        assert audit.verify_integrity("task-1") is True

    def test_empty_chain_verifies(self, audit):
        assert audit.verify_integrity("task-none") is True

    def test_tampered_body_detected(self, audit, db):
        audit.record(make_event("prop-1"))
        audit.record(make_event("prop-2"))

        conn = sqlite3.connect(db.db_path)
        try:
            conn.execute("DROP TRIGGER audit_events_no_update")
            body = conn.execute("SELECT body FROM audit_events WHERE id = 'prop-1'").fetchone()[0]
            conn.execute(
                "UPDATE audit_events SET body = ? WHERE id = 'prop-1'",
                (body.replace("git status", "git push"),)
            )
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(AuditTamperError):
            audit.verify_integrity("task-1")
