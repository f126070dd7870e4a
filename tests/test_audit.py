"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from purser.audit import AuditTrail, EventType
from purser.errors import AuditChainError


@pytest.fixture
def trail(tmp_path, monkeypatch):
    monkeypatch.delenv("PURSER_AUDIT_HMAC_KEY", raising=False)
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log(EventType.FUNDS_RESERVED, agent_id="agent-1", payment_id="p-1", amount=500_000)
    trail.log(EventType.PAYMENT_COMPLETED, agent_id="agent-1", payment_id="p-1", amount=500_000)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = "9999"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_event_breaks_chain(trail, tmp_path):
    for i in range(3):
        trail.log(EventType.SPENDING_DENIED, agent_id="agent-1", success=False, reason=f"r{i}")
    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_amounts_are_logged_as_strings(trail):
    event = trail.log(EventType.PAYMENT_COMPLETED, agent_id="agent-1", amount=2 ** 70)
    assert event.amount == str(2 ** 70)
    assert trail.read_events()[0].amount == str(2 ** 70)


def test_filters_and_limit(trail):
    trail.log(EventType.WORKFLOW_STARTED, agent_id="agent-1", workflow_id="wf-1")
    trail.log(EventType.STEP_COMPLETED, agent_id="agent-1", workflow_id="wf-1")
    trail.log(EventType.STEP_COMPLETED, agent_id="agent-2", workflow_id="wf-2")
    trail.log(EventType.WORKFLOW_FINISHED, agent_id="agent-1", workflow_id="wf-1")

    assert len(trail.read_events(agent_id="agent-1")) == 3
    assert len(trail.read_events(workflow_id="wf-2")) == 1
    assert len(trail.read_events(event_type=EventType.STEP_COMPLETED)) == 2
    last = trail.read_events(limit=1)
    assert [e.event_type for e in last] == [EventType.WORKFLOW_FINISHED.value]


def test_chain_survives_reopen(tmp_path, monkeypatch):
    monkeypatch.delenv("PURSER_AUDIT_HMAC_KEY", raising=False)
    path = tmp_path / "audit.jsonl"
    key_path = tmp_path / "secret" / "audit_hmac.key"
    AuditTrail(path, key_path).log(EventType.BUDGET_INITIALIZED, agent_id="agent-1")

    reopened = AuditTrail(path, key_path)
    reopened.log(EventType.LIMITS_UPDATED, agent_id="agent-1")
    events = reopened.read_events()
    assert len(events) == 2
    assert events[1].prev_hash == events[0].event_hash


def test_wrong_key_fails_verification(tmp_path, monkeypatch):
    path = tmp_path / "audit.jsonl"
    key_path = tmp_path / "secret" / "audit_hmac.key"
    monkeypatch.setenv("PURSER_AUDIT_HMAC_KEY", "key-one")
    AuditTrail(path, key_path).log(EventType.SESSION_STARTED, agent_id="agent-1")

    monkeypatch.setenv("PURSER_AUDIT_HMAC_KEY", "key-two")
    with pytest.raises(RuntimeError, match="event hash mismatch"):
        AuditTrail(path, key_path).read_events()


def test_summary(trail):
    trail.log(EventType.PAYMENT_COMPLETED, agent_id="agent-1")
    trail.log(EventType.SPENDING_DENIED, agent_id="agent-1", success=False, reason="limit")
    trail.log(EventType.SPENDING_DENIED, agent_id="agent-2", success=False, reason="limit")

    summary = trail.summary("agent-1")
    assert summary["total_events"] == 2
    assert summary["failures"] == 1
    assert summary["by_type"] == {"payment_completed": 1, "spending_denied": 1}


def test_summary_totals_completed_amounts(trail):
    trail.log(EventType.PAYMENT_COMPLETED, agent_id="agent-1", amount=1500)
    trail.log(EventType.PAYMENT_COMPLETED, agent_id="agent-1", amount=2500)
    trail.log(EventType.PAYMENT_FAILED, agent_id="agent-1", amount=9000, success=False)

    assert trail.summary("agent-1")["spent"] == "4000"


def test_verify_counts_entries_and_reports_position(trail, tmp_path):
    for i in range(3):
        trail.log(EventType.STEP_COMPLETED, workflow_id="wf-1", details={"step": i})
    assert trail.verify() == 3

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    third = json.loads(lines[2])
    third["workflow_id"] = "wf-2"
    lines[2] = json.dumps(third, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditChainError) as exc_info:
        trail.verify()
    assert exc_info.value.position == 3
