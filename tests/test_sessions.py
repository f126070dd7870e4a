"""Tests for the agent session registry."""

import pytest

from purser.audit import AuditTrail, EventType
from purser.budget import BudgetLedger
from purser.errors import BudgetNotFoundError, SessionExpiredError, SessionNotFoundError
from purser.sessions import SessionRegistry
from purser.storage import Store


class FakeClock:
    def __init__(self, now: float = 1_750_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path, clock):
    ledger = BudgetLedger(Store(tmp_path / "purser.db"), clock=clock)
    ledger.initialize_budget("agent-1", "0xabc", available=1_000_000)
    ledger.initialize_budget("agent-2", "0xdef", available=1_000_000)
    return ledger


@pytest.fixture
def sessions(ledger, clock):
    return SessionRegistry(ledger, ttl_seconds=3600, clock=clock)


class TestSessionRegistry:
    def test_open_and_get(self, sessions):
        session = sessions.open_session("agent-1")
        assert session.session_id.startswith("ps-")
        assert len(session.session_id) == 15
        assert sessions.get_session(session.session_id) is session
        assert sessions.get_agent_session("agent-1") is session

    def test_open_resets_ledger_session_counter(self, sessions, ledger, clock):
        ledger.reserve_funds("agent-1", 1000)
        ledger.record_spend("agent-1", 1000)
        assert ledger.get_budget("agent-1").spent.current_session == 1000

        clock.now += 5
        sessions.open_session("agent-1")
        state = ledger.get_budget("agent-1")
        assert state.spent.current_session == 0
        assert state.spent.total == 1000
        assert state.session_started_at == clock.now

    def test_one_session_per_agent(self, sessions):
        first = sessions.open_session("agent-1")
        second = sessions.open_session("agent-1")
        other = sessions.open_session("agent-2")

        assert first.session_id != second.session_id
        with pytest.raises(SessionNotFoundError):
            sessions.get_session(first.session_id)
        assert sessions.get_agent_session("agent-1") is second
        assert {s.session_id for s in sessions.list_sessions()} == {second.session_id, other.session_id}

    def test_unknown_agent_has_no_budget(self, sessions):
        with pytest.raises(BudgetNotFoundError):
            sessions.open_session("nobody")
        assert sessions.list_sessions() == []

    def test_missing_agent_id(self, sessions):
        with pytest.raises(ValueError):
            sessions.open_session("")

    def test_expiry(self, sessions, clock):
        session = sessions.open_session("agent-1")
        assert session.to_dict(now=clock.now)["seconds_remaining"] == 3600

        clock.now += 3601
        with pytest.raises(SessionExpiredError):
            sessions.get_session(session.session_id)
        with pytest.raises(SessionNotFoundError):
            sessions.get_session(session.session_id)

    def test_expired_sessions_dropped_from_listing(self, sessions, clock):
        sessions.open_session("agent-1")
        clock.now += 4000
        assert sessions.get_agent_session("agent-1") is None
        assert sessions.list_sessions() == []

    def test_no_ttl_never_expires(self, ledger, clock):
        registry = SessionRegistry(ledger, clock=clock)
        session = registry.open_session("agent-1")
        clock.now += 10 ** 9
        assert registry.get_session(session.session_id) is session
        assert session.to_dict(now=clock.now)["expires_at"] is None

    def test_close(self, sessions):
        a = sessions.open_session("agent-1")
        sessions.open_session("agent-2")
        sessions.close_session(a.session_id)
        assert sessions.get_agent_session("agent-1") is None
        sessions.close_all()
        assert sessions.list_sessions() == []

    def test_audited(self, ledger, clock, tmp_path):
        audit = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secrets" / "audit_hmac.key")
        registry = SessionRegistry(ledger, audit=audit, clock=clock)
        session = registry.open_session("agent-1")
        events = audit.read_events(event_type=EventType.SESSION_STARTED)
        assert [e.session_id for e in events] == [session.session_id]
