"""Tests for the budget ledger."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from purser.budget import (
    DEFAULT_LIMITS,
    BudgetLedger,
    BudgetLimits,
    LimitTier,
    next_local_midnight,
)
from purser.errors import BudgetNotFoundError, ReservationError
from purser.storage import Store


WALLET = "0x1111111111111111111111111111111111111111"


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
    return BudgetLedger(Store(tmp_path / "purser.db"), clock=clock)


def limits(per_tx=100, session=150, daily=1000, total=1_000_000):
    return BudgetLimits(
        max_per_transaction=per_tx,
        max_per_session=session,
        max_daily=daily,
        max_total=total,
    )


class TestInitialize:
    def test_creates_budget_with_defaults(self, ledger, clock):
        state = ledger.initialize_budget("agent-1", WALLET)
        assert state.agent_id == "agent-1"
        assert state.wallet_address == WALLET
        assert state.limits == DEFAULT_LIMITS
        assert state.balance.available == 0
        assert state.balance.reserved == 0
        assert state.spent.total == 0
        assert state.daily_reset_at == next_local_midnight(clock.now)

    def test_idempotent(self, ledger):
        first = ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        second = ledger.initialize_budget("agent-1", "0xother", limits(per_tx=5), available=5)
        assert second.wallet_address == WALLET
        assert second.limits == first.limits
        assert second.balance.available == 1000

    def test_missing_agent_id_fails_fast(self, ledger):
        with pytest.raises(ValueError, match="agent_id is required"):
            ledger.initialize_budget("", WALLET)

    def test_rejects_float_amounts(self, ledger):
        with pytest.raises(TypeError):
            ledger.initialize_budget("agent-1", WALLET, available=1.5)

    def test_get_budget_missing(self, ledger):
        assert ledger.get_budget("nobody") is None


class TestCanSpend:
    def test_uninitialized(self, ledger):
        decision = ledger.can_spend("nobody", 10)
        assert not decision
        assert decision.reason == "Budget not initialized"
        assert decision.tier == LimitTier.UNINITIALIZED

    def test_allowed(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        decision = ledger.can_spend("agent-1", 100)
        assert decision.allowed
        assert decision.reason is None

    def test_per_transaction_limit(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        decision = ledger.can_spend("agent-1", 101)
        assert decision.tier == LimitTier.PER_TRANSACTION
        assert "per-transaction limit of 100" in decision.reason

    def test_session_limit(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        assert ledger.reserve_funds("agent-1", 100)
        ledger.record_spend("agent-1", 100)
        decision = ledger.can_spend("agent-1", 100)
        assert decision.tier == LimitTier.SESSION
        assert "session limit of 150" in decision.reason

    def test_daily_limit(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(session=10_000, daily=150), available=1000)
        ledger.reserve_funds("agent-1", 100)
        ledger.record_spend("agent-1", 100)
        decision = ledger.can_spend("agent-1", 100)
        assert decision.tier == LimitTier.DAILY
        assert "daily limit of 150" in decision.reason

    def test_total_limit(self, ledger):
        ledger.initialize_budget(
            "agent-1", WALLET, limits(session=10_000, daily=10_000, total=150), available=1000
        )
        ledger.reserve_funds("agent-1", 100)
        ledger.record_spend("agent-1", 100)
        decision = ledger.can_spend("agent-1", 100)
        assert decision.tier == LimitTier.TOTAL
        assert "total limit of 150" in decision.reason

    def test_insufficient_balance(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=50)
        decision = ledger.can_spend("agent-1", 60)
        assert decision.tier == LimitTier.BALANCE
        assert decision.reason == "Insufficient balance. Available: 50"

    def test_first_violation_wins(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=0)
        decision = ledger.can_spend("agent-1", 500)
        assert decision.tier == LimitTier.PER_TRANSACTION

    def test_daily_counter_resets_after_boundary(self, ledger, clock):
        ledger.initialize_budget("agent-1", WALLET, limits(session=10_000, daily=150), available=1000)
        ledger.reserve_funds("agent-1", 100)
        ledger.record_spend("agent-1", 100)
        assert ledger.can_spend("agent-1", 100).tier == LimitTier.DAILY

        clock.now = ledger.get_budget("agent-1").daily_reset_at + 1
        assert ledger.can_spend("agent-1", 100).allowed
        assert ledger.get_remaining_budget("agent-1").daily == 150


class TestReservation:
    def test_reserve_then_spend(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        assert ledger.reserve_funds("agent-1", 100)
        state = ledger.get_budget("agent-1")
        assert state.balance.available == 900
        assert state.balance.reserved == 100

        state = ledger.record_spend("agent-1", 100)
        assert state.balance.available == 900
        assert state.balance.reserved == 0
        assert state.spent.current_session == 100
        assert state.spent.today == 100
        assert state.spent.total == 100

    def test_reserve_then_release_restores_available(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        ledger.reserve_funds("agent-1", 100)
        state = ledger.release_funds("agent-1", 100)
        assert state.balance.available == 1000
        assert state.balance.reserved == 0
        assert state.spent.total == 0

    def test_reserve_denied_leaves_state_untouched(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        assert not ledger.reserve_funds("agent-1", 500)
        state = ledger.get_budget("agent-1")
        assert state.balance.available == 1000
        assert state.balance.reserved == 0

    def test_reserve_uninitialized(self, ledger):
        assert not ledger.reserve_funds("nobody", 1)

    def test_spend_more_than_reserved(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        ledger.reserve_funds("agent-1", 50)
        with pytest.raises(ReservationError):
            ledger.record_spend("agent-1", 60)

    def test_release_more_than_reserved(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        with pytest.raises(ReservationError):
            ledger.release_funds("agent-1", 1)

    def test_record_spend_unknown_agent(self, ledger):
        with pytest.raises(BudgetNotFoundError):
            ledger.record_spend("nobody", 1)

    def test_session_scenario(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)

        assert ledger.reserve_funds("agent-1", 100)

        denied = ledger.can_spend("agent-1", 100)
        assert not denied
        assert denied.tier == LimitTier.SESSION
        assert not ledger.reserve_funds("agent-1", 100)

        state = ledger.release_funds("agent-1", 100)
        assert state.balance.available == 1000
        assert state.balance.reserved == 0
        assert ledger.can_spend("agent-1", 100).allowed

    def test_reservations_count_against_limits(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        ledger.reserve_funds("agent-1", 100)
        assert ledger.get_remaining_budget("agent-1").session == 50
        assert ledger.can_spend("agent-1", 50).allowed
        assert ledger.can_spend("agent-1", 51).tier == LimitTier.SESSION

    def test_spend_after_day_rollover_resets_today(self, ledger, clock):
        ledger.initialize_budget("agent-1", WALLET, limits(session=10_000), available=1000)
        ledger.reserve_funds("agent-1", 100)
        ledger.record_spend("agent-1", 100)

        old_reset = ledger.get_budget("agent-1").daily_reset_at
        clock.now = old_reset + 60
        ledger.reserve_funds("agent-1", 50)
        state = ledger.record_spend("agent-1", 50)
        assert state.spent.today == 50
        assert state.spent.total == 150
        assert state.daily_reset_at == next_local_midnight(clock.now)
        assert state.daily_reset_at > old_reset

    def test_concurrent_reservations_do_not_overspend(self, ledger):
        ledger.initialize_budget(
            "agent-1",
            WALLET,
            limits(per_tx=10, session=10_000, daily=10_000, total=10_000),
            available=200,
        )

        def attempt(_):
            return ledger.reserve_funds("agent-1", 10)

        with ThreadPoolExecutor(max_workers=20) as ex:
            results = list(ex.map(attempt, range(100)))

        state = ledger.get_budget("agent-1")
        assert sum(results) == 20
        assert state.balance.reserved == 200
        assert state.balance.available == 0


class TestLimitsAndSessions:
    def test_update_limits_partial(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        state = ledger.update_limits("agent-1", max_daily=5000)
        assert state.limits.max_daily == 5000
        assert state.limits.max_per_transaction == 100

    def test_update_limits_unknown_agent(self, ledger):
        with pytest.raises(BudgetNotFoundError):
            ledger.update_limits("nobody", max_daily=1)

    def test_start_new_session_zeroes_counter(self, ledger, clock):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        ledger.reserve_funds("agent-1", 100)
        ledger.record_spend("agent-1", 100)
        clock.now += 10
        state = ledger.start_new_session("agent-1")
        assert state.spent.current_session == 0
        assert state.spent.total == 100
        assert state.session_started_at == clock.now

    def test_update_balance(self, ledger, clock):
        ledger.initialize_budget("agent-1", WALLET, limits())
        clock.now += 5
        state = ledger.update_balance("agent-1", "2500")
        assert state.balance.available == 2500
        assert state.balance.last_checked == clock.now

    def test_remaining_budget_clamped(self, ledger):
        ledger.initialize_budget("agent-1", WALLET, limits(), available=1000)
        ledger.reserve_funds("agent-1", 100)
        ledger.record_spend("agent-1", 100)
        ledger.update_limits("agent-1", max_per_session=50)
        remaining = ledger.get_remaining_budget("agent-1")
        assert remaining.session == 0
        assert remaining.daily == 900
        assert remaining.total == 999_900

    def test_large_amounts_beyond_64_bits(self, ledger):
        huge = 2 ** 70
        ledger.initialize_budget(
            "agent-1",
            WALLET,
            limits(per_tx=huge, session=huge, daily=huge, total=huge * 2),
            available=huge,
        )
        assert ledger.reserve_funds("agent-1", huge)
        state = ledger.record_spend("agent-1", huge)
        assert state.spent.total == huge
