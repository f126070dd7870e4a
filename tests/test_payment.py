"""Tests for payment records and settlement pairing."""

import pytest

from purser.budget import BudgetLedger, BudgetLimits
from purser.errors import InvalidTransitionError, PaymentNotFoundError, ReservationError
from purser.payment import MAX_PAYMENT_RETRIES, PaymentStatus, PaymentTracker
from purser.settlement import settle_payment, void_payment
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
def store(tmp_path):
    return Store(tmp_path / "purser.db")


@pytest.fixture
def tracker(store, clock):
    return PaymentTracker(store, clock=clock)


@pytest.fixture
def ledger(store, clock):
    ledger = BudgetLedger(store, clock=clock)
    ledger.initialize_budget(
        "agent-1",
        "0xabc",
        BudgetLimits(
            max_per_transaction=1000,
            max_per_session=10_000,
            max_daily=10_000,
            max_total=100_000,
        ),
        available=5000,
    )
    return ledger


def make_payment(tracker, amount=100, **overrides):
    fields = dict(
        agent_id="agent-1",
        session_id="s-1",
        tool_id="weather",
        tool_endpoint="https://api.example.com/weather",
        amount=amount,
        currency="USDC",
        network="eip155:84532",
        from_address="0xabc",
        to_address="0xdef",
    )
    fields.update(overrides)
    return tracker.create_payment(**fields)


def reserved_payment(ledger, tracker, amount=100, **overrides):
    assert ledger.reserve_funds("agent-1", amount)
    return make_payment(tracker, amount=amount, **overrides)


class TestPaymentTracker:
    def test_create_is_pending(self, tracker, clock):
        payment = make_payment(tracker)
        assert payment.status == PaymentStatus.PENDING
        assert payment.tx_hash is None
        assert payment.initiated_at == clock.now

        loaded = tracker.get_payment(payment.payment_id)
        assert loaded == payment

    def test_unique_ids(self, tracker):
        ids = {make_payment(tracker).payment_id for _ in range(10)}
        assert len(ids) == 10

    def test_create_requires_ids(self, tracker):
        with pytest.raises(ValueError):
            make_payment(tracker, session_id="")

    def test_get_missing(self, tracker):
        assert tracker.get_payment("nope") is None

    def test_complete_records_evidence(self, tracker, clock):
        payment = make_payment(tracker)
        clock.now += 2
        done = tracker.complete_payment(
            payment.payment_id, evidence={"status": 200}, tx_hash="0xfeed"
        )
        assert done.status == PaymentStatus.COMPLETED
        assert done.tx_hash == "0xfeed"
        assert done.evidence == {"status": 200}
        assert done.completed_at == clock.now

    def test_same_status_is_noop(self, tracker):
        payment = make_payment(tracker)
        tracker.update_payment_status(payment.payment_id, "failed", error="boom")
        again = tracker.update_payment_status(payment.payment_id, PaymentStatus.FAILED, error="other")
        assert again.error == "boom"

    @pytest.mark.parametrize(
        "first, second",
        [
            (PaymentStatus.FAILED, PaymentStatus.COMPLETED),
            (PaymentStatus.COMPLETED, PaymentStatus.FAILED),
            (PaymentStatus.COMPLETED, PaymentStatus.PENDING),
        ],
    )
    def test_terminal_states_reject_transitions(self, tracker, first, second):
        payment = make_payment(tracker)
        tracker.update_payment_status(payment.payment_id, first)
        with pytest.raises(InvalidTransitionError):
            tracker.update_payment_status(payment.payment_id, second)

    def test_pending_cannot_be_refunded(self, tracker):
        payment = make_payment(tracker)
        with pytest.raises(InvalidTransitionError):
            tracker.refund_payment(payment.payment_id)

    def test_refund_completed(self, tracker):
        payment = make_payment(tracker)
        tracker.complete_payment(payment.payment_id, tx_hash="0x1")
        refunded = tracker.refund_payment(payment.payment_id, reason="duplicate charge")
        assert refunded.status == PaymentStatus.REFUNDED
        assert refunded.tx_hash == "0x1"
        assert refunded.error == "duplicate charge"

    def test_update_unknown_payment(self, tracker):
        with pytest.raises(PaymentNotFoundError):
            tracker.update_payment_status("nope", PaymentStatus.FAILED)

    def test_failed_payments_respect_retry_ceiling(self, tracker):
        retryable = make_payment(tracker)
        exhausted = make_payment(tracker)
        for p in (retryable, exhausted):
            tracker.update_payment_status(p.payment_id, PaymentStatus.FAILED, error="x")
        for _ in range(MAX_PAYMENT_RETRIES):
            tracker.increment_retry(exhausted.payment_id)

        failed = tracker.get_failed_payments("agent-1")
        assert [p.payment_id for p in failed] == [retryable.payment_id]

    def test_session_and_recent_queries(self, tracker, clock):
        first = make_payment(tracker)
        clock.now += 1
        second = make_payment(tracker, session_id="s-2")
        clock.now += 1
        third = make_payment(tracker)

        session = tracker.get_session_payments("agent-1", "s-1")
        assert [p.payment_id for p in session] == [third.payment_id, first.payment_id]

        recent = tracker.get_recent_payments("agent-1", limit=2)
        assert [p.payment_id for p in recent] == [third.payment_id, second.payment_id]

    def test_workflow_payments(self, tracker):
        make_payment(tracker)
        wf_payment = make_payment(tracker, workflow_id="wf-1")
        assert [p.payment_id for p in tracker.get_workflow_payments("wf-1")] == [wf_payment.payment_id]

    def test_session_total_counts_only_completed(self, tracker):
        done = make_payment(tracker, amount=100)
        make_payment(tracker, amount=50)
        failed = make_payment(tracker, amount=25)
        tracker.complete_payment(done.payment_id)
        tracker.update_payment_status(failed.payment_id, PaymentStatus.FAILED)
        assert tracker.get_session_total_spent("agent-1", "s-1") == 100
        assert tracker.get_pending_total("agent-1") == 50

    def test_tool_stats_floor_average(self, tracker):
        for amount in (10, 11):
            p = make_payment(tracker, amount=amount)
            tracker.complete_payment(p.payment_id)
        stats = tracker.get_tool_payment_stats("weather")
        assert stats.total_payments == 2
        assert stats.total_spent == 21
        assert stats.average_amount == 10

    def test_tool_stats_empty(self, tracker):
        stats = tracker.get_tool_payment_stats("unused")
        assert stats.total_payments == 0
        assert stats.average_amount == 0

    def test_stale_pending(self, tracker, clock):
        old = make_payment(tracker)
        clock.now += 600
        make_payment(tracker)
        stale = tracker.get_stale_pending_payments(300)
        assert [p.payment_id for p in stale] == [old.payment_id]


class TestSettlement:
    def test_settle_moves_reservation_into_spent(self, ledger, tracker):
        payment = reserved_payment(ledger, tracker, 100)
        settled = settle_payment(ledger, tracker, payment.payment_id, tx_hash="0xabc")

        assert settled.status == PaymentStatus.COMPLETED
        state = ledger.get_budget("agent-1")
        assert state.balance.reserved == 0
        assert state.balance.available == 4900
        assert state.spent.total == 100

    def test_settle_is_idempotent(self, ledger, tracker):
        payment = reserved_payment(ledger, tracker, 100)
        settle_payment(ledger, tracker, payment.payment_id)
        settle_payment(ledger, tracker, payment.payment_id)
        assert ledger.get_budget("agent-1").spent.total == 100

    def test_void_releases_reservation(self, ledger, tracker):
        payment = reserved_payment(ledger, tracker, 100)
        voided = void_payment(ledger, tracker, payment.payment_id, "HTTP 500")

        assert voided.status == PaymentStatus.FAILED
        assert voided.error == "HTTP 500"
        state = ledger.get_budget("agent-1")
        assert state.balance.available == 5000
        assert state.balance.reserved == 0

    def test_void_is_idempotent(self, ledger, tracker):
        payment = reserved_payment(ledger, tracker, 100)
        void_payment(ledger, tracker, payment.payment_id, "x")
        void_payment(ledger, tracker, payment.payment_id, "x")
        assert ledger.get_budget("agent-1").balance.available == 5000

    def test_cannot_void_settled(self, ledger, tracker):
        payment = reserved_payment(ledger, tracker, 100)
        settle_payment(ledger, tracker, payment.payment_id)
        with pytest.raises(InvalidTransitionError):
            void_payment(ledger, tracker, payment.payment_id, "late failure")
        assert ledger.get_budget("agent-1").spent.total == 100

    def test_failed_pairing_rolls_back_status(self, ledger, tracker, store):
        payment = make_payment(tracker, amount=100)  # nothing reserved
        with pytest.raises(ReservationError):
            settle_payment(ledger, tracker, payment.payment_id)
        assert tracker.get_payment(payment.payment_id).status == PaymentStatus.PENDING
        assert not store.in_transaction

    def test_reserved_equals_pending_sum(self, ledger, tracker):
        payments = [reserved_payment(ledger, tracker, amount) for amount in (100, 200, 300)]
        settle_payment(ledger, tracker, payments[0].payment_id)
        void_payment(ledger, tracker, payments[1].payment_id, "x")

        assert ledger.get_budget("agent-1").balance.reserved == tracker.get_pending_total("agent-1") == 300
