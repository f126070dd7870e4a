"""
Budget ledger for agent spending.

Each agent has one budget record with four independent limit tiers
(per-transaction, session, daily, lifetime) and a live balance split into
``available`` and ``reserved``. Funds are reserved before a payment is
attempted and then either recorded as spent or released, so two concurrent
callers can never commit the same funds.

All amounts are integer base units. They are stored as decimal strings so
lifetime totals are not bounded by SQLite's 64-bit integers.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from .errors import BudgetNotFoundError, ReservationError
from .money import parse_amount
from .storage import Store

logger = logging.getLogger(__name__)


class LimitTier(str, Enum):
    PER_TRANSACTION = "per-transaction"
    SESSION = "session"
    DAILY = "daily"
    TOTAL = "total"
    BALANCE = "balance"
    UNINITIALIZED = "uninitialized"


@dataclass
class BudgetLimits:
    """Spending ceilings in base units."""

    max_per_transaction: int
    max_per_session: int
    max_daily: int
    max_total: int

    def __post_init__(self):
        self.max_per_transaction = parse_amount(self.max_per_transaction, "max_per_transaction")
        self.max_per_session = parse_amount(self.max_per_session, "max_per_session")
        self.max_daily = parse_amount(self.max_daily, "max_daily")
        self.max_total = parse_amount(self.max_total, "max_total")

    def to_dict(self) -> dict:
        return {
            "max_per_transaction": str(self.max_per_transaction),
            "max_per_session": str(self.max_per_session),
            "max_daily": str(self.max_daily),
            "max_total": str(self.max_total),
        }


DEFAULT_LIMITS = BudgetLimits(
    max_per_transaction=100_000,
    max_per_session=1_000_000,
    max_daily=10_000_000,
    max_total=100_000_000,
)


@dataclass
class SpentCounters:
    current_session: int = 0
    today: int = 0
    total: int = 0


@dataclass
class Balance:
    available: int = 0
    reserved: int = 0
    last_checked: float = 0.0


@dataclass
class BudgetState:
    """Snapshot of an agent's budget record."""

    agent_id: str
    wallet_address: str
    limits: BudgetLimits
    spent: SpentCounters
    balance: Balance
    daily_reset_at: float
    session_started_at: float
    created_at: float
    updated_at: float

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "wallet_address": self.wallet_address,
            "limits": self.limits.to_dict(),
            "spent": {
                "current_session": str(self.spent.current_session),
                "today": str(self.spent.today),
                "total": str(self.spent.total),
            },
            "balance": {
                "available": str(self.balance.available),
                "reserved": str(self.balance.reserved),
                "last_checked": self.balance.last_checked,
            },
            "daily_reset_at": self.daily_reset_at,
            "session_started_at": self.session_started_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class SpendDecision:
    """Outcome of a budget check. ``tier`` names the violated limit."""

    allowed: bool
    reason: Optional[str] = None
    tier: Optional[LimitTier] = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class RemainingBudget:
    session: int
    daily: int
    total: int

    def to_dict(self) -> dict:
        return {"session": str(self.session), "daily": str(self.daily), "total": str(self.total)}


def next_local_midnight(now: float) -> float:
    """Epoch seconds of the first local midnight after ``now``."""
    current = datetime.fromtimestamp(now)
    tomorrow = (current + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return tomorrow.timestamp()


class BudgetLedger:
    """
    Per-agent spend limits and balance.

    This is the only mutation path for money accounting. Every write runs
    inside ``Store.transaction()`` (BEGIN IMMEDIATE), and the reservation
    update is a compare-and-swap on the balance it read, so check-then-act
    races between concurrent callers for the same agent cannot overspend.
    """

    def __init__(self, store: Store, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    # ── Reads ─────────────────────────────────────────────────────

    def _row_to_state(self, row: sqlite3.Row) -> BudgetState:
        return BudgetState(
            agent_id=row["agent_id"],
            wallet_address=row["wallet_address"],
            limits=BudgetLimits(
                max_per_transaction=int(row["max_per_transaction"]),
                max_per_session=int(row["max_per_session"]),
                max_daily=int(row["max_daily"]),
                max_total=int(row["max_total"]),
            ),
            spent=SpentCounters(
                current_session=int(row["spent_session"]),
                today=int(row["spent_today"]),
                total=int(row["spent_total"]),
            ),
            balance=Balance(
                available=int(row["available"]),
                reserved=int(row["reserved"]),
                last_checked=row["last_checked"],
            ),
            daily_reset_at=row["daily_reset_at"],
            session_started_at=row["session_started_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load(self, conn: sqlite3.Connection, agent_id: str) -> Optional[BudgetState]:
        row = conn.execute("SELECT * FROM budgets WHERE agent_id = ?", (agent_id,)).fetchone()
        return self._row_to_state(row) if row is not None else None

    def _require(self, conn: sqlite3.Connection, agent_id: str) -> BudgetState:
        state = self._load(conn, agent_id)
        if state is None:
            raise BudgetNotFoundError(agent_id)
        return state

    def get_budget(self, agent_id: str) -> Optional[BudgetState]:
        _require_id(agent_id)
        with self.store.read() as conn:
            return self._load(conn, agent_id)

    # ── Lifecycle ─────────────────────────────────────────────────

    def initialize_budget(
        self,
        agent_id: str,
        wallet_address: str,
        limits: Optional[BudgetLimits] = None,
        available: int | str = 0,
    ) -> BudgetState:
        """Create the agent's budget, or return the existing one unchanged."""
        _require_id(agent_id)
        available_amount = parse_amount(available, "available")
        if limits is None:
            limits = replace(DEFAULT_LIMITS)
        with self.store.transaction() as conn:
            existing = self._load(conn, agent_id)
            if existing is not None:
                return existing

            now = self._clock()
            conn.execute(
                """
                INSERT INTO budgets (
                    agent_id, wallet_address,
                    max_per_transaction, max_per_session, max_daily, max_total,
                    spent_session, spent_today, spent_total,
                    available, reserved, last_checked,
                    daily_reset_at, session_started_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, '0', '0', '0', ?, '0', ?, ?, ?, ?, ?)
                """,
                (
                    agent_id,
                    wallet_address,
                    str(limits.max_per_transaction),
                    str(limits.max_per_session),
                    str(limits.max_daily),
                    str(limits.max_total),
                    str(available_amount),
                    now,
                    next_local_midnight(now),
                    now,
                    now,
                    now,
                ),
            )
            logger.info("Budget initialized for agent %s (wallet: %s)", agent_id, wallet_address)
            return self._require(conn, agent_id)

    # ── Checks ────────────────────────────────────────────────────

    def _evaluate(self, state: BudgetState, amount: int) -> SpendDecision:
        # Outstanding reservations count against every spend tier.
        limits = state.limits
        reserved = state.balance.reserved
        if amount > limits.max_per_transaction:
            return SpendDecision(
                False,
                f"Amount {amount} exceeds per-transaction limit of {limits.max_per_transaction}",
                LimitTier.PER_TRANSACTION,
            )

        if state.spent.current_session + reserved + amount > limits.max_per_session:
            return SpendDecision(
                False,
                f"Would exceed session limit of {limits.max_per_session} "
                f"(spent {state.spent.current_session} this session, {reserved} reserved)",
                LimitTier.SESSION,
            )

        today = self._spent_today(state)
        if today + reserved + amount > limits.max_daily:
            return SpendDecision(
                False,
                f"Would exceed daily limit of {limits.max_daily} "
                f"(spent {today} today, {reserved} reserved)",
                LimitTier.DAILY,
            )

        if state.spent.total + reserved + amount > limits.max_total:
            return SpendDecision(
                False,
                f"Would exceed total limit of {limits.max_total} "
                f"(spent {state.spent.total}, {reserved} reserved)",
                LimitTier.TOTAL,
            )

        if amount > state.balance.available:
            return SpendDecision(
                False,
                f"Insufficient balance. Available: {state.balance.available}",
                LimitTier.BALANCE,
            )

        return SpendDecision(True)

    def can_spend(self, agent_id: str, amount: int | str) -> SpendDecision:
        """Check a proposed spend against every limit tier, first violation wins."""
        _require_id(agent_id)
        amount = parse_amount(amount)
        with self.store.read() as conn:
            state = self._load(conn, agent_id)
        if state is None:
            return SpendDecision(False, "Budget not initialized", LimitTier.UNINITIALIZED)
        return self._evaluate(state, amount)

    # ── Mutations ─────────────────────────────────────────────────

    def reserve_funds(self, agent_id: str, amount: int | str) -> bool:
        """
        Move ``amount`` from available to reserved if every limit allows it.

        Returns False without mutating anything when the check fails or a
        concurrent writer changed the balance first; callers may re-run
        ``can_spend`` and try again.
        """
        _require_id(agent_id)
        amount = parse_amount(amount)
        with self.store.transaction() as conn:
            state = self._load(conn, agent_id)
            if state is None:
                return False
            decision = self._evaluate(state, amount)
            if not decision.allowed:
                logger.info("Reservation denied for agent %s: %s", agent_id, decision.reason)
                return False

            cursor = conn.execute(
                """
                UPDATE budgets
                SET available = ?, reserved = ?, updated_at = ?
                WHERE agent_id = ? AND available = ? AND reserved = ?
                """,
                (
                    str(state.balance.available - amount),
                    str(state.balance.reserved + amount),
                    self._clock(),
                    agent_id,
                    str(state.balance.available),
                    str(state.balance.reserved),
                ),
            )
            if cursor.rowcount != 1:
                logger.warning("Reservation lost a concurrent update for agent %s", agent_id)
                return False
        logger.debug("Reserved %d for agent %s", amount, agent_id)
        return True

    def record_spend(self, agent_id: str, amount: int | str) -> BudgetState:
        """Move a reserved amount into the spent counters."""
        _require_id(agent_id)
        amount = parse_amount(amount)
        with self.store.transaction() as conn:
            state = self._require(conn, agent_id)
            if amount > state.balance.reserved:
                raise ReservationError(agent_id, amount, state.balance.reserved)

            now = self._clock()
            today = state.spent.today
            daily_reset_at = state.daily_reset_at
            if now > daily_reset_at:
                today = 0
                daily_reset_at = next_local_midnight(now)

            conn.execute(
                """
                UPDATE budgets
                SET spent_session = ?, spent_today = ?, spent_total = ?,
                    reserved = ?, daily_reset_at = ?, updated_at = ?
                WHERE agent_id = ?
                """,
                (
                    str(state.spent.current_session + amount),
                    str(today + amount),
                    str(state.spent.total + amount),
                    str(state.balance.reserved - amount),
                    daily_reset_at,
                    now,
                    agent_id,
                ),
            )
            return self._require(conn, agent_id)

    def release_funds(self, agent_id: str, amount: int | str) -> BudgetState:
        """Return a reserved amount to available (the payment will not happen)."""
        _require_id(agent_id)
        amount = parse_amount(amount)
        with self.store.transaction() as conn:
            state = self._require(conn, agent_id)
            if amount > state.balance.reserved:
                raise ReservationError(agent_id, amount, state.balance.reserved)
            conn.execute(
                """
                UPDATE budgets
                SET available = ?, reserved = ?, updated_at = ?
                WHERE agent_id = ?
                """,
                (
                    str(state.balance.available + amount),
                    str(state.balance.reserved - amount),
                    self._clock(),
                    agent_id,
                ),
            )
            return self._require(conn, agent_id)

    def update_balance(self, agent_id: str, available: int | str) -> BudgetState:
        """Overwrite the available balance from an external wallet reading."""
        _require_id(agent_id)
        available = parse_amount(available, "available")
        with self.store.transaction() as conn:
            self._require(conn, agent_id)
            now = self._clock()
            conn.execute(
                """
                UPDATE budgets SET available = ?, last_checked = ?, updated_at = ?
                WHERE agent_id = ?
                """,
                (str(available), now, now, agent_id),
            )
            return self._require(conn, agent_id)

    def update_limits(
        self,
        agent_id: str,
        max_per_transaction: int | str | None = None,
        max_per_session: int | str | None = None,
        max_daily: int | str | None = None,
        max_total: int | str | None = None,
    ) -> BudgetState:
        """Change any subset of limits; ``None`` leaves a tier unchanged."""
        _require_id(agent_id)
        updates = {
            column: str(parse_amount(value, column))
            for column, value in (
                ("max_per_transaction", max_per_transaction),
                ("max_per_session", max_per_session),
                ("max_daily", max_daily),
                ("max_total", max_total),
            )
            if value is not None
        }
        with self.store.transaction() as conn:
            self._require(conn, agent_id)
            if updates:
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(
                    f"UPDATE budgets SET {assignments}, updated_at = ? WHERE agent_id = ?",
                    (*updates.values(), self._clock(), agent_id),
                )
                logger.info("Limits updated for agent %s: %s", agent_id, updates)
            return self._require(conn, agent_id)

    def start_new_session(self, agent_id: str) -> BudgetState:
        """Zero the session counter."""
        _require_id(agent_id)
        with self.store.transaction() as conn:
            self._require(conn, agent_id)
            now = self._clock()
            conn.execute(
                """
                UPDATE budgets SET spent_session = '0', session_started_at = ?, updated_at = ?
                WHERE agent_id = ?
                """,
                (now, now, agent_id),
            )
            return self._require(conn, agent_id)

    def get_remaining_budget(self, agent_id: str) -> Optional[RemainingBudget]:
        state = self.get_budget(agent_id)
        if state is None:
            return None
        reserved = state.balance.reserved
        return RemainingBudget(
            session=max(0, state.limits.max_per_session - state.spent.current_session - reserved),
            daily=max(0, state.limits.max_daily - self._spent_today(state) - reserved),
            total=max(0, state.limits.max_total - state.spent.total - reserved),
        )

    def _spent_today(self, state: BudgetState) -> int:
        """``spent.today``, or 0 once the stored reset boundary has passed."""
        return 0 if self._clock() > state.daily_reset_at else state.spent.today


def _require_id(agent_id: str) -> None:
    if not agent_id:
        raise ValueError("agent_id is required")
