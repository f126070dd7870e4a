"""
Payment lifecycle tracking.

Flow:
1. Ledger reserves funds
2. A pending payment record is created (before any network I/O)
3. The external payment executor runs
4. The record moves to completed (with settlement evidence) or failed
5. The ledger records the spend or releases the reservation

Steps 4 and 5 are paired in ``purser.settlement``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import InvalidTransitionError, PaymentNotFoundError
from .money import parse_amount
from .storage import Store

logger = logging.getLogger(__name__)


MAX_PAYMENT_RETRIES = 3


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


@dataclass
class PaymentRecord:
    """A single payment attempt."""

    payment_id: str
    agent_id: str
    session_id: str
    tool_id: str
    tool_endpoint: str
    amount: int
    currency: str
    network: str
    from_address: str
    to_address: str
    status: PaymentStatus
    initiated_at: float
    workflow_id: Optional[str] = None
    tx_hash: Optional[str] = None
    evidence: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    retry_count: int = 0
    completed_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "workflow_id": self.workflow_id,
            "tool_id": self.tool_id,
            "tool_endpoint": self.tool_endpoint,
            "amount": str(self.amount),
            "currency": self.currency,
            "network": self.network,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "evidence": self.evidence,
            "error": self.error,
            "retry_count": self.retry_count,
            "initiated_at": self.initiated_at,
            "completed_at": self.completed_at,
        }


@dataclass
class ToolPaymentStats:
    total_payments: int = 0
    total_spent: int = 0
    average_amount: int = 0


@dataclass
class _Query:
    where: list[str] = field(default_factory=list)
    params: list[Any] = field(default_factory=list)

    def add(self, clause: str, *params: Any) -> "_Query":
        self.where.append(clause)
        self.params.extend(params)
        return self

    def sql(self) -> str:
        return " AND ".join(self.where) if self.where else "1 = 1"


class PaymentTracker:
    """Persists payment attempts and enforces their status transitions."""

    def __init__(self, store: Store, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def _row_to_payment(self, row: sqlite3.Row) -> PaymentRecord:
        return PaymentRecord(
            payment_id=row["payment_id"],
            agent_id=row["agent_id"],
            session_id=row["session_id"],
            workflow_id=row["workflow_id"],
            tool_id=row["tool_id"],
            tool_endpoint=row["tool_endpoint"],
            amount=int(row["amount"]),
            currency=row["currency"],
            network=row["network"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            status=PaymentStatus(row["status"]),
            tx_hash=row["tx_hash"],
            evidence=json.loads(row["evidence"]) if row["evidence"] else None,
            error=row["error"],
            retry_count=row["retry_count"],
            initiated_at=row["initiated_at"],
            completed_at=row["completed_at"],
        )

    def _load(self, conn: sqlite3.Connection, payment_id: str) -> PaymentRecord:
        row = conn.execute(
            "SELECT * FROM payments WHERE payment_id = ?", (payment_id,)
        ).fetchone()
        if row is None:
            raise PaymentNotFoundError(f"Payment not found: {payment_id}")
        return self._row_to_payment(row)

    def _select(self, query: _Query, order: str, limit: Optional[int] = None) -> list[PaymentRecord]:
        sql = f"SELECT * FROM payments WHERE {query.sql()} ORDER BY {order}"
        params = list(query.params)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.store.read() as conn:
            return [self._row_to_payment(r) for r in conn.execute(sql, params).fetchall()]

    # ── Lifecycle ─────────────────────────────────────────────────

    def create_payment(
        self,
        agent_id: str,
        session_id: str,
        tool_id: str,
        tool_endpoint: str,
        amount: int | str,
        currency: str,
        network: str,
        from_address: str,
        to_address: str,
        workflow_id: Optional[str] = None,
    ) -> PaymentRecord:
        """Record a payment attempt in ``pending``. Call after reserving funds."""
        if not agent_id or not session_id:
            raise ValueError("agent_id and session_id are required")
        record = PaymentRecord(
            payment_id=str(uuid.uuid4()),
            agent_id=agent_id,
            session_id=session_id,
            workflow_id=workflow_id,
            tool_id=tool_id,
            tool_endpoint=tool_endpoint,
            amount=parse_amount(amount),
            currency=currency,
            network=network,
            from_address=from_address,
            to_address=to_address,
            status=PaymentStatus.PENDING,
            initiated_at=self._clock(),
        )
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO payments (
                    payment_id, agent_id, session_id, workflow_id, tool_id, tool_endpoint,
                    amount, currency, network, from_address, to_address,
                    status, retry_count, initiated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    record.payment_id,
                    record.agent_id,
                    record.session_id,
                    record.workflow_id,
                    record.tool_id,
                    record.tool_endpoint,
                    str(record.amount),
                    record.currency,
                    record.network,
                    record.from_address,
                    record.to_address,
                    record.status.value,
                    record.initiated_at,
                ),
            )
        return record

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        with self.store.read() as conn:
            try:
                return self._load(conn, payment_id)
            except PaymentNotFoundError:
                return None

    def update_payment_status(
        self,
        payment_id: str,
        status: PaymentStatus | str,
        tx_hash: Optional[str] = None,
        error: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
    ) -> PaymentRecord:
        """
        Move a payment to ``status``.

        Re-applying the current status returns the record unchanged; any
        transition outside pending -> completed|failed and
        completed -> refunded raises ``InvalidTransitionError``.
        """
        target = PaymentStatus(status)
        with self.store.transaction() as conn:
            current = self._load(conn, payment_id)
            if current.status == target:
                return current
            if target not in _TRANSITIONS[current.status]:
                raise InvalidTransitionError("payment", current.status.value, target.value)

            completed_at = self._clock() if target == PaymentStatus.COMPLETED else current.completed_at
            conn.execute(
                """
                UPDATE payments
                SET status = ?,
                    tx_hash = COALESCE(?, tx_hash),
                    error = COALESCE(?, error),
                    evidence = COALESCE(?, evidence),
                    completed_at = ?
                WHERE payment_id = ?
                """,
                (
                    target.value,
                    tx_hash,
                    error,
                    json.dumps(evidence, sort_keys=True) if evidence is not None else None,
                    completed_at,
                    payment_id,
                ),
            )
            logger.info("Payment %s: %s -> %s", payment_id, current.status.value, target.value)
            return self._load(conn, payment_id)

    def complete_payment(
        self,
        payment_id: str,
        evidence: Optional[dict[str, Any]] = None,
        tx_hash: Optional[str] = None,
    ) -> PaymentRecord:
        """Mark a payment completed with the executor's settlement evidence."""
        return self.update_payment_status(
            payment_id, PaymentStatus.COMPLETED, tx_hash=tx_hash, evidence=evidence or {}
        )

    def refund_payment(self, payment_id: str, reason: Optional[str] = None) -> PaymentRecord:
        return self.update_payment_status(payment_id, PaymentStatus.REFUNDED, error=reason)

    def increment_retry(self, payment_id: str) -> int:
        with self.store.transaction() as conn:
            self._load(conn, payment_id)
            conn.execute(
                "UPDATE payments SET retry_count = retry_count + 1 WHERE payment_id = ?",
                (payment_id,),
            )
            return self._load(conn, payment_id).retry_count

    # ── Queries ───────────────────────────────────────────────────

    def get_session_payments(self, agent_id: str, session_id: str) -> list[PaymentRecord]:
        query = _Query().add("agent_id = ?", agent_id).add("session_id = ?", session_id)
        return self._select(query, "initiated_at DESC")

    def get_workflow_payments(self, workflow_id: str) -> list[PaymentRecord]:
        return self._select(_Query().add("workflow_id = ?", workflow_id), "initiated_at ASC")

    def get_recent_payments(self, agent_id: str, limit: int = 20) -> list[PaymentRecord]:
        return self._select(_Query().add("agent_id = ?", agent_id), "initiated_at DESC", limit)

    def get_failed_payments(self, agent_id: str) -> list[PaymentRecord]:
        """Failed payments still under the retry ceiling."""
        query = (
            _Query()
            .add("agent_id = ?", agent_id)
            .add("status = ?", PaymentStatus.FAILED.value)
            .add("retry_count < ?", MAX_PAYMENT_RETRIES)
        )
        return self._select(query, "initiated_at ASC")

    def get_stale_pending_payments(
        self,
        older_than_seconds: float,
        agent_id: Optional[str] = None,
    ) -> list[PaymentRecord]:
        """Pending payments initiated more than ``older_than_seconds`` ago."""
        cutoff = self._clock() - older_than_seconds
        query = (
            _Query()
            .add("status = ?", PaymentStatus.PENDING.value)
            .add("initiated_at <= ?", cutoff)
        )
        if agent_id:
            query.add("agent_id = ?", agent_id)
        return self._select(query, "initiated_at ASC")

    def _sum_amounts(self, query: _Query) -> tuple[int, int]:
        # Amounts are decimal strings; summed in Python to keep arbitrary precision.
        with self.store.read() as conn:
            rows = conn.execute(
                f"SELECT amount FROM payments WHERE {query.sql()}", query.params
            ).fetchall()
        return len(rows), sum(int(r["amount"]) for r in rows)

    def get_pending_total(self, agent_id: str) -> int:
        query = _Query().add("agent_id = ?", agent_id).add("status = ?", PaymentStatus.PENDING.value)
        return self._sum_amounts(query)[1]

    def get_session_total_spent(self, agent_id: str, session_id: str) -> int:
        query = (
            _Query()
            .add("agent_id = ?", agent_id)
            .add("session_id = ?", session_id)
            .add("status = ?", PaymentStatus.COMPLETED.value)
        )
        return self._sum_amounts(query)[1]

    def get_tool_payment_stats(self, tool_id: str) -> ToolPaymentStats:
        query = _Query().add("tool_id = ?", tool_id).add("status = ?", PaymentStatus.COMPLETED.value)
        count, total = self._sum_amounts(query)
        return ToolPaymentStats(
            total_payments=count,
            total_spent=total,
            average_amount=total // count if count else 0,
        )
