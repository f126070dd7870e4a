"""
Reconciliation of payments stuck in ``pending``.

A pending payment older than the settlement window is a reconciliation
gap: the reservation is still held but nobody is going to settle it. The
reconciler asks an optional evidence lookup (e.g. a chain indexer or the
facilitator) what happened and settles or voids accordingly. Without
evidence the payment is voided and its reservation released.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .audit import AuditTrail, EventType
from .budget import BudgetLedger
from .errors import InvalidTransitionError
from .payment import PaymentRecord, PaymentTracker
from .settlement import settle_payment, void_payment

logger = logging.getLogger(__name__)


# Returns None when nothing is known, otherwise
# {"settled": bool, "tx_hash": str | None, "error": str | None, ...}
EvidenceLookup = Callable[[PaymentRecord], Optional[dict[str, Any]]]


@dataclass
class ReconcileReport:
    settled: list[str] = field(default_factory=list)
    voided: list[str] = field(default_factory=list)
    left_pending: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.settled) + len(self.voided) + len(self.left_pending)

    def to_dict(self) -> dict:
        return {
            "settled": self.settled,
            "voided": self.voided,
            "left_pending": self.left_pending,
        }


@dataclass
class ReservationCheck:
    agent_id: str
    reserved: int
    pending_total: int

    @property
    def consistent(self) -> bool:
        return self.reserved == self.pending_total


class Reconciler:
    def __init__(
        self,
        ledger: BudgetLedger,
        payments: PaymentTracker,
        audit: Optional[AuditTrail] = None,
        pending_timeout: float = 300.0,
        evidence_lookup: Optional[EvidenceLookup] = None,
    ):
        self.ledger = ledger
        self.payments = payments
        self.audit = audit
        self.pending_timeout = pending_timeout
        self.evidence_lookup = evidence_lookup

    def sweep(self, agent_id: Optional[str] = None) -> ReconcileReport:
        """Force every stale pending payment to a terminal status."""
        report = ReconcileReport()
        for payment in self.payments.get_stale_pending_payments(self.pending_timeout, agent_id):
            try:
                evidence = self.evidence_lookup(payment) if self.evidence_lookup else None
            except Exception:
                logger.warning(
                    "Evidence lookup failed for payment %s; leaving it pending",
                    payment.payment_id, exc_info=True,
                )
                report.left_pending.append(payment.payment_id)
                continue

            try:
                if evidence and evidence.get("settled"):
                    settle_payment(
                        self.ledger,
                        self.payments,
                        payment.payment_id,
                        tx_hash=evidence.get("tx_hash"),
                        evidence={"reconciled": True, **evidence},
                    )
                    report.settled.append(payment.payment_id)
                    outcome = "settled"
                else:
                    reason = (evidence or {}).get("error") or (
                        f"Reconciliation timeout: no settlement evidence after "
                        f"{self.pending_timeout:g}s"
                    )
                    void_payment(self.ledger, self.payments, payment.payment_id, reason)
                    report.voided.append(payment.payment_id)
                    outcome = "voided"
            except InvalidTransitionError:
                # Resolved concurrently by the gateway between query and update.
                logger.info("Payment %s resolved before reconciliation", payment.payment_id)
                continue

            if self.audit is not None:
                self.audit.log(
                    EventType.PAYMENT_RECONCILED,
                    agent_id=payment.agent_id,
                    session_id=payment.session_id,
                    payment_id=payment.payment_id,
                    workflow_id=payment.workflow_id,
                    amount=payment.amount,
                    endpoint=payment.tool_endpoint,
                    success=outcome == "settled",
                    details={"outcome": outcome},
                )

        if report.total:
            logger.info(
                "Reconciled %d stale payments: %d settled, %d voided, %d left pending",
                report.total, len(report.settled), len(report.voided), len(report.left_pending),
            )
        return report

    def check_reservations(self, agent_id: str) -> ReservationCheck:
        """Compare the ledger's reserved balance with the agent's pending payments."""
        with self.ledger.store.transaction():
            budget = self.ledger.get_budget(agent_id)
            pending_total = self.payments.get_pending_total(agent_id)
        check = ReservationCheck(
            agent_id=agent_id,
            reserved=budget.balance.reserved if budget else 0,
            pending_total=pending_total,
        )
        if not check.consistent:
            logger.error(
                "Reservation mismatch for agent %s: reserved %d, pending %d",
                agent_id, check.reserved, check.pending_total,
            )
        return check
