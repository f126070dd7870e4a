"""
Pairing of payment status changes with ledger updates.

A completed payment must be recorded as spent and a failed payment must
release its reservation. Each pair commits in one storage transaction so
``reserved`` always equals the sum of the agent's pending payments, and
both helpers are idempotent so a reservation is consumed exactly once even
when the gateway and the reconciler race on the same payment.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .budget import BudgetLedger
from .errors import InvalidTransitionError
from .payment import PaymentRecord, PaymentStatus, PaymentTracker

logger = logging.getLogger(__name__)


def settle_payment(
    ledger: BudgetLedger,
    payments: PaymentTracker,
    payment_id: str,
    tx_hash: Optional[str] = None,
    evidence: Optional[dict[str, Any]] = None,
) -> PaymentRecord:
    """Complete a pending payment and move its reservation into spent."""
    with ledger.store.transaction() as conn:
        payment = payments._load(conn, payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            return payment
        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransitionError("payment", payment.status.value, PaymentStatus.COMPLETED.value)
        payment = payments.complete_payment(payment_id, evidence=evidence, tx_hash=tx_hash)
        ledger.record_spend(payment.agent_id, payment.amount)
    logger.info(
        "Payment %s settled: %d %s (tx: %s)",
        payment_id, payment.amount, payment.currency, tx_hash or "n/a",
    )
    return payment


def void_payment(
    ledger: BudgetLedger,
    payments: PaymentTracker,
    payment_id: str,
    error: str,
) -> PaymentRecord:
    """Fail a pending payment and release its reservation."""
    with ledger.store.transaction() as conn:
        payment = payments._load(conn, payment_id)
        if payment.status == PaymentStatus.FAILED:
            return payment
        if payment.status != PaymentStatus.PENDING:
            raise InvalidTransitionError("payment", payment.status.value, PaymentStatus.FAILED.value)
        payment = payments.update_payment_status(payment_id, PaymentStatus.FAILED, error=error)
        ledger.release_funds(payment.agent_id, payment.amount)
    logger.warning("Payment %s failed, released %d: %s", payment_id, payment.amount, error)
    return payment
