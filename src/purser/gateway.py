"""
Paid endpoint calls.

Flow:
1. Resolve price from the tool registry (fallback: configured default)
2. Check every budget tier
3. Atomically reserve funds and create the pending payment record
4. Run the payment executor with a bounded wait
5. Settle (record spend) or void (release) the reservation
6. Update tool usage stats (best effort)
"""

from __future__ import annotations

import hashlib
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from .audit import AuditTrail, EventType
from .budget import BudgetLedger, LimitTier, SpendDecision
from .errors import PaymentTimeoutError
from .money import parse_amount
from .payment import PaymentRecord, PaymentTracker
from .registry import Tool, ToolRegistry
from .settlement import settle_payment, void_payment

logger = logging.getLogger(__name__)


DEFAULT_COST = 10_000  # 0.01 USDC


@dataclass
class ExecutorResponse:
    """What the payment executor reports back about one paid request."""

    ok: bool
    status: int
    body: Any = None
    tx_hash: Optional[str] = None
    evidence: dict[str, Any] = field(default_factory=dict)


class PaymentExecutor(Protocol):
    """Performs the HTTP call and any payment it requires."""

    def __call__(self, url: str, options: dict[str, Any]) -> ExecutorResponse:
        ...


class DryRunExecutor:
    """Executor that simulates a settled payment without network I/O."""

    def __call__(self, url: str, options: dict[str, Any]) -> ExecutorResponse:
        seed = f"{url}:{options.get('idempotency_key')}:{time.time()}"
        tx_hash = f"dry-run-{hashlib.sha256(seed.encode()).hexdigest()[:16]}"
        return ExecutorResponse(
            ok=True,
            status=200,
            body={"dry_run": True, "url": url},
            tx_hash=tx_hash,
            evidence={"dry_run": True},
        )


@dataclass
class CallResult:
    """Result of a paid call."""

    success: bool
    status: int
    data: Any = None
    amount: int = 0
    payment_id: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    denied_tier: Optional[LimitTier] = None
    latency_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "data": self.data,
            "amount": str(self.amount),
            "payment_id": self.payment_id,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "denied_tier": self.denied_tier.value if self.denied_tier else None,
            "latency_ms": self.latency_ms,
        }


class PaymentGateway:
    """Drives one paid call through ledger, payment records and executor."""

    def __init__(
        self,
        ledger: BudgetLedger,
        payments: PaymentTracker,
        registry: ToolRegistry,
        executor: PaymentExecutor,
        audit: Optional[AuditTrail] = None,
        default_cost: int = DEFAULT_COST,
        payment_timeout: float = 30.0,
        currency: str = "USDC",
        network: str = "eip155:84532",
        reservation_attempts: int = 3,
    ):
        self.ledger = ledger
        self.payments = payments
        self.registry = registry
        self.executor = executor
        self.audit = audit
        self.default_cost = parse_amount(default_cost, "default_cost")
        self.payment_timeout = payment_timeout
        self.currency = currency
        self.network = network
        self.reservation_attempts = reservation_attempts
        self._pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="purser-pay")

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def call(
        self,
        agent_id: str,
        session_id: str,
        url: str,
        method: str = "GET",
        cost: Optional[int | str] = None,
        workflow_id: Optional[str] = None,
        from_address: Optional[str] = None,
        **request_kwargs: Any,
    ) -> CallResult:
        """Pay for and perform one request; never leaves a reservation dangling."""
        if not agent_id or not session_id or not url:
            raise ValueError("agent_id, session_id and url are required")

        tool = self._lookup_tool(url)
        tool_id = tool.tool_id if tool else url
        if cost is not None:
            amount = parse_amount(cost, "cost")
        elif tool is not None:
            amount = tool.pricing.amount
        else:
            amount = self.default_cost

        payment, decision = self._reserve(
            agent_id=agent_id,
            session_id=session_id,
            workflow_id=workflow_id,
            tool=tool,
            tool_id=tool_id,
            url=url,
            amount=amount,
            from_address=from_address,
        )
        if payment is None:
            logger.info("Budget denied %s for agent %s: %s", url, agent_id, decision.reason)
            self._audit(
                EventType.SPENDING_DENIED,
                agent_id=agent_id,
                session_id=session_id,
                workflow_id=workflow_id,
                amount=amount,
                endpoint=url,
                success=False,
                reason=decision.reason,
                details={"tier": decision.tier.value if decision.tier else None},
            )
            return CallResult(
                success=False,
                status=0,
                amount=amount,
                error=f"Budget exceeded: {decision.reason}",
                denied_tier=decision.tier,
            )

        self._audit(
            EventType.FUNDS_RESERVED,
            agent_id=agent_id,
            session_id=session_id,
            payment_id=payment.payment_id,
            workflow_id=workflow_id,
            amount=amount,
            endpoint=url,
        )
        return self._execute_reserved(payment, tool_id, method, request_kwargs)

    def _execute_reserved(
        self,
        payment: PaymentRecord,
        tool_id: str,
        method: str,
        request_kwargs: dict[str, Any],
    ) -> CallResult:
        options = {
            "method": method,
            "max_amount": payment.amount,
            "pay_to": payment.to_address,
            "network": payment.network,
            "idempotency_key": payment.payment_id,
            **request_kwargs,
        }
        started = time.monotonic()
        resolved = False
        try:
            response: Optional[ExecutorResponse] = None
            error: Optional[str] = None
            try:
                response = self._run_executor(payment.tool_endpoint, options)
            except Exception as e:
                error = f"Payment execution error: {type(e).__name__}: {e}"
            latency_ms = int((time.monotonic() - started) * 1000)

            if response is not None and response.ok:
                resolved = True
                settle_payment(
                    self.ledger,
                    self.payments,
                    payment.payment_id,
                    tx_hash=response.tx_hash,
                    evidence={"status": response.status, **response.evidence},
                )
                self._record_stats(tool_id, True, latency_ms, payment.amount)
                self._audit(
                    EventType.PAYMENT_COMPLETED,
                    agent_id=payment.agent_id,
                    session_id=payment.session_id,
                    payment_id=payment.payment_id,
                    workflow_id=payment.workflow_id,
                    amount=payment.amount,
                    endpoint=payment.tool_endpoint,
                    details={"tx_hash": response.tx_hash, "latency_ms": latency_ms},
                )
                return CallResult(
                    success=True,
                    status=response.status,
                    data=response.body,
                    amount=payment.amount,
                    payment_id=payment.payment_id,
                    tx_hash=response.tx_hash,
                    latency_ms=latency_ms,
                )

            if response is not None:
                error = f"HTTP {response.status}"
            resolved = True
            void_payment(self.ledger, self.payments, payment.payment_id, error or "Payment failed")
            self._record_stats(tool_id, False, latency_ms, 0)
            self._audit(
                EventType.PAYMENT_FAILED,
                agent_id=payment.agent_id,
                session_id=payment.session_id,
                payment_id=payment.payment_id,
                workflow_id=payment.workflow_id,
                amount=payment.amount,
                endpoint=payment.tool_endpoint,
                success=False,
                reason=error,
            )
            return CallResult(
                success=False,
                status=response.status if response is not None else 0,
                data=response.body if response is not None else None,
                amount=payment.amount,
                payment_id=payment.payment_id,
                error=error,
                latency_ms=latency_ms,
            )
        finally:
            if not resolved:
                void_payment(
                    self.ledger, self.payments, payment.payment_id, "Payment attempt interrupted"
                )

    def _reserve(
        self,
        agent_id: str,
        session_id: str,
        workflow_id: Optional[str],
        tool: Optional[Tool],
        tool_id: str,
        url: str,
        amount: int,
        from_address: Optional[str],
    ) -> tuple[Optional[PaymentRecord], SpendDecision]:
        decision = SpendDecision(False, "Reservation not attempted")
        for attempt in range(1, self.reservation_attempts + 1):
            decision = self.ledger.can_spend(agent_id, amount)
            if not decision.allowed:
                return None, decision

            with self.ledger.store.transaction():
                if self.ledger.reserve_funds(agent_id, amount):
                    budget = self.ledger.get_budget(agent_id)
                    payment = self.payments.create_payment(
                        agent_id=agent_id,
                        session_id=session_id,
                        workflow_id=workflow_id,
                        tool_id=tool_id,
                        tool_endpoint=url,
                        amount=amount,
                        currency=tool.pricing.currency if tool else self.currency,
                        network=tool.pricing.network if tool else self.network,
                        from_address=from_address or (budget.wallet_address if budget else ""),
                        to_address=(tool.pricing.pay_to if tool and tool.pricing.pay_to else "unknown"),
                    )
                    return payment, decision

            logger.info(
                "Reservation for agent %s lost a race (attempt %d/%d)",
                agent_id, attempt, self.reservation_attempts,
            )
        return None, SpendDecision(
            False,
            f"Funds changed during reservation ({decision.reason or 'contention'})",
            decision.tier,
        )

    def _run_executor(self, url: str, options: dict[str, Any]) -> ExecutorResponse:
        future = self._pool.submit(self.executor, url, options)
        try:
            return future.result(timeout=self.payment_timeout)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning("Payment executor timed out after %.1fs for %s", self.payment_timeout, url)
            raise PaymentTimeoutError(
                f"No answer from payment executor within {self.payment_timeout:g}s"
            )

    def _lookup_tool(self, url: str) -> Optional[Tool]:
        try:
            return self.registry.get_tool_by_endpoint(url)
        except Exception:
            logger.exception("Registry lookup failed for %s; using default cost", url)
            return None

    def _record_stats(self, tool_id: str, success: bool, latency_ms: int, amount: int) -> None:
        try:
            self.registry.update_tool_stats(tool_id, success, latency_ms, amount)
        except Exception:
            logger.exception("Tool stats update failed for %s", tool_id)

    def _audit(self, event_type: EventType, **fields: Any) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **fields)
