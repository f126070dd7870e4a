"""
Purser CLI: budgets, payments and paid workflows for AI agents.

Commands:
    purser budget      Initialize and inspect agent budgets
    purser payments    List payments and reconcile stale ones
    purser tools       Manage the tool registry
    purser workflow    Inspect workflows and analytics
    purser pay         Pay for one call to an x402 endpoint
    purser audit       View audit trail

All amounts are integer base units (1 USDC = 1000000).
"""

from __future__ import annotations

import json
import sys
import time
from typing import Optional

import click
from click.core import ParameterSource

from .audit import AuditTrail, EventType
from .budget import BudgetLedger, BudgetLimits
from .config import PurserConfig
from .errors import PurserError
from .gateway import DryRunExecutor, PaymentGateway
from .money import format_amount
from .payment import PaymentTracker
from .reconcile import Reconciler
from .registry import Tool, ToolPricing, ToolRegistry
from .storage import Store
from .workflow import WorkflowEngine


def _config() -> PurserConfig:
    try:
        return PurserConfig.from_env()
    except ValueError as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)


def _store(config: PurserConfig) -> Store:
    return Store(config.db_path)


def _audit(config: PurserConfig) -> AuditTrail:
    return AuditTrail(config.audit_path, config.audit_key_path)


def _ledger(config: PurserConfig) -> BudgetLedger:
    return BudgetLedger(_store(config))


def _fmt_time(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Purser: budget-enforced micropayments for AI agents."""
    pass


# ── Budget ────────────────────────────────────────────────────────

@main.group("budget")
def budget_group():
    """Agent budgets and limits."""


@budget_group.command("init")
@click.argument("agent_id")
@click.option("--wallet", "wallet_address", required=True, help="Agent wallet address")
@click.option("--available", type=int, default=0, help="Starting balance (base units)")
@click.option("--max-per-tx", type=int, default=None, help="Per-transaction limit (base units)")
@click.option("--max-per-session", type=int, default=None, help="Session limit (base units)")
@click.option("--max-daily", type=int, default=None, help="Daily limit (base units)")
@click.option("--max-total", type=int, default=None, help="Lifetime limit (base units)")
def budget_init(
    agent_id: str,
    wallet_address: str,
    available: int,
    max_per_tx: Optional[int],
    max_per_session: Optional[int],
    max_daily: Optional[int],
    max_total: Optional[int],
):
    """Create an agent budget (no-op if it already exists)."""
    config = _config()
    defaults = config.default_limits
    try:
        limits = BudgetLimits(
            max_per_transaction=max_per_tx if max_per_tx is not None else defaults.max_per_transaction,
            max_per_session=max_per_session if max_per_session is not None else defaults.max_per_session,
            max_daily=max_daily if max_daily is not None else defaults.max_daily,
            max_total=max_total if max_total is not None else defaults.max_total,
        )
        ledger = _ledger(config)
        existed = ledger.get_budget(agent_id) is not None
        state = ledger.initialize_budget(agent_id, wallet_address, limits, available)
    except (PurserError, ValueError, TypeError) as e:
        click.echo(f"❌ Failed to initialize budget: {e}", err=True)
        sys.exit(1)

    if existed:
        click.echo(f"ℹ️  Budget already exists for {agent_id}; left unchanged")
    else:
        _audit(config).log(
            EventType.BUDGET_INITIALIZED,
            agent_id=agent_id,
            amount=state.balance.available,
            details=state.limits.to_dict(),
        )
        click.echo(f"✅ Budget initialized for {agent_id}")
    _echo_budget(ledger, agent_id)


def _echo_budget(ledger: BudgetLedger, agent_id: str) -> None:
    state = ledger.get_budget(agent_id)
    remaining = ledger.get_remaining_budget(agent_id)
    limits = state.limits
    click.echo(f"📊 Budget for {agent_id}")
    click.echo(f"   Wallet:     {state.wallet_address}")
    click.echo(f"   Available:  {format_amount(state.balance.available)}")
    click.echo(f"   Reserved:   {format_amount(state.balance.reserved)}")
    click.echo(f"   Per tx:     {format_amount(limits.max_per_transaction)}")
    click.echo(
        f"   Session:    {format_amount(state.spent.current_session)} of "
        f"{format_amount(limits.max_per_session)} (remaining {format_amount(remaining.session)})"
    )
    click.echo(
        f"   Daily:      {format_amount(limits.max_daily - remaining.daily)} of "
        f"{format_amount(limits.max_daily)} (resets {_fmt_time(state.daily_reset_at)})"
    )
    click.echo(
        f"   Total:      {format_amount(state.spent.total)} of {format_amount(limits.max_total)}"
    )


@budget_group.command("show")
@click.argument("agent_id")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def budget_show(agent_id: str, as_json: bool):
    """Show an agent's limits, spend and balance."""
    ledger = _ledger(_config())
    state = ledger.get_budget(agent_id)
    if state is None:
        click.echo(f"❌ Budget not initialized for {agent_id}", err=True)
        sys.exit(1)
    if as_json:
        click.echo(json.dumps(state.to_dict(), indent=2))
        return
    _echo_budget(ledger, agent_id)


@budget_group.command("set-limits")
@click.argument("agent_id")
@click.option("--max-per-tx", type=int, default=None)
@click.option("--max-per-session", type=int, default=None)
@click.option("--max-daily", type=int, default=None)
@click.option("--max-total", type=int, default=None)
def budget_set_limits(
    agent_id: str,
    max_per_tx: Optional[int],
    max_per_session: Optional[int],
    max_daily: Optional[int],
    max_total: Optional[int],
):
    """Change any subset of an agent's limits."""
    config = _config()
    ledger = _ledger(config)
    try:
        state = ledger.update_limits(
            agent_id,
            max_per_transaction=max_per_tx,
            max_per_session=max_per_session,
            max_daily=max_daily,
            max_total=max_total,
        )
    except (PurserError, ValueError) as e:
        click.echo(f"❌ Failed to update limits: {e}", err=True)
        sys.exit(1)
    _audit(config).log(EventType.LIMITS_UPDATED, agent_id=agent_id, details=state.limits.to_dict())
    click.echo(f"✅ Limits updated for {agent_id}")
    _echo_budget(ledger, agent_id)


@budget_group.command("set-balance")
@click.argument("agent_id")
@click.argument("available", type=int)
def budget_set_balance(agent_id: str, available: int):
    """Overwrite the available balance (e.g. after a wallet check)."""
    ledger = _ledger(_config())
    try:
        state = ledger.update_balance(agent_id, available)
    except (PurserError, ValueError) as e:
        click.echo(f"❌ Failed to update balance: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Available balance for {agent_id}: {format_amount(state.balance.available)}")


@budget_group.command("new-session")
@click.argument("agent_id")
def budget_new_session(agent_id: str):
    """Reset the agent's session spend counter."""
    config = _config()
    ledger = _ledger(config)
    try:
        ledger.start_new_session(agent_id)
    except PurserError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    _audit(config).log(EventType.SESSION_STARTED, agent_id=agent_id)
    click.echo(f"✅ New session started for {agent_id}")


# ── Payments ──────────────────────────────────────────────────────

@main.group("payments")
def payments_group():
    """Payment records."""


def _echo_payment(payment) -> None:
    status = {"completed": "✅", "failed": "❌", "pending": "⏳", "refunded": "↩️ "}[payment.status.value]
    tx = f" tx={payment.tx_hash}" if payment.tx_hash else ""
    error = f" ({payment.error})" if payment.error else ""
    click.echo(
        f"  {_fmt_time(payment.initiated_at)} {status} {payment.payment_id[:8]} "
        f"{format_amount(payment.amount, payment.currency)} → {payment.tool_endpoint}{tx}{error}"
    )


@payments_group.command("list")
@click.argument("agent_id")
@click.option("--session", "session_id", default=None, help="Only this session")
@click.option("--limit", type=int, default=20, help="Number of payments")
def payments_list(agent_id: str, session_id: Optional[str], limit: int):
    """List recent payments."""
    tracker = PaymentTracker(_store(_config()))
    if session_id:
        payments = tracker.get_session_payments(agent_id, session_id)[:limit]
    else:
        payments = tracker.get_recent_payments(agent_id, limit)
    if not payments:
        click.echo("No payments found.")
        return
    for payment in payments:
        _echo_payment(payment)


@payments_group.command("failed")
@click.argument("agent_id")
def payments_failed(agent_id: str):
    """List failed payments still eligible for retry."""
    payments = PaymentTracker(_store(_config())).get_failed_payments(agent_id)
    if not payments:
        click.echo("No retryable failed payments.")
        return
    for payment in payments:
        _echo_payment(payment)


@payments_group.command("reconcile")
@click.option("--agent", "agent_id", default=None, help="Only this agent")
@click.option("--older-than", type=float, default=None, help="Pending age in seconds")
def payments_reconcile(agent_id: Optional[str], older_than: Optional[float]):
    """Void payments stuck in pending and release their reservations."""
    config = _config()
    store = _store(config)
    ledger = BudgetLedger(store)
    reconciler = Reconciler(
        ledger,
        PaymentTracker(store),
        audit=_audit(config),
        pending_timeout=older_than if older_than is not None else config.pending_timeout,
    )
    report = reconciler.sweep(agent_id)
    click.echo(
        f"🔁 Reconciled {report.total} payments: {len(report.settled)} settled, "
        f"{len(report.voided)} voided, {len(report.left_pending)} left pending"
    )
    if agent_id and ledger.get_budget(agent_id) is not None:
        check = reconciler.check_reservations(agent_id)
        mark = "✅" if check.consistent else "❌"
        click.echo(
            f"   {mark} Reserved {format_amount(check.reserved)} vs pending "
            f"{format_amount(check.pending_total)}"
        )
        if not check.consistent:
            sys.exit(1)


# ── Tools ─────────────────────────────────────────────────────────

@main.group("tools")
def tools_group():
    """Tool registry."""


@tools_group.command("list")
@click.option("--category", default=None)
@click.option("--tag", "tags", multiple=True)
@click.option("--search", "text", default=None, help="Match name or description")
@click.option("--by-reliability", is_flag=True, help="Rank used tools by success rate")
def tools_list(category: Optional[str], tags: tuple[str, ...], text: Optional[str], by_reliability: bool):
    """List active tools."""
    registry = ToolRegistry(_store(_config()))
    if by_reliability:
        tools = registry.get_tools_by_reliability()
    else:
        tools = registry.search_tools(category=category, tags=list(tags), text=text)
    if not tools:
        click.echo("No tools found.")
        return
    for tool in tools:
        stats = tool.stats
        click.echo(
            f"  {tool.tool_id:<20} {format_amount(tool.pricing.amount, tool.pricing.currency):>16} "
            f"{tool.endpoint}  calls={stats.total_calls} success={stats.success_rate:.0%}"
        )


@tools_group.command("register")
@click.argument("tool_id")
@click.option("--name", required=True)
@click.option("--endpoint", required=True, help="Paid endpoint URL")
@click.option("--price", type=int, required=True, help="Price per call (base units)")
@click.option("--pay-to", default="", help="Payee address")
@click.option("--network", default=None, help="Payment network (CAIP-2)")
@click.option("--category", default=None)
@click.option("--tag", "tags", multiple=True)
@click.option("--description", default="")
def tools_register(
    tool_id: str,
    name: str,
    endpoint: str,
    price: int,
    pay_to: str,
    network: Optional[str],
    category: Optional[str],
    tags: tuple[str, ...],
    description: str,
):
    """Register or update a tool."""
    config = _config()
    try:
        tool = ToolRegistry(_store(config)).register_tool(
            Tool(
                tool_id=tool_id,
                name=name,
                endpoint=endpoint,
                description=description,
                category=category,
                tags=list(tags),
                pricing=ToolPricing(amount=price, network=network or config.network, pay_to=pay_to),
            )
        )
    except (PurserError, ValueError) as e:
        click.echo(f"❌ Failed to register tool: {e}", err=True)
        sys.exit(1)
    click.echo(f"✅ Tool registered: {tool.tool_id} ({format_amount(tool.pricing.amount)} per call)")


# ── Workflows ─────────────────────────────────────────────────────

@main.group("workflow")
def workflow_group():
    """Workflows."""


@workflow_group.command("list")
@click.argument("agent_id")
@click.option("--limit", type=int, default=20)
def workflow_list(agent_id: str, limit: int):
    """List an agent's recent workflows."""
    workflows = WorkflowEngine(_store(_config())).get_agent_workflows(agent_id, limit)
    if not workflows:
        click.echo("No workflows found.")
        return
    for wf in workflows:
        click.echo(
            f"  {_fmt_time(wf.created_at)} {wf.workflow_id[:8]} {wf.status.value:<10} "
            f"{wf.current_step_index}/{len(wf.planned_steps)} steps "
            f"{format_amount(wf.actual_total_cost)}  {wf.original_intent}"
        )


@workflow_group.command("show")
@click.argument("workflow_id")
def workflow_show(workflow_id: str):
    """Show a workflow with its step log."""
    workflow = WorkflowEngine(_store(_config())).get_workflow(workflow_id)
    if workflow is None:
        click.echo(f"❌ Workflow not found: {workflow_id}", err=True)
        sys.exit(1)
    click.echo(json.dumps(workflow.to_dict(), indent=2, default=str))


@workflow_group.command("analytics")
@click.argument("agent_id")
def workflow_analytics(agent_id: str):
    """Workflow totals for an agent."""
    stats = WorkflowEngine(_store(_config())).get_workflow_analytics(agent_id)
    click.echo(f"📈 Workflows for {agent_id}")
    click.echo(f"   Total:        {stats.total_workflows}")
    click.echo(f"   Completed:    {stats.completed}")
    click.echo(f"   Failed:       {stats.failed}")
    click.echo(f"   Total spent:  {format_amount(stats.total_spent)}")
    click.echo(f"   Average cost: {format_amount(stats.average_cost)}")


# ── Pay ───────────────────────────────────────────────────────────

@main.command()
@click.argument("agent_id")
@click.argument("url")
@click.option("--session", "session_id", default="cli", help="Session label for the payment")
@click.option("--method", default="GET", help="HTTP method")
@click.option("--cost", type=int, default=None, help="Override price (base units)")
@click.option("--data", default=None, help="JSON request body")
@click.option("--private-key", envvar="PURSER_PRIVATE_KEY", default=None,
              help="Payer private key (hex); prompted if omitted")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --private-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--dry-run", is_flag=True, help="Simulate the payment without network I/O")
def pay(
    agent_id: str,
    url: str,
    session_id: str,
    method: str,
    cost: Optional[int],
    data: Optional[str],
    private_key: Optional[str],
    unsafe_allow_key_arg: bool,
    dry_run: bool,
):
    """Pay for one call to URL within the agent's budget."""
    config = _config()

    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("private_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --private-key from argv. Use the prompt or PURSER_PRIVATE_KEY, or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    request_kwargs = {}
    if data is not None:
        try:
            request_kwargs["json"] = json.loads(data)
        except ValueError as e:
            click.echo(f"❌ --data is not valid JSON: {e}", err=True)
            sys.exit(1)

    if dry_run:
        click.echo("🔍 DRY RUN: no actual payment will be made")
        executor = DryRunExecutor()
    else:
        from .x402_client import Network, X402Config, X402PaymentClient

        key = private_key or click.prompt("Private key", hide_input=True)
        try:
            executor = X402PaymentClient.from_private_key(
                _resolve_private_key(key),
                X402Config(network=Network(config.network), timeout_seconds=config.payment_timeout),
            )
        except ValueError as e:
            click.echo(f"❌ Invalid payer configuration: {e}", err=True)
            sys.exit(1)

    store = _store(config)
    ledger = BudgetLedger(store)
    gateway = PaymentGateway(
        ledger,
        PaymentTracker(store),
        ToolRegistry(store),
        executor,
        audit=_audit(config),
        default_cost=config.default_cost,
        payment_timeout=config.payment_timeout,
        network=config.network,
    )
    with gateway:
        try:
            result = gateway.call(agent_id, session_id, url, method=method.upper(), cost=cost, **request_kwargs)
        except (PurserError, ValueError) as e:
            click.echo(f"❌ Payment failed: {e}", err=True)
            sys.exit(1)

    if not result.success:
        click.echo(f"❌ Payment failed: {result.error}")
        sys.exit(1)

    click.echo(f"✅ Payment {'simulated' if dry_run else 'completed'}!")
    click.echo(f"   Amount:    {format_amount(result.amount)}")
    click.echo(f"   Payment:   {result.payment_id}")
    click.echo(f"   Tx hash:   {result.tx_hash or '-'}")
    remaining = ledger.get_remaining_budget(agent_id)
    if remaining is not None:
        click.echo(f"   Remaining: {format_amount(remaining.session)} this session")
    if result.data is not None:
        body = result.data if isinstance(result.data, str) else json.dumps(result.data, indent=2)
        click.echo(body)


# ── Audit ─────────────────────────────────────────────────────────

@main.command()
@click.option("--agent", "agent_id", default=None, help="Filter by agent ID")
@click.option("--workflow", "workflow_id", default=None, help="Filter by workflow ID")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--summary", "show_summary", is_flag=True, help="Show counts by event type")
def audit(agent_id: Optional[str], workflow_id: Optional[str], limit: int, show_summary: bool):
    """View the audit trail."""
    trail = _audit(_config())
    try:
        if show_summary:
            summary = trail.summary(agent_id)
            click.echo(f"📜 {summary['total_events']} events, {summary['failures']} failures")
            click.echo(f"   Settled spend: {format_amount(int(summary['spent']))}")
            for event_type, count in sorted(summary["by_type"].items()):
                click.echo(f"   {event_type:<20} {count}")
            return
        events = trail.read_events(agent_id=agent_id, workflow_id=workflow_id, limit=limit)
    except RuntimeError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_amount(int(event.amount))}" if event.amount else ""
        endpoint = f" → {event.endpoint}" if event.endpoint else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{endpoint}{reason}")


if __name__ == "__main__":
    main()
