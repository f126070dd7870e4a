"""
Purser: budget-enforced micropayments for AI agents.

Every paid call is checked against hard spending limits, reserved before
any money moves, and settled or released exactly once:
Ledger reserves → Executor pays → Payment settles → Workflow advances.
"""

__version__ = "0.1.0"

from .storage import Store
from .budget import BudgetLedger, BudgetLimits, BudgetState, LimitTier, SpendDecision
from .payment import PaymentRecord, PaymentStatus, PaymentTracker
from .settlement import settle_payment, void_payment
from .registry import Tool, ToolPricing, ToolRegistry
from .gateway import CallResult, DryRunExecutor, ExecutorResponse, PaymentGateway
from .workflow import StepStatus, Workflow, WorkflowEngine, WorkflowStatus, WorkflowStep
from .runner import WorkflowRunner
from .sessions import AgentSession, SessionRegistry
from .reconcile import Reconciler
from .audit import AuditTrail, EventType
from .config import PurserConfig

__all__ = [
    "Store",
    "BudgetLedger", "BudgetLimits", "BudgetState", "LimitTier", "SpendDecision",
    "PaymentRecord", "PaymentStatus", "PaymentTracker", "settle_payment", "void_payment",
    "Tool", "ToolPricing", "ToolRegistry",
    "CallResult", "DryRunExecutor", "ExecutorResponse", "PaymentGateway",
    "StepStatus", "Workflow", "WorkflowEngine", "WorkflowStatus", "WorkflowStep",
    "WorkflowRunner", "AgentSession", "SessionRegistry", "Reconciler",
    "AuditTrail", "EventType", "PurserConfig",
]
