"""
Purser error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, abort, alert, etc.).

Spending denials are not errors: the ledger and gateway return a
structured reason instead. Exceptions are reserved for contract
violations and missing records.
"""


class PurserError(Exception):
    """Base error for all Purser operations."""
    pass


# Budget errors
class BudgetError(PurserError):
    """Base error for budget ledger failures."""
    pass


class BudgetNotFoundError(BudgetError):
    """No budget has been initialized for the agent."""
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Budget not initialized for agent {agent_id}")


class ReservationError(BudgetError):
    """Spend or release amount does not match what is reserved."""
    def __init__(self, agent_id: str, amount: int, reserved: int):
        self.agent_id = agent_id
        self.amount = amount
        self.reserved = reserved
        super().__init__(
            f"Cannot settle {amount} for agent {agent_id}: only {reserved} reserved"
        )


# Payment errors
class PaymentError(PurserError):
    """Base error for payment lifecycle failures."""
    pass


class PaymentNotFoundError(PaymentError):
    """Payment ID not found."""
    pass


class InvalidTransitionError(PurserError):
    """Requested status change is not allowed from the current status."""
    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {kind} from {current} to {target}")


class PaymentTimeoutError(PaymentError):
    """Payment executor did not answer within the bounded wait."""
    pass


# Workflow errors
class WorkflowError(PurserError):
    """Base error for workflow engine failures."""
    pass


class WorkflowNotFoundError(WorkflowError):
    """Workflow ID not found."""
    pass


class WorkflowValidationError(WorkflowError):
    """Planned steps are malformed."""
    pass


class DependencyCycleError(WorkflowValidationError):
    """Planned steps depend on each other in a cycle."""
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


class StepError(WorkflowError):
    """Step cannot be started, completed or skipped in the current state."""
    pass


class StepDependencyError(StepError):
    """Step dependencies have not completed."""
    def __init__(self, step_id: str, missing: list[str]):
        self.step_id = step_id
        self.missing = missing
        super().__init__(
            f"Step {step_id} depends on steps that have not completed: {', '.join(missing)}"
        )


class UnresolvedReferenceError(WorkflowError):
    """A step output reference cannot be resolved."""
    def __init__(self, reference: str, reason: str):
        self.reference = reference
        super().__init__(f"Cannot resolve {reference}: {reason}")


# Session errors
class SessionError(PurserError):
    """Base error for agent session issues."""
    pass


class SessionExpiredError(SessionError):
    """Agent session has expired."""
    pass


class SessionNotFoundError(SessionError):
    """Agent session ID not found."""
    pass


# Registry errors
class ToolNotFoundError(PurserError):
    """Tool ID not found in the registry."""
    pass


# Audit errors
class AuditChainError(PurserError, RuntimeError):
    """Audit log entry does not chain to the one before it."""
    def __init__(self, position: int, reason: str):
        self.position = position
        super().__init__(f"Audit chain broken at entry {position}: {reason}")
