"""
Workflow runner: drives a workflow's steps through the payment gateway.

For the current step:
1. A dependency that has not completed -> skip
2. A condition that evaluates false -> skip
3. An input reference that cannot be resolved -> failed attempt
   (an attempt still marked executing from an earlier run is closed as
   failed before any of this)
4. Otherwise start the step, pay for the call, complete or fail it

A step that keeps failing is retried up to ``max_step_attempts`` times.
After that the workflow fails, or with ``continue_on_failure`` the step is
skipped and later steps that depend on it are skipped in turn.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .audit import AuditTrail, EventType
from .errors import UnresolvedReferenceError, WorkflowNotFoundError
from .gateway import CallResult, PaymentGateway
from .registry import ToolRegistry
from .workflow import (
    ExecutedStep,
    StepStatus,
    Workflow,
    WorkflowEngine,
    WorkflowStatus,
    WorkflowStep,
)

logger = logging.getLogger(__name__)


class WorkflowRunner:
    def __init__(
        self,
        engine: WorkflowEngine,
        gateway: PaymentGateway,
        registry: Optional[ToolRegistry] = None,
        max_step_attempts: int = 3,
        continue_on_failure: bool = False,
        audit: Optional[AuditTrail] = None,
    ):
        if max_step_attempts < 1:
            raise ValueError("max_step_attempts must be at least 1")
        self.engine = engine
        self.gateway = gateway
        self.registry = registry or gateway.registry
        self.max_step_attempts = max_step_attempts
        self.continue_on_failure = continue_on_failure
        self.audit = audit

    def _load(self, workflow_id: str) -> Workflow:
        workflow = self.engine.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    def run(self, workflow_id: str) -> Workflow:
        """Run steps until the workflow pauses or reaches a terminal status."""
        workflow = self._load(workflow_id)
        if workflow.status == WorkflowStatus.PLANNED:
            workflow = self._start(workflow)
        while workflow.status == WorkflowStatus.EXECUTING:
            self.run_next_step(workflow_id)
            workflow = self._load(workflow_id)
        return workflow

    def run_next_step(self, workflow_id: str) -> Optional[ExecutedStep]:
        """Advance the workflow by one step decision. Returns the attempt recorded."""
        workflow = self._load(workflow_id)
        if workflow.status == WorkflowStatus.PLANNED:
            workflow = self._start(workflow)
        if workflow.status != WorkflowStatus.EXECUTING:
            return None

        step = workflow.current_step
        if step is None:
            self._finish(workflow)
            return None

        # left EXECUTING by a process that stopped mid-call; any pending
        # payment is resolved by the reconciler
        leftover = workflow.latest_attempt(step.step_id)
        if leftover is not None and leftover.status == StepStatus.EXECUTING:
            return self._fail(workflow, step, "Step interrupted before completion", leftover.payment_id)

        missing = [d for d in step.depends_on if not workflow.is_step_completed(d)]
        if missing:
            return self._skip(workflow, step, f"Dependencies not completed: {', '.join(missing)}")
        if not self.engine.evaluate_condition(workflow, step.condition):
            return self._skip(workflow, step, f"Condition not met: {step.condition}")

        try:
            step_input = self.engine.resolve_input(workflow, step.input_template)
        except UnresolvedReferenceError as e:
            return self._fail(workflow, step, str(e))

        self.engine.start_step(workflow_id, step.step_id, step_input)
        try:
            result = self._call(workflow, step, step_input)
        except Exception as e:
            logger.exception("Step %s of workflow %s raised", step.step_id, workflow_id)
            return self._fail(workflow, step, f"{type(e).__name__}: {e}")

        if not result.success:
            return self._fail(workflow, step, result.error or f"HTTP {result.status}", result.payment_id)

        attempt = self.engine.complete_step(
            workflow_id,
            step.step_id,
            output=result.data,
            payment_id=result.payment_id,
            actual_cost=result.amount,
        )
        self._audit(
            EventType.STEP_COMPLETED,
            workflow,
            payment_id=result.payment_id,
            amount=result.amount,
            details={"step_id": step.step_id, "tool_id": step.tool_id},
        )
        return attempt

    def _call(self, workflow: Workflow, step: WorkflowStep, step_input: Any) -> CallResult:
        tool = self.registry.get_tool(step.tool_id)
        if tool is not None and not tool.is_active:
            return CallResult(success=False, status=0, error=f"Tool {step.tool_id} is deactivated")

        url = tool.endpoint if tool is not None else step.tool_id
        cost = None if tool is not None else (step.estimated_cost or None)
        if step.method == "GET":
            request_kwargs = {"params": step_input} if step_input else {}
        else:
            request_kwargs = {"json": step_input}

        return self.gateway.call(
            agent_id=workflow.agent_id,
            session_id=workflow.session_id,
            url=url,
            method=step.method,
            cost=cost,
            workflow_id=workflow.workflow_id,
            **request_kwargs,
        )

    def _start(self, workflow: Workflow) -> Workflow:
        workflow = self.engine.start_workflow(workflow.workflow_id)
        self._audit(
            EventType.WORKFLOW_STARTED,
            workflow,
            amount=workflow.estimated_total_cost,
            details={"steps": len(workflow.planned_steps)},
        )
        return workflow

    def _skip(self, workflow: Workflow, step: WorkflowStep, reason: str) -> ExecutedStep:
        attempt = self.engine.skip_step(workflow.workflow_id, step.step_id, reason)
        self._audit(
            EventType.STEP_SKIPPED,
            workflow,
            reason=reason,
            details={"step_id": step.step_id, "tool_id": step.tool_id},
        )
        return attempt

    def _fail(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        error: str,
        payment_id: Optional[str] = None,
    ) -> ExecutedStep:
        attempt = self.engine.fail_step(workflow.workflow_id, step.step_id, error, payment_id=payment_id)
        self._audit(
            EventType.STEP_FAILED,
            workflow,
            payment_id=payment_id,
            success=False,
            reason=error,
            details={"step_id": step.step_id, "tool_id": step.tool_id},
        )

        failures = [
            a for a in self.engine.get_step_attempts(workflow.workflow_id, step.step_id)
            if a.status == StepStatus.FAILED
        ]
        if len(failures) < self.max_step_attempts or self._load(workflow.workflow_id).is_terminal:
            return attempt

        if self.continue_on_failure:
            self._skip(workflow, step, f"Gave up after {len(failures)} failed attempts")
        else:
            message = f"Step {step.step_id} failed {len(failures)} times: {error}"
            self.engine.fail_workflow(workflow.workflow_id, message)
            self._audit(EventType.WORKFLOW_FINISHED, workflow, success=False, reason=message)
        return attempt

    def _finish(self, workflow: Workflow) -> Workflow:
        final_result = None
        for attempt in reversed(workflow.executed_steps):
            if attempt.status == StepStatus.COMPLETED:
                final_result = attempt.output
                break
        finished = self.engine.complete_workflow(workflow.workflow_id, final_result)
        self._audit(
            EventType.WORKFLOW_FINISHED,
            finished,
            amount=finished.actual_total_cost,
            details={"estimated_total_cost": str(finished.estimated_total_cost)},
        )
        logger.info(
            "Workflow %s completed: spent %d of estimated %d",
            workflow.workflow_id, finished.actual_total_cost, finished.estimated_total_cost,
        )
        return finished

    def _audit(self, event_type: EventType, workflow: Workflow, **fields: Any) -> None:
        if self.audit is not None:
            self.audit.log(
                event_type,
                agent_id=workflow.agent_id,
                session_id=workflow.session_id,
                workflow_id=workflow.workflow_id,
                **fields,
            )
