"""
Workflow execution engine.

A workflow is an ordered plan of paid steps plus an append-only log of
step attempts. ``current_step_index`` is the only program counter: it
advances when the current step completes or is skipped, never on failure.
Workflow states: planned -> executing <-> paused -> completed|failed|cancelled.
Step attempts: executing -> completed|failed|skipped.

Later steps consume earlier outputs through ``$<step_id>.output.<path>``
references in their input templates. A reference to a step that has not
completed is an error, never a placeholder.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from .errors import (
    DependencyCycleError,
    InvalidTransitionError,
    StepDependencyError,
    StepError,
    UnresolvedReferenceError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .money import parse_amount
from .storage import Store

logger = logging.getLogger(__name__)


class WorkflowStatus(str, Enum):
    PLANNED = "planned"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}

_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.PLANNED: {WorkflowStatus.EXECUTING, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED},
    WorkflowStatus.EXECUTING: {
        WorkflowStatus.PAUSED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.PAUSED: {WorkflowStatus.EXECUTING, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED},
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.CANCELLED: set(),
}

_REFERENCE_RE = re.compile(r"^\$([A-Za-z0-9_-]+)\.output((?:\.[^.\s]+)*)$")
_COMPARISON_RE = re.compile(r"^(\S+)\s*(==|!=)\s*(.+)$")


@dataclass
class WorkflowStep:
    """One planned paid tool call."""

    step_id: str
    tool_id: str
    tool_name: str = ""
    input_template: Any = field(default_factory=dict)
    estimated_cost: int = 0
    depends_on: list[str] = field(default_factory=list)
    condition: Optional[str] = None
    priority: int = 0
    method: str = "GET"

    def __post_init__(self):
        self.estimated_cost = parse_amount(self.estimated_cost, "estimated_cost")
        self.method = self.method.upper()

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "tool_id": self.tool_id,
            "tool_name": self.tool_name,
            "input_template": self.input_template,
            "estimated_cost": str(self.estimated_cost),
            "depends_on": list(self.depends_on),
            "condition": self.condition,
            "priority": self.priority,
            "method": self.method,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowStep":
        return cls(
            step_id=data["step_id"],
            tool_id=data["tool_id"],
            tool_name=data.get("tool_name", ""),
            input_template=data.get("input_template", {}),
            estimated_cost=data.get("estimated_cost", 0),
            depends_on=list(data.get("depends_on", [])),
            condition=data.get("condition"),
            priority=data.get("priority", 0),
            method=data.get("method", "GET"),
        )


@dataclass
class ExecutedStep:
    """One attempt at a planned step, as recorded in the step log."""

    step_id: str
    tool_id: str
    status: StepStatus
    started_at: float
    input: Any = None
    output: Any = None
    payment_id: Optional[str] = None
    actual_cost: int = 0
    completed_at: Optional[float] = None
    latency_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "tool_id": self.tool_id,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "payment_id": self.payment_id,
            "actual_cost": str(self.actual_cost),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutedStep":
        return cls(
            step_id=data["step_id"],
            tool_id=data["tool_id"],
            status=StepStatus(data["status"]),
            input=data.get("input"),
            output=data.get("output"),
            payment_id=data.get("payment_id"),
            actual_cost=int(data.get("actual_cost", "0")),
            started_at=data["started_at"],
            completed_at=data.get("completed_at"),
            latency_ms=data.get("latency_ms", 0),
            error=data.get("error"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


@dataclass
class Workflow:
    workflow_id: str
    agent_id: str
    session_id: str
    original_intent: str
    planned_steps: list[WorkflowStep]
    status: WorkflowStatus
    estimated_total_cost: int
    started_at: float
    created_at: float
    updated_at: float
    executed_steps: list[ExecutedStep] = field(default_factory=list)
    current_step_index: int = 0
    actual_total_cost: int = 0
    final_result: Any = None
    last_error: Optional[str] = None
    retry_count: int = 0
    pause_requested: bool = False
    completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        if self.current_step_index >= len(self.planned_steps):
            return None
        return self.planned_steps[self.current_step_index]

    def find_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.planned_steps if s.step_id == step_id), None)

    def attempts(self, step_id: str) -> list[ExecutedStep]:
        return [e for e in self.executed_steps if e.step_id == step_id]

    def latest_attempt(self, step_id: str) -> Optional[ExecutedStep]:
        attempts = self.attempts(step_id)
        return attempts[-1] if attempts else None

    def is_step_completed(self, step_id: str) -> bool:
        return any(e.status == StepStatus.COMPLETED for e in self.attempts(step_id))

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "original_intent": self.original_intent,
            "planned_steps": [s.to_dict() for s in self.planned_steps],
            "executed_steps": [e.to_dict() for e in self.executed_steps],
            "current_step_index": self.current_step_index,
            "status": self.status.value,
            "pause_requested": self.pause_requested,
            "estimated_total_cost": str(self.estimated_total_cost),
            "actual_total_cost": str(self.actual_total_cost),
            "final_result": self.final_result,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class WorkflowAnalytics:
    total_workflows: int = 0
    completed: int = 0
    failed: int = 0
    total_spent: int = 0
    average_cost: int = 0

    def to_dict(self) -> dict:
        return {
            "total_workflows": self.total_workflows,
            "completed": self.completed,
            "failed": self.failed,
            "total_spent": str(self.total_spent),
            "average_cost": str(self.average_cost),
        }


def _find_cycle(steps: list[WorkflowStep]) -> Optional[list[str]]:
    graph = {s.step_id: list(s.depends_on) for s in steps}
    visiting: list[str] = []
    done: set[str] = set()

    def visit(node: str) -> Optional[list[str]]:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done:
            return None
        visiting.append(node)
        for dep in graph.get(node, []):
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for step in steps:
        cycle = visit(step.step_id)
        if cycle:
            return cycle
    return None


def validate_plan(steps: list[WorkflowStep]) -> None:
    """Reject duplicate ids, unknown dependencies, cycles and forward references."""
    positions: dict[str, int] = {}
    for index, step in enumerate(steps):
        if not step.step_id or not step.tool_id:
            raise WorkflowValidationError(f"Step {index} needs a step_id and tool_id")
        if step.step_id in positions:
            raise WorkflowValidationError(f"Duplicate step id: {step.step_id}")
        positions[step.step_id] = index

    for step in steps:
        unknown = [d for d in step.depends_on if d not in positions]
        if unknown:
            raise WorkflowValidationError(
                f"Step {step.step_id} depends on unknown steps: {', '.join(unknown)}"
            )

    cycle = _find_cycle(steps)
    if cycle:
        raise DependencyCycleError(cycle)

    for index, step in enumerate(steps):
        for dep in step.depends_on:
            if positions[dep] >= index:
                raise WorkflowValidationError(
                    f"Step {step.step_id} depends on later step {dep}"
                )


class WorkflowEngine:
    """Persists workflows and enforces their state machines."""

    def __init__(self, store: Store, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    # ── Persistence ───────────────────────────────────────────────

    def _row_to_workflow(self, row: sqlite3.Row) -> Workflow:
        return Workflow(
            workflow_id=row["workflow_id"],
            agent_id=row["agent_id"],
            session_id=row["session_id"],
            original_intent=row["original_intent"],
            planned_steps=[WorkflowStep.from_dict(s) for s in json.loads(row["planned_steps"])],
            executed_steps=[ExecutedStep.from_dict(e) for e in json.loads(row["executed_steps"])],
            current_step_index=row["current_step_index"],
            status=WorkflowStatus(row["status"]),
            pause_requested=bool(row["pause_requested"]),
            final_result=json.loads(row["final_result"]) if row["final_result"] else None,
            estimated_total_cost=int(row["estimated_total_cost"]),
            actual_total_cost=int(row["actual_total_cost"]),
            last_error=row["last_error"],
            retry_count=row["retry_count"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load(self, conn: sqlite3.Connection, workflow_id: str) -> Workflow:
        row = conn.execute(
            "SELECT * FROM workflows WHERE workflow_id = ?", (workflow_id,)
        ).fetchone()
        if row is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        return self._row_to_workflow(row)

    def _save(self, conn: sqlite3.Connection, workflow: Workflow) -> None:
        conn.execute(
            """
            UPDATE workflows
            SET executed_steps = ?, current_step_index = ?, status = ?,
                pause_requested = ?, final_result = ?, actual_total_cost = ?,
                last_error = ?, retry_count = ?, started_at = ?,
                completed_at = ?, updated_at = ?
            WHERE workflow_id = ?
            """,
            (
                json.dumps([e.to_dict() for e in workflow.executed_steps]),
                workflow.current_step_index,
                workflow.status.value,
                int(workflow.pause_requested),
                json.dumps(workflow.final_result) if workflow.final_result is not None else None,
                str(workflow.actual_total_cost),
                workflow.last_error,
                workflow.retry_count,
                workflow.started_at,
                workflow.completed_at,
                workflow.updated_at,
                workflow.workflow_id,
            ),
        )

    @contextmanager
    def _editing(self, workflow_id: str) -> Iterator[Workflow]:
        with self.store.transaction() as conn:
            workflow = self._load(conn, workflow_id)
            yield workflow
            workflow.updated_at = self._clock()
            self._save(conn, workflow)

    def _transition(self, workflow: Workflow, target: WorkflowStatus) -> None:
        if target not in _TRANSITIONS[workflow.status]:
            raise InvalidTransitionError("workflow", workflow.status.value, target.value)
        logger.info("Workflow %s: %s -> %s", workflow.workflow_id, workflow.status.value, target.value)
        workflow.status = target

    def _apply_requested_pause(self, workflow: Workflow) -> None:
        if workflow.pause_requested and workflow.status == WorkflowStatus.EXECUTING:
            workflow.pause_requested = False
            self._transition(workflow, WorkflowStatus.PAUSED)

    # ── Workflow lifecycle ────────────────────────────────────────

    def create_workflow(
        self,
        agent_id: str,
        session_id: str,
        intent: str,
        planned_steps: list[WorkflowStep | dict],
    ) -> Workflow:
        if not agent_id or not session_id:
            raise ValueError("agent_id and session_id are required")
        steps = [s if isinstance(s, WorkflowStep) else WorkflowStep.from_dict(s) for s in planned_steps]
        validate_plan(steps)

        now = self._clock()
        workflow = Workflow(
            workflow_id=str(uuid.uuid4()),
            agent_id=agent_id,
            session_id=session_id,
            original_intent=intent,
            planned_steps=steps,
            status=WorkflowStatus.PLANNED,
            estimated_total_cost=sum(s.estimated_cost for s in steps),
            started_at=now,
            created_at=now,
            updated_at=now,
        )
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO workflows (
                    workflow_id, agent_id, session_id, original_intent, planned_steps,
                    executed_steps, current_step_index, status, pause_requested,
                    estimated_total_cost, actual_total_cost, retry_count,
                    started_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, '[]', 0, ?, 0, ?, '0', 0, ?, ?, ?)
                """,
                (
                    workflow.workflow_id,
                    agent_id,
                    session_id,
                    intent,
                    json.dumps([s.to_dict() for s in steps]),
                    workflow.status.value,
                    str(workflow.estimated_total_cost),
                    now,
                    now,
                    now,
                ),
            )
        logger.info(
            "Workflow %s created for agent %s: %d steps, estimated %d",
            workflow.workflow_id, agent_id, len(steps), workflow.estimated_total_cost,
        )
        return workflow

    def start_workflow(self, workflow_id: str) -> Workflow:
        with self._editing(workflow_id) as workflow:
            self._transition(workflow, WorkflowStatus.EXECUTING)
            workflow.started_at = self._clock()
        return workflow

    def pause_workflow(self, workflow_id: str) -> Workflow:
        """
        Pause at the next step boundary.

        With no step in flight the workflow pauses now; otherwise the pause
        is recorded and applied when the running step reaches a terminal
        status.
        """
        with self._editing(workflow_id) as workflow:
            if workflow.status == WorkflowStatus.PAUSED:
                return workflow
            if workflow.status != WorkflowStatus.EXECUTING:
                raise InvalidTransitionError("workflow", workflow.status.value, WorkflowStatus.PAUSED.value)
            step = workflow.current_step
            running = step is not None and self._running_attempt(workflow, step.step_id) is not None
            if running:
                workflow.pause_requested = True
                logger.info("Workflow %s will pause after step %s", workflow_id, step.step_id)
            else:
                self._transition(workflow, WorkflowStatus.PAUSED)
        return workflow

    def resume_workflow(self, workflow_id: str) -> Workflow:
        with self._editing(workflow_id) as workflow:
            if workflow.status == WorkflowStatus.EXECUTING:
                workflow.pause_requested = False
                return workflow
            self._transition(workflow, WorkflowStatus.EXECUTING)
        return workflow

    def complete_workflow(self, workflow_id: str, final_result: Any = None) -> Workflow:
        with self._editing(workflow_id) as workflow:
            self._transition(workflow, WorkflowStatus.COMPLETED)
            workflow.final_result = final_result
            workflow.pause_requested = False
            workflow.completed_at = self._clock()
        return workflow

    def fail_workflow(self, workflow_id: str, error: str) -> Workflow:
        with self._editing(workflow_id) as workflow:
            self._transition(workflow, WorkflowStatus.FAILED)
            workflow.last_error = error
            workflow.pause_requested = False
            workflow.completed_at = self._clock()
        logger.warning("Workflow %s failed: %s", workflow_id, error)
        return workflow

    def cancel_workflow(self, workflow_id: str, reason: Optional[str] = None) -> Workflow:
        with self._editing(workflow_id) as workflow:
            self._transition(workflow, WorkflowStatus.CANCELLED)
            workflow.last_error = reason
            workflow.pause_requested = False
            workflow.completed_at = self._clock()
        return workflow

    # ── Steps ─────────────────────────────────────────────────────

    def get_current_step(self, workflow_id: str) -> Optional[WorkflowStep]:
        """The step at ``current_step_index``, or None past the end of the plan."""
        return self._require(workflow_id).current_step

    def _running_attempt(self, workflow: Workflow, step_id: str) -> Optional[ExecutedStep]:
        latest = workflow.latest_attempt(step_id)
        if latest is not None and latest.status == StepStatus.EXECUTING:
            return latest
        return None

    def _require_current(self, workflow: Workflow, step_id: str) -> WorkflowStep:
        step = workflow.current_step
        if step is None:
            raise StepError(f"Workflow {workflow.workflow_id} has no remaining steps")
        if step.step_id != step_id:
            raise StepError(
                f"Step {step_id} is not the current step of workflow "
                f"{workflow.workflow_id} (current: {step.step_id})"
            )
        return step

    def start_step(self, workflow_id: str, step_id: str, step_input: Any = None) -> ExecutedStep:
        """Record a new attempt at the current step; dependencies must be completed."""
        with self._editing(workflow_id) as workflow:
            if workflow.status != WorkflowStatus.EXECUTING or workflow.pause_requested:
                raise StepError(
                    f"Workflow {workflow_id} is {workflow.status.value}"
                    + (" (pause requested)" if workflow.pause_requested else "")
                )
            step = self._require_current(workflow, step_id)
            if self._running_attempt(workflow, step_id) is not None:
                raise StepError(f"Step {step_id} is already executing")
            missing = [d for d in step.depends_on if not workflow.is_step_completed(d)]
            if missing:
                raise StepDependencyError(step_id, missing)

            attempt = ExecutedStep(
                step_id=step_id,
                tool_id=step.tool_id,
                status=StepStatus.EXECUTING,
                started_at=self._clock(),
                input=step_input,
            )
            workflow.executed_steps.append(attempt)
        return attempt

    def complete_step(
        self,
        workflow_id: str,
        step_id: str,
        output: Any = None,
        payment_id: Optional[str] = None,
        actual_cost: int | str = 0,
    ) -> ExecutedStep:
        """
        Close the running attempt as completed, add its cost and advance.

        On a workflow that was cancelled or failed while the step ran, the
        attempt and its cost are still recorded but the index stays put.
        """
        cost = parse_amount(actual_cost, "actual_cost")
        with self._editing(workflow_id) as workflow:
            attempt = self._running_attempt(workflow, step_id)
            if attempt is None:
                raise StepError(f"Step {step_id} is not executing")
            now = self._clock()
            attempt.status = StepStatus.COMPLETED
            attempt.output = output
            attempt.payment_id = payment_id
            attempt.actual_cost = cost
            attempt.completed_at = now
            attempt.latency_ms = int((now - attempt.started_at) * 1000)

            # the call was paid for even if the workflow ended meanwhile
            workflow.actual_total_cost += cost
            if not workflow.is_terminal:
                workflow.current_step_index += 1
                self._apply_requested_pause(workflow)
        logger.info("Workflow %s: step %s completed (cost %d)", workflow_id, step_id, cost)
        return attempt

    def fail_step(
        self,
        workflow_id: str,
        step_id: str,
        error: str,
        payment_id: Optional[str] = None,
    ) -> ExecutedStep:
        """
        Record a failed attempt. The index does not move; retrying or
        skipping is the caller's decision.
        """
        with self._editing(workflow_id) as workflow:
            now = self._clock()
            attempt = self._running_attempt(workflow, step_id)
            if attempt is None:
                if workflow.is_terminal:
                    raise StepError(f"Workflow {workflow_id} is {workflow.status.value}")
                step = self._require_current(workflow, step_id)
                attempt = ExecutedStep(
                    step_id=step_id,
                    tool_id=step.tool_id,
                    status=StepStatus.FAILED,
                    started_at=now,
                )
                workflow.executed_steps.append(attempt)
            attempt.status = StepStatus.FAILED
            attempt.error = error
            attempt.payment_id = payment_id or attempt.payment_id
            attempt.completed_at = now
            attempt.latency_ms = int((now - attempt.started_at) * 1000)

            if not workflow.is_terminal:
                workflow.retry_count += 1
                workflow.last_error = error
                self._apply_requested_pause(workflow)
        logger.warning("Workflow %s: step %s failed: %s", workflow_id, step_id, error)
        return attempt

    def skip_step(self, workflow_id: str, step_id: str, reason: Optional[str] = None) -> ExecutedStep:
        """Mark the current step skipped and advance past it."""
        with self._editing(workflow_id) as workflow:
            if workflow.status not in (WorkflowStatus.EXECUTING, WorkflowStatus.PAUSED):
                raise StepError(f"Workflow {workflow_id} is {workflow.status.value}")
            step = self._require_current(workflow, step_id)
            now = self._clock()
            attempt = self._running_attempt(workflow, step_id)
            if attempt is None:
                attempt = ExecutedStep(
                    step_id=step_id,
                    tool_id=step.tool_id,
                    status=StepStatus.SKIPPED,
                    started_at=now,
                )
                workflow.executed_steps.append(attempt)
            attempt.status = StepStatus.SKIPPED
            attempt.error = reason
            attempt.completed_at = now

            workflow.current_step_index += 1
            self._apply_requested_pause(workflow)
        logger.info("Workflow %s: step %s skipped (%s)", workflow_id, step_id, reason or "no reason")
        return attempt

    # ── References ────────────────────────────────────────────────

    def get_step_output(self, workflow_id: str, step_id: str) -> Any:
        return _completed_output(self._require(workflow_id), step_id)

    def resolve_input(self, workflow: Workflow, template: Any) -> Any:
        """Substitute every ``$<step_id>.output[.path]`` string in ``template``."""
        if isinstance(template, str):
            match = _REFERENCE_RE.match(template)
            if match is None:
                return template
            return _follow_path(
                template,
                _completed_output(workflow, match.group(1)),
                match.group(2),
            )
        if isinstance(template, dict):
            return {k: self.resolve_input(workflow, v) for k, v in template.items()}
        if isinstance(template, list):
            return [self.resolve_input(workflow, v) for v in template]
        return template

    def evaluate_condition(self, workflow: Workflow, condition: Optional[str]) -> bool:
        """
        Evaluate a step condition against completed outputs.

        Forms: ``<ref>`` (truthy), ``!<ref>``, ``<ref> == <json>`` and
        ``<ref> != <json>``. Any unresolved reference makes the condition
        false.
        """
        if condition is None or not condition.strip():
            return True
        expr = condition.strip()
        try:
            comparison = _COMPARISON_RE.match(expr)
            if comparison:
                left = self._operand(workflow, comparison.group(1))
                right = self._operand(workflow, comparison.group(3).strip())
                equal = left == right
                return equal if comparison.group(2) == "==" else not equal
            if expr.startswith("!"):
                return not self._operand(workflow, expr[1:].strip())
            return bool(self._operand(workflow, expr))
        except UnresolvedReferenceError as e:
            logger.info("Condition %r on workflow %s is false: %s", condition, workflow.workflow_id, e)
            return False

    def _operand(self, workflow: Workflow, token: str) -> Any:
        if token.startswith("$"):
            return self.resolve_input(workflow, token)
        try:
            return json.loads(token)
        except ValueError:
            return token

    # ── Queries ───────────────────────────────────────────────────

    def _require(self, workflow_id: str) -> Workflow:
        with self.store.read() as conn:
            return self._load(conn, workflow_id)

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        try:
            return self._require(workflow_id)
        except WorkflowNotFoundError:
            return None

    def get_step_attempts(self, workflow_id: str, step_id: str) -> list[ExecutedStep]:
        return self._require(workflow_id).attempts(step_id)

    def get_active_workflow(self, agent_id: str, session_id: str) -> Optional[Workflow]:
        """Most recent planned, executing or paused workflow of the session."""
        with self.store.read() as conn:
            row = conn.execute(
                """
                SELECT * FROM workflows
                WHERE agent_id = ? AND session_id = ? AND status IN (?, ?, ?)
                ORDER BY created_at DESC LIMIT 1
                """,
                (
                    agent_id,
                    session_id,
                    WorkflowStatus.PLANNED.value,
                    WorkflowStatus.EXECUTING.value,
                    WorkflowStatus.PAUSED.value,
                ),
            ).fetchone()
        return self._row_to_workflow(row) if row is not None else None

    def get_agent_workflows(self, agent_id: str, limit: int = 20) -> list[Workflow]:
        with self.store.read() as conn:
            rows = conn.execute(
                "SELECT * FROM workflows WHERE agent_id = ? ORDER BY created_at DESC LIMIT ?",
                (agent_id, limit),
            ).fetchall()
        return [self._row_to_workflow(r) for r in rows]

    def get_workflow_analytics(self, agent_id: str) -> WorkflowAnalytics:
        with self.store.read() as conn:
            rows = conn.execute(
                "SELECT status, actual_total_cost FROM workflows WHERE agent_id = ?",
                (agent_id,),
            ).fetchall()
        total_spent = sum(int(r["actual_total_cost"]) for r in rows)
        return WorkflowAnalytics(
            total_workflows=len(rows),
            completed=sum(1 for r in rows if r["status"] == WorkflowStatus.COMPLETED.value),
            failed=sum(1 for r in rows if r["status"] == WorkflowStatus.FAILED.value),
            total_spent=total_spent,
            average_cost=total_spent // len(rows) if rows else 0,
        )


def _completed_output(workflow: Workflow, step_id: str) -> Any:
    reference = f"${step_id}.output"
    if workflow.find_step(step_id) is None:
        raise UnresolvedReferenceError(reference, "no such step")
    for attempt in reversed(workflow.attempts(step_id)):
        if attempt.status == StepStatus.COMPLETED:
            return attempt.output
    raise UnresolvedReferenceError(reference, "step has not completed")


def _follow_path(reference: str, value: Any, path: str) -> Any:
    for key in filter(None, path.split(".")):
        if isinstance(value, dict) and key in value:
            value = value[key]
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            raise UnresolvedReferenceError(reference, f"no field {key!r}")
    return value
