"""Execution state, step runtime state and their transition tables."""

import threading
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field, PrivateAttr

from .dag import StepType, TriggerType, WorkflowDefinition
from .exceptions import IllegalTransitionError

logger = structlog.get_logger(__name__)


class StepStatus(str, Enum):
    """Step runtime status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    # failed -> pending only happens when the retry policy allows another attempt
    StepStatus.FAILED: frozenset({StepStatus.PENDING}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}

SETTLED_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}
)


class StepRuntimeState(BaseModel):
    """Mutable runtime state of one step within one execution."""

    step_id: str = Field(description="Step identifier")
    name: str = Field(description="Step name")
    step_type: StepType = Field(description="Step type")
    status: StepStatus = Field(default=StepStatus.PENDING, description="Step status")
    attempts: int = Field(default=0, description="Number of attempts started")
    started_at: datetime | None = Field(default=None, description="Last attempt start")
    completed_at: datetime | None = Field(default=None, description="Terminal time")
    duration_seconds: float | None = Field(default=None, description="Last attempt duration")
    outputs: dict[str, Any] = Field(default_factory=dict, description="Step outputs")
    error: str | None = Field(default=None, description="Last error message")
    review_request_id: str | None = Field(
        default=None, description="Review request gating this step"
    )

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STEP_STATUSES

    def calculate_duration(self) -> None:
        """Calculate and set duration if completed_at is available."""
        if self.completed_at and self.started_at:
            self.duration_seconds = (self.completed_at - self.started_at).total_seconds()

    def transition(
        self,
        target: StepStatus,
        *,
        at: datetime | None = None,
        outputs: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Apply a legal status transition, updating timestamps and counters."""
        if target not in STEP_TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"step '{self.step_id}'", self.status.value, target.value
            )

        now = at or datetime.now(UTC)
        if target == StepStatus.RUNNING:
            self.attempts += 1
            self.started_at = now
            self.completed_at = None
            self.duration_seconds = None
            self.error = None
        elif target == StepStatus.COMPLETED:
            self.outputs = dict(outputs or {})
            self.completed_at = now
            self.calculate_duration()
        elif target == StepStatus.FAILED:
            self.error = error
            self.completed_at = now
            self.calculate_duration()
        elif target == StepStatus.SKIPPED:
            self.error = error
            self.completed_at = now
        elif target == StepStatus.PENDING:
            self.completed_at = None

        self.status = target


class Execution(BaseModel):
    """One run instance of a workflow definition."""

    execution_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), description="Unique execution ID"
    )
    workflow_id: str = Field(description="Workflow identifier")
    workflow_name: str = Field(description="Workflow name")
    workflow_version: str = Field(description="Workflow version")
    trigger_type: TriggerType = Field(
        default=TriggerType.MANUAL, description="What triggered the execution"
    )
    inputs: dict[str, Any] = Field(default_factory=dict, description="Execution inputs")
    status: ExecutionStatus = Field(
        default=ExecutionStatus.RUNNING, description="Execution status"
    )
    steps: dict[str, StepRuntimeState] = Field(
        default_factory=dict, description="Step states in definition order"
    )
    log: list[str] = Field(default_factory=list, description="Append-only event log")
    errors: list[str] = Field(default_factory=list, description="Accumulated errors")
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = Field(default=None, description="When execution ended")
    duration_seconds: float | None = Field(default=None, description="Execution duration")

    _lock: threading.RLock = PrivateAttr(default_factory=threading.RLock)

    @classmethod
    def create(
        cls,
        definition: WorkflowDefinition,
        inputs: dict[str, Any] | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> "Execution":
        """Create an execution with every step pending."""
        execution = cls(
            workflow_id=definition.workflow_id,
            workflow_name=definition.name,
            workflow_version=definition.version,
            trigger_type=trigger_type,
            inputs=dict(inputs or {}),
            steps={
                step.step_id: StepRuntimeState(
                    step_id=step.step_id, name=step.name, step_type=step.step_type
                )
                for step in definition.steps
            },
        )
        execution.append_log(
            f"Execution created for workflow '{definition.workflow_id}' "
            f"(trigger: {trigger_type.value}, steps: {len(definition.steps)})"
        )
        return execution

    @property
    def is_terminal(self) -> bool:
        return self.status != ExecutionStatus.RUNNING

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise IllegalTransitionError(
                f"execution '{self.execution_id}'", self.status.value, "modified"
            )

    def append_log(self, message: str) -> None:
        with self._lock:
            self._ensure_mutable()
            timestamp = datetime.now(UTC).isoformat()
            self.log.append(f"{timestamp} {message}")

    def record_error(self, message: str) -> None:
        with self._lock:
            self._ensure_mutable()
            self.errors.append(message)

    def transition_step(
        self,
        step_id: str,
        target: StepStatus,
        message: str,
        **changes: Any,
    ) -> StepRuntimeState:
        """Transition one step and append exactly one log line for it.

        Returns a copy of the resulting step state.
        """
        with self._lock:
            self._ensure_mutable()
            state = self.steps[step_id]
            state.transition(target, **changes)
            self.append_log(message)
            return state.model_copy(deep=True)

    def attach_review(self, step_id: str, review_id: str) -> None:
        with self._lock:
            self._ensure_mutable()
            self.steps[step_id].review_request_id = review_id

    def finish(self, status: ExecutionStatus, message: str) -> None:
        """Move the execution to a terminal status. No mutation is allowed afterwards."""
        with self._lock:
            if status not in EXECUTION_TRANSITIONS[self.status]:
                raise IllegalTransitionError(
                    f"execution '{self.execution_id}'", self.status.value, status.value
                )
            self.append_log(message)
            self.completed_at = datetime.now(UTC)
            self.duration_seconds = (self.completed_at - self.started_at).total_seconds()
            self.status = status

    def steps_snapshot(self) -> dict[str, StepRuntimeState]:
        with self._lock:
            return {
                step_id: state.model_copy(deep=True)
                for step_id, state in self.steps.items()
            }

    def snapshot(self) -> "Execution":
        """Consistent deep copy for readers outside the orchestrator."""
        with self._lock:
            return Execution.model_validate(self.model_dump())


class ExecutionStatusReport(BaseModel):
    """Read-only status projection of an execution."""

    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    completed_steps: int
    total_steps: int
    progress_percent: float
    current_steps: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    pending_reviews: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None

    @classmethod
    def from_execution(cls, execution: Execution) -> "ExecutionStatusReport":
        steps = list(execution.steps.values())
        completed = sum(1 for step in steps if step.status == StepStatus.COMPLETED)
        total = len(steps)
        running = [step for step in steps if step.status == StepStatus.RUNNING]
        return cls(
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            completed_steps=completed,
            total_steps=total,
            progress_percent=round(completed / total * 100, 2) if total else 0.0,
            current_steps=[step.name for step in running],
            errors=list(execution.errors),
            pending_reviews=[
                step.review_request_id
                for step in running
                if step.review_request_id is not None
            ],
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration_seconds=execution.duration_seconds,
        )
