"""Declarative workflow definitions and dependency graph validation."""

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import GraphError
from .retry import RetryPolicy

logger = structlog.get_logger(__name__)


class StepType(str, Enum):
    """Closed set of step kinds a workflow can contain."""

    INGESTION = "ingestion"
    TRAINING = "training"
    PREDICTION = "prediction"
    VALIDATION = "validation"
    NOTIFICATION = "notification"
    HUMAN_REVIEW = "human_review"
    REPORTING = "reporting"


class TriggerType(str, Enum):
    """Ways an execution of a workflow can be started."""

    SCHEDULE = "schedule"
    EVENT = "event"
    MANUAL = "manual"
    DRIFT = "drift"


class StepDefinition(BaseModel):
    """A single step of a workflow definition."""

    model_config = ConfigDict(frozen=True)

    step_id: str = Field(description="Step identifier, unique within the workflow")
    name: str = Field(default="", description="Human readable step name")
    step_type: StepType = Field(description="Step type used for dispatch")
    dependencies: list[str] = Field(
        default_factory=list, description="Identifiers of steps this step waits for"
    )
    parameters: dict[str, Any] = Field(
        default_factory=dict, description="Free-form step input parameters"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Per-attempt time limit for computed steps"
    )

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("name") and data.get("step_id"):
            data = {**data, "name": data["step_id"]}
        return data

    @field_validator("step_id")
    @classmethod
    def validate_step_id(cls, v: str) -> str:
        """Validate step identifier format."""
        v = v.strip()
        if not v:
            raise ValueError("Step id cannot be empty")
        if len(v) > 100:
            raise ValueError("Step id cannot exceed 100 characters")
        if not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError(
                "Step id can only contain alphanumeric characters, hyphens, and underscores"
            )
        return v

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(dep.strip() for dep in v))

    @property
    def is_human_review(self) -> bool:
        return self.step_type == StepType.HUMAN_REVIEW


class TriggerDefinition(BaseModel):
    """How and when a workflow is started."""

    model_config = ConfigDict(frozen=True)

    trigger_type: TriggerType = Field(description="Type of trigger")
    enabled: bool = Field(default=True, description="Whether trigger is enabled")

    # Schedule trigger
    cron_expression: str | None = Field(default=None, description="Cron expression")
    interval_seconds: int | None = Field(
        default=None, ge=60, description="Interval in seconds"
    )

    # Event trigger
    event_type: str | None = Field(default=None, description="Event type to listen for")
    event_conditions: dict[str, Any] = Field(
        default_factory=dict, description="Exact-match conditions on event fields"
    )

    # Drift trigger
    model_id: str | None = Field(
        default=None, description="Model whose drift starts this workflow"
    )

    parameters: dict[str, Any] = Field(
        default_factory=dict, description="Inputs merged into triggered executions"
    )

    @model_validator(mode="after")
    def validate_trigger_config(self) -> "TriggerDefinition":
        if self.trigger_type == TriggerType.SCHEDULE:
            if not self.cron_expression and not self.interval_seconds:
                raise ValueError(
                    "Schedule trigger requires cron_expression or interval_seconds"
                )
            if self.cron_expression and not croniter.is_valid(self.cron_expression):
                raise ValueError(f"Invalid cron expression: {self.cron_expression}")
        elif self.trigger_type == TriggerType.EVENT and not self.event_type:
            raise ValueError("Event trigger requires event_type")
        elif self.trigger_type == TriggerType.DRIFT and not self.model_id:
            raise ValueError("Drift trigger requires model_id")
        return self

    def matches_event(self, event: dict[str, Any]) -> bool:
        """Check whether an event should fire this trigger."""
        if not self.enabled or self.trigger_type != TriggerType.EVENT:
            return False
        if event.get("type") != self.event_type:
            return False
        return all(event.get(key) == value for key, value in self.event_conditions.items())


class WorkflowDefinition(BaseModel):
    """Complete workflow definition. Immutable once activated."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str = Field(description="Workflow identifier")
    name: str = Field(description="Workflow name")
    description: str | None = Field(default=None, description="Workflow description")
    version: str = Field(default="1.0.0", description="Workflow version")
    owner: str | None = Field(default=None, description="Workflow owner")
    tags: list[str] = Field(default_factory=list, description="Workflow tags")
    steps: list[StepDefinition] = Field(description="Ordered step list")
    triggers: list[TriggerDefinition] = Field(
        default_factory=list, description="Trigger configuration"
    )
    retry_policy: RetryPolicy | None = Field(
        default=None, description="Retry policy; engine defaults apply when unset"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Overall execution timeout"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate workflow name format."""
        if not v or not v.strip():
            raise ValueError("Workflow name cannot be empty")
        if len(v) > 100:
            raise ValueError("Workflow name cannot exceed 100 characters")
        return v.strip()

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: list[StepDefinition]) -> list[StepDefinition]:
        if not v:
            raise ValueError("Workflow must contain at least one step")
        return v

    @property
    def step_ids(self) -> list[str]:
        return [step.step_id for step in self.steps]

    def get_step(self, step_id: str) -> StepDefinition:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    def dependents_of(self, step_id: str) -> list[str]:
        """Steps that declare ``step_id`` as a direct dependency."""
        return [step.step_id for step in self.steps if step_id in step.dependencies]

    def find_triggers(self, trigger_type: TriggerType) -> list[TriggerDefinition]:
        return [
            trigger
            for trigger in self.triggers
            if trigger.trigger_type == trigger_type and trigger.enabled
        ]

    def validate_graph(self) -> None:
        """Raise GraphError if the dependency graph is invalid."""
        issues = find_graph_issues(self.steps)
        if issues:
            logger.error(
                "Workflow graph validation failed",
                workflow_id=self.workflow_id,
                issues=issues,
            )
            raise GraphError(self.workflow_id, issues)

    def topological_order(self) -> list[str]:
        return topological_order(self.steps)


def find_graph_issues(steps: Iterable[StepDefinition]) -> list[str]:
    """Validate graph structure and return a list of issues."""
    steps = list(steps)
    issues = []
    seen: set[str] = set()

    for step in steps:
        if step.step_id in seen:
            issues.append(f"Duplicate step id '{step.step_id}'")
        seen.add(step.step_id)

    for step in steps:
        for dependency in step.dependencies:
            if dependency == step.step_id:
                issues.append(f"Step '{step.step_id}' depends on itself")
            elif dependency not in seen:
                issues.append(
                    f"Step '{step.step_id}' references non-existent dependency '{dependency}'"
                )

    # Cycle detection only makes sense over a well-formed graph
    if not issues:
        cycle = find_cycle(steps)
        if cycle:
            issues.append("Dependency cycle detected: " + " -> ".join(cycle))

    return issues


def find_cycle(steps: Iterable[StepDefinition]) -> list[str] | None:
    """Return one dependency cycle as a path of step ids, or None."""
    graph = {step.step_id: step.dependencies for step in steps}
    visited: set[str] = set()
    rec_stack: list[str] = []

    def dfs(step_id: str) -> list[str] | None:
        visited.add(step_id)
        rec_stack.append(step_id)

        for dependency in graph.get(step_id, []):
            if dependency in rec_stack:
                return rec_stack[rec_stack.index(dependency) :] + [dependency]
            if dependency not in visited:
                cycle = dfs(dependency)
                if cycle:
                    return cycle

        rec_stack.pop()
        return None

    for step_id in graph:
        if step_id not in visited:
            cycle = dfs(step_id)
            if cycle:
                return cycle
    return None


def topological_order(steps: Iterable[StepDefinition]) -> list[str]:
    """Return step ids in dependency order, ties broken by definition order."""
    steps = list(steps)
    position = {step.step_id: index for index, step in enumerate(steps)}
    in_degree = {step.step_id: len(step.dependencies) for step in steps}
    dependents: dict[str, list[str]] = {step.step_id: [] for step in steps}
    for step in steps:
        for dependency in step.dependencies:
            dependents[dependency].append(step.step_id)

    ready = [step_id for step_id, degree in in_degree.items() if degree == 0]
    result = []

    while ready:
        ready.sort(key=position.__getitem__)
        step_id = ready.pop(0)
        result.append(step_id)

        for dependent in dependents[step_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                ready.append(dependent)

    if len(result) != len(steps):
        raise ValueError("Workflow contains cycles - cannot perform topological sort")

    return result
