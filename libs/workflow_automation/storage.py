"""Workflow definition store and the persistence collaborator contract."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog
import yaml
from pydantic import ValidationError

from .config import WorkflowEngineSettings, get_settings
from .dag import TriggerType, WorkflowDefinition
from .exceptions import GraphError, WorkflowNotFoundError
from .retry import RetryPolicy

if TYPE_CHECKING:
    from .drift import DriftSignal
    from .review import ReviewRequest
    from .state import Execution, StepRuntimeState

logger = structlog.get_logger(__name__)


@runtime_checkable
class PersistenceBackend(Protocol):
    """Storage collaborator used by the engine.

    Intermediate step updates are fire-and-forget; terminal step states and
    finished executions are retried by the engine until they are stored.
    """

    async def load_definition(self, workflow_id: str) -> WorkflowDefinition | None: ...

    async def save_definition(self, definition: WorkflowDefinition) -> None: ...

    async def save_execution(self, execution: "Execution") -> None: ...

    async def update_step_state(
        self, execution_id: str, step_id: str, state: "StepRuntimeState"
    ) -> None: ...

    async def save_review_request(self, request: "ReviewRequest") -> None: ...

    async def save_drift_signals(self, signals: list["DriftSignal"]) -> None: ...


class InMemoryPersistence:
    """Dictionary backed persistence for development and tests."""

    def __init__(self) -> None:
        self.definitions: dict[str, WorkflowDefinition] = {}
        self.executions: dict[str, "Execution"] = {}
        self.step_states: dict[tuple[str, str], "StepRuntimeState"] = {}
        self.step_updates: list[tuple[str, str, str]] = []
        self.review_requests: dict[str, "ReviewRequest"] = {}
        self.drift_signals: dict[str, "DriftSignal"] = {}

        logger.info("In-memory workflow persistence initialized")

    async def load_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        return self.definitions.get(workflow_id)

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self.definitions[definition.workflow_id] = definition

    async def save_execution(self, execution: "Execution") -> None:
        self.executions[execution.execution_id] = execution.snapshot()

    async def update_step_state(
        self, execution_id: str, step_id: str, state: "StepRuntimeState"
    ) -> None:
        self.step_states[(execution_id, step_id)] = state.model_copy(deep=True)
        self.step_updates.append((execution_id, step_id, state.status.value))

    async def save_review_request(self, request: "ReviewRequest") -> None:
        self.review_requests[request.review_id] = request.model_copy(deep=True)

    async def save_drift_signals(self, signals: list["DriftSignal"]) -> None:
        for signal in signals:
            self.drift_signals[signal.signal_id] = signal.model_copy(deep=True)


class WorkflowDefinitionStore:
    """Activated workflow definitions, validated before they can run."""

    def __init__(
        self,
        persistence: PersistenceBackend,
        settings: WorkflowEngineSettings | None = None,
    ):
        self.persistence = persistence
        self.settings = settings or get_settings()
        self._definitions: dict[str, WorkflowDefinition] = {}

    async def activate(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store a definition. Invalid graphs fail here, not at run time."""
        definition.validate_graph()
        if definition.retry_policy is None:
            definition = definition.model_copy(
                update={"retry_policy": self.settings.default_retry_policy()}
            )

        existing = self._definitions.get(definition.workflow_id)
        if existing is not None:
            if existing.model_dump(exclude={"created_at"}) != definition.model_dump(
                exclude={"created_at"}
            ):
                raise ValueError(
                    f"Workflow '{definition.workflow_id}' is already active with a "
                    "different definition"
                )
            return existing

        await self.persistence.save_definition(definition)
        self._definitions[definition.workflow_id] = definition

        logger.info(
            "Workflow definition activated",
            workflow_id=definition.workflow_id,
            version=definition.version,
            steps=len(definition.steps),
            triggers=[trigger.trigger_type.value for trigger in definition.triggers],
        )
        return definition

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(workflow_id)
        if definition is not None:
            return definition

        definition = await self.persistence.load_definition(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found")

        definition.validate_graph()
        self._definitions[workflow_id] = definition
        return definition

    def list_definitions(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    def find_by_trigger(self, trigger_type: TriggerType) -> list[WorkflowDefinition]:
        return [
            definition
            for definition in self._definitions.values()
            if definition.find_triggers(trigger_type)
        ]

    def retraining_workflow_for(self, model_id: str) -> WorkflowDefinition | None:
        """Definition whose drift trigger names ``model_id``."""
        for definition in self.find_by_trigger(TriggerType.DRIFT):
            if any(
                trigger.model_id == model_id
                for trigger in definition.find_triggers(TriggerType.DRIFT)
            ):
                return definition
        return None

    async def load_yaml(
        self, path: str | Path, default_retry_policy: RetryPolicy | None = None
    ) -> list[WorkflowDefinition]:
        """Activate every workflow declared in a YAML file.

        A file holds either one workflow mapping or a ``workflows`` list.
        """
        with open(path, encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}

        raw_workflows: list[dict[str, Any]] = (
            document.get("workflows", []) if "workflows" in document else [document]
        )

        activated = []
        for raw in raw_workflows:
            if default_retry_policy is not None and "retry_policy" not in raw:
                raw = {**raw, "retry_policy": default_retry_policy.model_dump()}
            try:
                definition = WorkflowDefinition.model_validate(raw)
            except ValidationError as e:
                logger.error(
                    "Invalid workflow definition file", path=str(path), error=str(e)
                )
                raise
            activated.append(await self.activate(definition))

        return activated

    async def load_directory(
        self, directory: str | Path, default_retry_policy: RetryPolicy | None = None
    ) -> list[WorkflowDefinition]:
        activated = []
        for path in sorted(Path(directory).glob("*.y*ml")):
            try:
                activated.extend(await self.load_yaml(path, default_retry_policy))
            except GraphError as e:
                logger.error(
                    "Workflow definition rejected", path=str(path), issues=e.issues
                )
                raise

        logger.info(
            "Workflow definitions loaded",
            directory=str(directory),
            count=len(activated),
        )
        return activated


async def persist_durably(
    operation: Callable[[], Awaitable[None]],
    *,
    attempts: int,
    delay_seconds: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **log_context: Any,
) -> bool:
    """Retry a persistence call for terminal state. Returns False if it never succeeded."""
    for attempt in range(1, attempts + 1):
        try:
            await operation()
            return True
        except Exception as e:
            logger.warning(
                "Persistence attempt failed",
                attempt=attempt,
                max_attempts=attempts,
                error=str(e),
                **log_context,
            )
            if attempt < attempts:
                await sleep(delay_seconds)

    logger.error("Persistence failed for terminal state", attempts=attempts, **log_context)
    return False
