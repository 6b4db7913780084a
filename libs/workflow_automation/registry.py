"""Registry mapping step types to executable step bodies."""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from .dag import StepType, WorkflowDefinition
from .exceptions import StepTypeNotRegisteredError

logger = structlog.get_logger(__name__)

StepHandler = Callable[[dict[str, Any]], dict[str, Any] | Awaitable[dict[str, Any]]]


class StepRuntimeRegistry:
    """One executable unit per computed step type.

    Handlers take the step inputs and return an output map, or raise to fail.
    Human-review steps are completed by reviewers, never by a handler.
    """

    def __init__(self) -> None:
        self._handlers: dict[StepType, StepHandler] = {}

    def register(self, step_type: StepType, handler: StepHandler) -> None:
        if step_type == StepType.HUMAN_REVIEW:
            raise ValueError("Human review steps are completed by reviewer decisions")
        if not callable(handler):
            raise ValueError(f"Handler for '{step_type.value}' is not callable")

        if step_type in self._handlers:
            logger.warning("Replacing step handler", step_type=step_type.value)
        self._handlers[step_type] = handler
        logger.info(
            "Step handler registered",
            step_type=step_type.value,
            handler=getattr(handler, "__name__", repr(handler)),
            is_async=inspect.iscoroutinefunction(handler),
        )

    def get(self, step_type: StepType) -> StepHandler:
        try:
            return self._handlers[step_type]
        except KeyError:
            raise StepTypeNotRegisteredError(
                f"No step handler registered for step type '{step_type.value}'"
            ) from None

    @property
    def registered_types(self) -> list[StepType]:
        return list(self._handlers)

    def ensure_registered(self, definition: WorkflowDefinition) -> None:
        """Fail before an execution exists if any computed step has no handler."""
        missing = sorted(
            {
                step.step_type.value
                for step in definition.steps
                if not step.is_human_review and step.step_type not in self._handlers
            }
        )
        if missing:
            raise StepTypeNotRegisteredError(
                f"Workflow '{definition.workflow_id}' uses unregistered step types: "
                + ", ".join(missing)
            )


def normalize_outputs(result: Any) -> dict[str, Any]:
    """Coerce a handler return value into an output map."""
    if result is None:
        return {}
    if isinstance(result, dict):
        return result
    return {"result": result}
