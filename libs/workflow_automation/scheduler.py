"""Dependency scheduler computing the ready frontier of an execution."""

from collections.abc import Mapping

from .dag import WorkflowDefinition
from .state import StepRuntimeState, StepStatus


class DependencyScheduler:
    """Frontier computation over one workflow definition.

    The scheduler never mutates step state; it only answers which steps may
    run next and which can never run.
    """

    def __init__(self, definition: WorkflowDefinition):
        definition.validate_graph()
        self.definition = definition
        self._order = definition.step_ids
        self._topological = definition.topological_order()
        self._dependencies = {
            step.step_id: list(step.dependencies) for step in definition.steps
        }

    def ready_frontier(self, steps: Mapping[str, StepRuntimeState]) -> list[str]:
        """Pending steps whose dependencies are all completed, in definition order."""
        return [
            step_id
            for step_id in self._order
            if steps[step_id].status == StepStatus.PENDING
            and all(
                steps[dependency].status == StepStatus.COMPLETED
                for dependency in self._dependencies[step_id]
            )
        ]

    def find_unreachable(
        self, steps: Mapping[str, StepRuntimeState]
    ) -> dict[str, list[str]]:
        """Pending steps that can never run, with the dependencies blocking them.

        Walks in topological order so a whole chain behind a failed step is
        reported in one pass.
        """
        blocked = {
            step_id
            for step_id, state in steps.items()
            if state.status in (StepStatus.FAILED, StepStatus.SKIPPED)
        }
        unreachable: dict[str, list[str]] = {}

        for step_id in self._topological:
            if steps[step_id].status != StepStatus.PENDING:
                continue
            blocking = [dep for dep in self._dependencies[step_id] if dep in blocked]
            if blocking:
                unreachable[step_id] = blocking
                blocked.add(step_id)

        return unreachable

    @staticmethod
    def has_outstanding(steps: Mapping[str, StepRuntimeState]) -> bool:
        """True while any step is pending or running."""
        return any(not state.is_settled for state in steps.values())

    @classmethod
    def is_settled(cls, steps: Mapping[str, StepRuntimeState]) -> bool:
        return not cls.has_outstanding(steps)
