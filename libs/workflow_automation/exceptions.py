"""Exceptions raised by the workflow automation engine."""


class WorkflowAutomationError(Exception):
    """Base exception for workflow automation operations."""

    pass


class GraphError(WorkflowAutomationError):
    """Exception raised when a workflow dependency graph is invalid."""

    def __init__(self, workflow_id: str, issues: list[str]):
        self.workflow_id = workflow_id
        self.issues = issues
        super().__init__(
            f"Workflow '{workflow_id}' has an invalid dependency graph: "
            + "; ".join(issues)
        )


class StepExecutionError(WorkflowAutomationError):
    """Exception raised when a step body fails."""

    def __init__(
        self,
        step_id: str,
        attempt: int,
        message: str,
        original_error: Exception | None = None,
    ):
        self.step_id = step_id
        self.attempt = attempt
        self.original_error = original_error
        super().__init__(message)


class UnreachableStepError(WorkflowAutomationError):
    """A step can never run because an ancestor did not complete."""

    def __init__(self, step_id: str, blocking_steps: list[str]):
        self.step_id = step_id
        self.blocking_steps = blocking_steps
        super().__init__(
            f"Step '{step_id}' is unreachable: dependencies "
            f"{', '.join(blocking_steps)} did not complete"
        )


class IllegalTransitionError(WorkflowAutomationError):
    """Exception raised for a state change outside the legal transition table."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition: {current} -> {target}")


class WorkflowNotFoundError(WorkflowAutomationError):
    """Exception raised when a workflow definition is not found."""

    pass


class ExecutionNotFoundError(WorkflowAutomationError):
    """Exception raised when an execution is not found."""

    pass


class ReviewRequestNotFoundError(WorkflowAutomationError):
    """Exception raised when a review request is not found."""

    pass


class StepTypeNotRegisteredError(WorkflowAutomationError):
    """Exception raised when no runtime unit is registered for a step type."""

    pass


class DriftProfileNotFoundError(WorkflowAutomationError):
    """Exception raised when a model has no drift monitoring profile."""

    pass


class ReviewTimeoutWarning(UserWarning):
    """A pending review request is past its deadline."""

    def __init__(
        self, review_id: str, step_id: str, reviewer_id: str, overdue_seconds: float
    ):
        self.review_id = review_id
        self.step_id = step_id
        self.reviewer_id = reviewer_id
        self.overdue_seconds = overdue_seconds
        super().__init__(
            f"Review '{review_id}' for step '{step_id}' assigned to "
            f"'{reviewer_id}' is overdue by {overdue_seconds:.0f}s"
        )


class DuplicateRetrainingSuppressed(UserWarning):
    """A drift-triggered retraining was skipped because one is already active."""

    def __init__(self, model_id: str, active_execution_id: str | None):
        self.model_id = model_id
        self.active_execution_id = active_execution_id
        super().__init__(
            f"Retraining for model '{model_id}' suppressed: execution "
            f"'{active_execution_id}' is still active"
        )
