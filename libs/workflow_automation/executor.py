"""Step executor: runs one ready step to completion or permanent failure."""

import asyncio
import contextvars
import functools
import inspect
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import structlog
from opentelemetry.trace import Status, StatusCode

from libs.observability.tracing import get_tracer

from .config import WorkflowEngineSettings
from .dag import StepDefinition, WorkflowDefinition
from .exceptions import StepExecutionError
from .registry import StepHandler, StepRuntimeRegistry, normalize_outputs
from .review import ReviewGate, ReviewStatus
from .state import Execution, StepRuntimeState, StepStatus
from .storage import PersistenceBackend, persist_durably

logger = structlog.get_logger(__name__)

SleepFunction = Callable[[float], Awaitable[None]]


class StepExecutor:
    """Executes steps with retry, timeouts and human-review suspension.

    Step-body exceptions never leave ``execute``; they become step state.
    """

    def __init__(
        self,
        registry: StepRuntimeRegistry,
        review_gate: ReviewGate,
        persistence: PersistenceBackend,
        settings: WorkflowEngineSettings,
        sleep: SleepFunction = asyncio.sleep,
    ):
        self.registry = registry
        self.review_gate = review_gate
        self.persistence = persistence
        self.settings = settings
        self._sleep = sleep
        self._thread_pool = ThreadPoolExecutor(
            max_workers=settings.step_worker_threads,
            thread_name_prefix="workflow-step",
        )
        self._tracer = get_tracer(__name__)
        self._pending_updates: dict[tuple[str, str], asyncio.Task] = {}

    async def execute(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        step: StepDefinition,
    ) -> StepRuntimeState:
        if step.is_human_review:
            return await self._execute_review(execution, definition, step)
        return await self._execute_computed(execution, definition, step)

    async def _execute_computed(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        step: StepDefinition,
    ) -> StepRuntimeState:
        policy = definition.retry_policy or self.settings.default_retry_policy()
        handler = self.registry.get(step.step_type)

        while True:
            attempt = execution.steps[step.step_id].attempts + 1
            state = execution.transition_step(
                step.step_id,
                StepStatus.RUNNING,
                f"Step '{step.name}' started (attempt {attempt}/{policy.max_attempts})",
            )
            self._update_in_background(execution.execution_id, state)

            inputs = build_step_inputs(execution, definition, step)
            try:
                outputs = await self._run_attempt(execution, step, handler, inputs, attempt)
            except StepExecutionError as e:
                error = str(e)
                if policy.should_retry(attempt):
                    delay = policy.delay_for(attempt)
                    state = execution.transition_step(
                        step.step_id,
                        StepStatus.FAILED,
                        f"Step '{step.name}' attempt {attempt}/{policy.max_attempts} "
                        f"failed: {error}; retrying in {delay:.2f}s",
                        error=error,
                    )
                    self._update_in_background(execution.execution_id, state)
                    logger.warning(
                        "Step attempt failed, retrying",
                        execution_id=execution.execution_id,
                        step_id=step.step_id,
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        delay_seconds=delay,
                        error=error,
                    )

                    await self._sleep(delay)

                    state = execution.transition_step(
                        step.step_id,
                        StepStatus.PENDING,
                        f"Step '{step.name}' re-queued for attempt {attempt + 1}",
                    )
                    self._update_in_background(execution.execution_id, state)
                    continue

                state = execution.transition_step(
                    step.step_id,
                    StepStatus.FAILED,
                    f"Step '{step.name}' failed permanently after {attempt} "
                    f"attempt(s): {error}",
                    error=error,
                )
                execution.record_error(f"{step.name}: {error}")
                logger.error(
                    "Step failed permanently",
                    execution_id=execution.execution_id,
                    step_id=step.step_id,
                    attempts=attempt,
                    error=error,
                )
                await self._persist_terminal(execution.execution_id, state)
                return state

            state = execution.transition_step(
                step.step_id,
                StepStatus.COMPLETED,
                f"Step '{step.name}' completed (attempt {attempt})",
                outputs=outputs,
            )
            logger.info(
                "Step completed",
                execution_id=execution.execution_id,
                step_id=step.step_id,
                attempts=attempt,
                duration_seconds=state.duration_seconds,
            )
            await self._persist_terminal(execution.execution_id, state)
            return state

    async def _run_attempt(
        self,
        execution: Execution,
        step: StepDefinition,
        handler: StepHandler,
        inputs: dict[str, Any],
        attempt: int,
    ) -> dict[str, Any]:
        """Run the step body once, converting any failure to StepExecutionError."""
        span_name = f"workflow.step.{step.step_type.value}"
        with self._tracer.start_as_current_span(span_name) as span:
            span.set_attributes(
                {
                    "workflow.execution_id": execution.execution_id,
                    "workflow.step_id": step.step_id,
                    "workflow.step_attempt": attempt,
                }
            )
            try:
                if step.timeout_seconds:
                    result = await asyncio.wait_for(
                        self._invoke(handler, inputs), timeout=step.timeout_seconds
                    )
                else:
                    result = await self._invoke(handler, inputs)
            except TimeoutError as e:
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                raise StepExecutionError(
                    step.step_id,
                    attempt,
                    f"timed out after {step.timeout_seconds}s",
                    original_error=e,
                ) from e
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise StepExecutionError(
                    step.step_id,
                    attempt,
                    f"{type(e).__name__}: {e}",
                    original_error=e,
                ) from e

            span.set_status(Status(StatusCode.OK))
            return normalize_outputs(result)

    async def _invoke(self, handler: StepHandler, inputs: dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(inputs)

        # Synchronous bodies run in the pool with the caller's context vars
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        result = await loop.run_in_executor(
            self._thread_pool, functools.partial(context.run, handler, inputs)
        )
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _execute_review(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        step: StepDefinition,
    ) -> StepRuntimeState:
        state = execution.transition_step(
            step.step_id,
            StepStatus.RUNNING,
            f"Step '{step.name}' waiting for human review",
        )
        self._update_in_background(execution.execution_id, state)

        try:
            request = await self.review_gate.open_request(
                execution.execution_id,
                step,
                context={
                    "workflow_id": definition.workflow_id,
                    "step_name": step.name,
                    "parameters": dict(step.parameters),
                    "upstream_outputs": upstream_outputs(execution, step),
                },
            )
        except Exception as e:
            error = f"Could not open review request: {e}"
            state = execution.transition_step(
                step.step_id, StepStatus.FAILED, f"Step '{step.name}' failed: {error}", error=error
            )
            execution.record_error(f"{step.name}: {error}")
            await self._persist_terminal(execution.execution_id, state)
            return state

        execution.attach_review(step.step_id, request.review_id)
        execution.append_log(
            f"Review request {request.review_id} for step '{step.name}' "
            f"assigned to {request.reviewer_id}"
        )

        decided = await self.review_gate.wait_for_decision(request.review_id)

        if decided.status == ReviewStatus.APPROVED:
            state = execution.transition_step(
                step.step_id,
                StepStatus.COMPLETED,
                f"Step '{step.name}' approved by {decided.decided_by}",
                outputs=decided.changes,
            )
        else:
            # Rejections are final for this execution; resubmission starts a new one
            error = f"Review {decided.status.value} by {decided.decided_by}"
            if decided.comments:
                error += f": {decided.comments}"
            state = execution.transition_step(
                step.step_id,
                StepStatus.FAILED,
                f"Step '{step.name}' {decided.status.value} by reviewer "
                f"{decided.decided_by}; not retried",
                error=error,
            )
            execution.record_error(f"{step.name}: {error}")

        logger.info(
            "Review step resolved",
            execution_id=execution.execution_id,
            step_id=step.step_id,
            review_id=request.review_id,
            decision=decided.status.value,
        )
        await self._persist_terminal(execution.execution_id, state)
        return state

    def _update_in_background(self, execution_id: str, state: StepRuntimeState) -> None:
        """Fire-and-forget persistence for intermediate step states.

        Updates for one step are chained so they land in transition order;
        ``_persist_terminal`` drains the chain before its own write.
        """
        key = (execution_id, state.step_id)
        previous = self._pending_updates.get(key)

        async def update() -> None:
            if previous is not None:
                await asyncio.wait([previous])
            try:
                await self.persistence.update_step_state(execution_id, state.step_id, state)
            except Exception as e:
                logger.warning(
                    "Intermediate step state not persisted",
                    execution_id=execution_id,
                    step_id=state.step_id,
                    status=state.status.value,
                    error=str(e),
                )

        task = asyncio.create_task(update())
        self._pending_updates[key] = task

        def forget(finished: asyncio.Task) -> None:
            if self._pending_updates.get(key) is finished:
                del self._pending_updates[key]

        task.add_done_callback(forget)

    async def _persist_terminal(self, execution_id: str, state: StepRuntimeState) -> None:
        pending = self._pending_updates.pop((execution_id, state.step_id), None)
        if pending is not None:
            await asyncio.wait([pending])
        await persist_durably(
            lambda: self.persistence.update_step_state(execution_id, state.step_id, state),
            attempts=self.settings.persistence_retry_attempts,
            delay_seconds=self.settings.persistence_retry_delay_seconds,
            sleep=self._sleep,
            execution_id=execution_id,
            step_id=state.step_id,
            status=state.status.value,
        )

    def shutdown(self) -> None:
        self._thread_pool.shutdown(wait=False)


def upstream_outputs(execution: Execution, step: StepDefinition) -> dict[str, dict[str, Any]]:
    return {
        dependency: dict(execution.steps[dependency].outputs)
        for dependency in step.dependencies
        if execution.steps[dependency].status == StepStatus.COMPLETED
    }


def build_step_inputs(
    execution: Execution, definition: WorkflowDefinition, step: StepDefinition
) -> dict[str, Any]:
    """Execution inputs overlaid with step parameters and upstream outputs."""
    return {
        **execution.inputs,
        **step.parameters,
        "workflow_id": definition.workflow_id,
        "execution_id": execution.execution_id,
        "step_id": step.step_id,
        "upstream_outputs": upstream_outputs(execution, step),
    }
