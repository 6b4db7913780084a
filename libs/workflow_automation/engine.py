"""Execution orchestrator driving the frontier/dispatch/join loop."""

import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from libs.observability.logging import set_correlation_id
from libs.observability.tracing import add_span_attributes, trace_function

from .config import WorkflowEngineSettings, get_settings
from .dag import StepDefinition, TriggerType, WorkflowDefinition
from .exceptions import ExecutionNotFoundError, UnreachableStepError
from .executor import SleepFunction, StepExecutor
from .registry import StepRuntimeRegistry
from .review import ReviewGate, ReviewRequest, ReviewStatus
from .scheduler import DependencyScheduler
from .state import Execution, ExecutionStatus, ExecutionStatusReport, StepStatus
from .storage import PersistenceBackend, WorkflowDefinitionStore, persist_durably

logger = structlog.get_logger(__name__)

CompletionListener = Callable[[Execution], Awaitable[None] | None]
PruneListener = Callable[[str], None]


class ExecutionOrchestrator:
    """Facade that accepts submissions and runs executions to a terminal status.

    Each execution runs in its own asyncio task. Within an execution the
    ready frontier is dispatched concurrently and the whole batch is joined
    before the next frontier is computed.
    """

    def __init__(
        self,
        definition_store: WorkflowDefinitionStore,
        registry: StepRuntimeRegistry,
        persistence: PersistenceBackend,
        review_gate: ReviewGate | None = None,
        settings: WorkflowEngineSettings | None = None,
        sleep: SleepFunction = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.definition_store = definition_store
        self.registry = registry
        self.persistence = persistence
        self.review_gate = review_gate or ReviewGate(persistence, self.settings)
        self.executor = StepExecutor(
            registry, self.review_gate, persistence, self.settings, sleep=sleep
        )
        self._sleep = sleep

        self._executions: dict[str, Execution] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._cancel_requested: set[str] = set()
        self._finished: deque[str] = deque()
        self._completion_listeners: list[CompletionListener] = []
        self._prune_listeners: list[PruneListener] = [self.review_gate.forget_execution]

        logger.info(
            "Execution orchestrator initialized",
            step_worker_threads=self.settings.step_worker_threads,
            max_retained_executions=self.settings.max_retained_executions,
        )

    def add_completion_listener(self, listener: CompletionListener) -> None:
        self._completion_listeners.append(listener)

    def add_prune_listener(self, listener: PruneListener) -> None:
        """Called with the id of each finished execution dropped from memory."""
        self._prune_listeners.append(listener)

    @trace_function("workflow.submit_execution")
    async def submit_execution(
        self,
        workflow_id: str,
        inputs: dict[str, Any] | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> Execution:
        """Create an execution with every step pending and start running it.

        Returns immediately with a snapshot; use ``wait_for_completion`` or
        ``get_execution_status`` to follow progress.
        """
        definition = await self.definition_store.get(workflow_id)
        scheduler = DependencyScheduler(definition)
        self.registry.ensure_registered(definition)

        execution = Execution.create(definition, inputs, trigger_type)
        execution_id = execution.execution_id
        self._executions[execution_id] = execution
        self._done[execution_id] = asyncio.Event()

        try:
            await self.persistence.save_execution(execution)
        except Exception as e:
            logger.warning(
                "Initial execution record not persisted",
                execution_id=execution_id,
                error=str(e),
            )

        self._running[execution_id] = asyncio.create_task(
            self._run(execution, definition, scheduler),
            name=f"workflow-execution-{execution_id}",
        )

        logger.info(
            "Workflow execution submitted",
            workflow_id=workflow_id,
            execution_id=execution_id,
            trigger_type=trigger_type.value,
            steps=len(definition.steps),
        )
        return execution.snapshot()

    async def _run(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        scheduler: DependencyScheduler,
    ) -> None:
        set_correlation_id(execution.execution_id)
        loop = asyncio.get_running_loop()
        deadline = (
            loop.time() + definition.timeout_seconds if definition.timeout_seconds else None
        )
        passes = 0
        stop_reason: ExecutionStatus | None = None

        try:
            while True:
                steps = execution.steps_snapshot()
                frontier = scheduler.ready_frontier(steps)

                if not frontier:
                    unreachable = scheduler.find_unreachable(steps)
                    if not unreachable:
                        break
                    await self._skip_unreachable(execution, unreachable)
                    continue

                stop_reason = self._stop_reason(execution, deadline, loop.time())
                if stop_reason is not None:
                    await self._skip_remaining(execution, stop_reason)
                    break

                passes += 1
                await self._dispatch_frontier(execution, definition, frontier, passes)

            await self._finalize(execution, stop_reason)

        except asyncio.CancelledError:
            if not execution.is_terminal:
                execution.finish(
                    ExecutionStatus.CANCELLED, "Execution cancelled by engine shutdown"
                )
            raise

        except Exception as error:
            logger.exception(
                "Workflow execution error",
                execution_id=execution.execution_id,
                error=str(error),
            )
            if not execution.is_terminal:
                execution.record_error(f"Engine error: {error}")
                execution.finish(ExecutionStatus.FAILED, f"Execution failed: {error}")
            await self._save_final(execution)

        finally:
            self._running.pop(execution.execution_id, None)
            self._cancel_requested.discard(execution.execution_id)
            if execution.is_terminal:
                await self.review_gate.cancel_pending(
                    execution.execution_id, f"Execution {execution.status.value}"
                )
                await self._notify_listeners(execution)
            self._done[execution.execution_id].set()
            self._finished.append(execution.execution_id)
            self._prune_finished()

    @trace_function("workflow.dispatch_frontier")
    async def _dispatch_frontier(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        frontier: list[str],
        scheduler_pass: int,
    ) -> None:
        add_span_attributes(
            **{
                "workflow.id": definition.workflow_id,
                "workflow.execution_id": execution.execution_id,
                "workflow.frontier_size": len(frontier),
                "workflow.scheduler_pass": scheduler_pass,
            }
        )
        logger.info(
            "Dispatching frontier",
            execution_id=execution.execution_id,
            frontier=frontier,
            scheduler_pass=scheduler_pass,
        )
        await asyncio.gather(
            *(
                self._execute_step(execution, definition, definition.get_step(step_id))
                for step_id in frontier
            )
        )

    async def _execute_step(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        step: StepDefinition,
    ) -> None:
        try:
            await self.executor.execute(execution, definition, step)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            # Engine faults outside the step body still end as step state
            logger.exception(
                "Step dispatch error",
                execution_id=execution.execution_id,
                step_id=step.step_id,
            )
            message = f"{type(error).__name__}: {error}"
            if execution.steps[step.step_id].status == StepStatus.PENDING:
                execution.transition_step(
                    step.step_id, StepStatus.RUNNING, f"Step '{step.name}' dispatched"
                )
            if execution.steps[step.step_id].status == StepStatus.RUNNING:
                execution.transition_step(
                    step.step_id,
                    StepStatus.FAILED,
                    f"Step '{step.name}' failed permanently: {message}",
                    error=message,
                )
                execution.record_error(f"{step.name}: {message}")

    async def _skip_unreachable(
        self, execution: Execution, unreachable: dict[str, list[str]]
    ) -> None:
        for step_id, blocking in unreachable.items():
            reason = UnreachableStepError(step_id, blocking)
            state = execution.transition_step(
                step_id,
                StepStatus.SKIPPED,
                f"Step '{execution.steps[step_id].name}' skipped: {reason}",
                error=str(reason),
            )
            logger.info(
                "Step skipped",
                execution_id=execution.execution_id,
                step_id=step_id,
                blocking_steps=blocking,
            )
            await self._persist_step(execution.execution_id, state)

    def _stop_reason(
        self, execution: Execution, deadline: float | None, now: float
    ) -> ExecutionStatus | None:
        if execution.execution_id in self._cancel_requested:
            return ExecutionStatus.CANCELLED
        if deadline is not None and now >= deadline:
            return ExecutionStatus.FAILED
        return None

    async def _skip_remaining(self, execution: Execution, reason: ExecutionStatus) -> None:
        if reason == ExecutionStatus.CANCELLED:
            cause = "execution cancelled"
        else:
            cause = "execution timed out"
            execution.record_error("Execution exceeded its overall timeout")

        for step_id, state in execution.steps_snapshot().items():
            if state.status != StepStatus.PENDING:
                continue
            skipped = execution.transition_step(
                step_id,
                StepStatus.SKIPPED,
                f"Step '{state.name}' skipped: {cause}",
                error=cause,
            )
            await self._persist_step(execution.execution_id, skipped)

        execution.append_log(f"Stopping execution: {cause}")

    async def _finalize(
        self, execution: Execution, stop_reason: ExecutionStatus | None
    ) -> None:
        steps = execution.steps_snapshot().values()
        completed = sum(1 for state in steps if state.status == StepStatus.COMPLETED)

        if stop_reason is not None:
            status = stop_reason
        elif not all(
            state.status == StepStatus.COMPLETED
            for state in steps
            if state.status != StepStatus.SKIPPED
        ):
            status = ExecutionStatus.FAILED
        else:
            status = ExecutionStatus.COMPLETED

        execution.finish(
            status,
            f"Execution {status.value}: {completed}/{len(steps)} steps completed",
        )
        logger.info(
            "Workflow execution finished",
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            status=status.value,
            completed_steps=completed,
            total_steps=len(steps),
            duration_seconds=execution.duration_seconds,
        )
        await self._save_final(execution)

    async def _persist_step(self, execution_id: str, state: Any) -> None:
        await persist_durably(
            lambda: self.persistence.update_step_state(execution_id, state.step_id, state),
            attempts=self.settings.persistence_retry_attempts,
            delay_seconds=self.settings.persistence_retry_delay_seconds,
            sleep=self._sleep,
            execution_id=execution_id,
            step_id=state.step_id,
        )

    async def _save_final(self, execution: Execution) -> None:
        await persist_durably(
            lambda: self.persistence.save_execution(execution),
            attempts=self.settings.persistence_retry_attempts,
            delay_seconds=self.settings.persistence_retry_delay_seconds,
            sleep=self._sleep,
            execution_id=execution.execution_id,
        )

    async def _notify_listeners(self, execution: Execution) -> None:
        snapshot = execution.snapshot()
        for listener in self._completion_listeners:
            try:
                result = listener(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Completion listener failed",
                    execution_id=execution.execution_id,
                    error=str(e),
                )

    def _prune_finished(self) -> None:
        """Drop the oldest finished executions beyond the retention limit."""
        while len(self._finished) > self.settings.max_retained_executions:
            execution_id = self._finished.popleft()
            self._executions.pop(execution_id, None)
            self._done.pop(execution_id, None)
            for listener in self._prune_listeners:
                listener(execution_id)
            logger.debug("Finished execution pruned", execution_id=execution_id)

    def _get(self, execution_id: str) -> Execution:
        try:
            return self._executions[execution_id]
        except KeyError:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found") from None

    def get_execution(self, execution_id: str) -> Execution:
        """Consistent snapshot of an execution."""
        return self._get(execution_id).snapshot()

    def get_execution_status(self, execution_id: str) -> ExecutionStatusReport:
        return ExecutionStatusReport.from_execution(self.get_execution(execution_id))

    def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 100,
    ) -> list[Execution]:
        snapshots = [
            execution.snapshot()
            for execution in self._executions.values()
            if (workflow_id is None or execution.workflow_id == workflow_id)
            and (status is None or execution.status == status)
        ]
        snapshots.sort(key=lambda e: e.started_at, reverse=True)
        return snapshots[:limit]

    def active_execution_ids(self, workflow_id: str | None = None) -> list[str]:
        return [
            execution_id
            for execution_id, execution in self._executions.items()
            if not execution.is_terminal
            and (workflow_id is None or execution.workflow_id == workflow_id)
        ]

    async def wait_for_completion(
        self, execution_id: str, timeout: float | None = None
    ) -> Execution:
        self._get(execution_id)
        await asyncio.wait_for(self._done[execution_id].wait(), timeout=timeout)
        return self.get_execution(execution_id)

    def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation; honored before the next frontier dispatch.

        Steps already running, including review steps, settle first.
        """
        execution = self._get(execution_id)
        if execution.is_terminal or execution_id in self._cancel_requested:
            return False

        self._cancel_requested.add(execution_id)
        execution.append_log("Cancellation requested")
        logger.info("Workflow cancellation requested", execution_id=execution_id)
        return True

    async def submit_review_decision(
        self,
        review_id: str,
        decision: ReviewStatus | str,
        reviewer_id: str,
        comments: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ReviewRequest:
        return await self.review_gate.submit_decision(
            review_id,
            ReviewStatus(decision),
            reviewer_id,
            comments=comments,
            changes=changes,
        )

    async def shutdown(self) -> None:
        """Cancel running executions and release the step worker pool."""
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.executor.shutdown()
        logger.info("Execution orchestrator shut down", cancelled_executions=len(tasks))
