"""Schedule, event and drift-watch triggers that submit executions."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from croniter import croniter

from .config import WorkflowEngineSettings, get_settings
from .dag import TriggerDefinition, TriggerType
from .drift import DriftMonitor
from .engine import ExecutionOrchestrator

logger = structlog.get_logger(__name__)


def next_run_time(trigger: TriggerDefinition, after: datetime) -> datetime:
    """Next time a schedule trigger fires after ``after``."""
    if trigger.cron_expression:
        return croniter(trigger.cron_expression, after).get_next(datetime)
    return after + timedelta(seconds=trigger.interval_seconds)


class TriggerDispatcher:
    """Fires schedule and event triggers and polls watched models for drift.

    The background loop is a timer with cancellation around the engine's
    synchronous entry points; every fire can also be driven directly.
    """

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        drift_monitor: DriftMonitor | None = None,
        settings: WorkflowEngineSettings | None = None,
    ):
        self.orchestrator = orchestrator
        self.definition_store = orchestrator.definition_store
        self.drift_monitor = drift_monitor
        self.settings = settings or get_settings()
        self.check_interval = self.settings.trigger_check_interval_seconds

        self._schedule_anchors: dict[tuple[str, int], datetime] = {}
        self._watched_models: dict[str, datetime | None] = {}
        self.running = False
        self._loop_task: asyncio.Task | None = None

        logger.info("Trigger dispatcher initialized", check_interval=self.check_interval)

    async def fire_due_schedules(self, now: datetime | None = None) -> list[str]:
        """Submit every schedule trigger that is due. Returns execution ids."""
        now = now or datetime.now(UTC)
        fired = []

        for definition in self.definition_store.find_by_trigger(TriggerType.SCHEDULE):
            for index, trigger in enumerate(definition.triggers):
                if trigger.trigger_type != TriggerType.SCHEDULE or not trigger.enabled:
                    continue

                key = (definition.workflow_id, index)
                # A schedule starts counting from the first time it is seen
                anchor = self._schedule_anchors.setdefault(key, now)
                due_at = next_run_time(trigger, anchor)
                if due_at > now:
                    continue

                self._schedule_anchors[key] = now
                try:
                    execution = await self.orchestrator.submit_execution(
                        definition.workflow_id,
                        inputs={**trigger.parameters, "scheduled_for": due_at.isoformat()},
                        trigger_type=TriggerType.SCHEDULE,
                    )
                except Exception as e:
                    logger.error(
                        "Failed to execute triggered workflow",
                        workflow_id=definition.workflow_id,
                        trigger_type=TriggerType.SCHEDULE.value,
                        error=str(e),
                    )
                    continue

                fired.append(execution.execution_id)
                logger.info(
                    "Schedule trigger fired",
                    workflow_id=definition.workflow_id,
                    execution_id=execution.execution_id,
                    scheduled_for=due_at.isoformat(),
                )

        return fired

    async def publish_event(self, event_data: dict[str, Any]) -> list[str]:
        """Submit one execution per workflow whose event trigger matches."""
        if "type" not in event_data:
            raise ValueError("Event must have a 'type' field")

        fired = []
        for definition in self.definition_store.find_by_trigger(TriggerType.EVENT):
            matching = [
                trigger
                for trigger in definition.find_triggers(TriggerType.EVENT)
                if trigger.matches_event(event_data)
            ]
            if not matching:
                continue

            trigger = matching[0]
            try:
                execution = await self.orchestrator.submit_execution(
                    definition.workflow_id,
                    inputs={**trigger.parameters, "trigger_event": dict(event_data)},
                    trigger_type=TriggerType.EVENT,
                )
            except Exception as e:
                logger.error(
                    "Failed to execute triggered workflow",
                    workflow_id=definition.workflow_id,
                    event_type=event_data["type"],
                    error=str(e),
                )
                continue
            fired.append(execution.execution_id)

        logger.info(
            "Event published",
            event_type=event_data["type"],
            triggered_executions=len(fired),
        )
        return fired

    def watch_model(self, model_id: str) -> None:
        if self.drift_monitor is None:
            raise RuntimeError("Drift watching requires a drift monitor")
        self.drift_monitor.get_profile(model_id)
        self._watched_models.setdefault(model_id, None)
        logger.info("Model drift watch added", model_id=model_id)

    def unwatch_model(self, model_id: str) -> None:
        self._watched_models.pop(model_id, None)

    @property
    def watched_models(self) -> list[str]:
        return list(self._watched_models)

    async def check_watched_models(self, now: datetime | None = None) -> list[str]:
        """Run drift detection for watched models whose interval elapsed."""
        now = now or datetime.now(UTC)
        interval = timedelta(seconds=self.settings.drift_check_interval_seconds)
        checked = []

        for model_id, last_checked in list(self._watched_models.items()):
            if last_checked is not None and now - last_checked < interval:
                continue
            self._watched_models[model_id] = now
            try:
                await self.drift_monitor.detect_drift(model_id)
            except Exception as e:
                logger.error("Scheduled drift check failed", model_id=model_id, error=str(e))
                continue
            checked.append(model_id)

        return checked

    async def start(self) -> None:
        """Start the trigger loop."""
        if self.running:
            return

        self.running = True
        self._loop_task = asyncio.create_task(self._trigger_loop())
        logger.info("Trigger dispatcher started")

    async def stop(self) -> None:
        """Stop the trigger loop."""
        self.running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Trigger dispatcher stopped")

    async def _trigger_loop(self) -> None:
        while self.running:
            try:
                now = datetime.now(UTC)
                await self.fire_due_schedules(now)
                if self.drift_monitor is not None:
                    await self.check_watched_models(now)

                await asyncio.sleep(self.check_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Trigger loop error", error=str(e))
                await asyncio.sleep(self.check_interval)
