"""Engine wiring shared by the API routes."""

from dataclasses import dataclass

import structlog
from fastapi import Request

from libs.workflow_automation import (
    DriftMonitor,
    ExecutionOrchestrator,
    InMemoryDriftDataSource,
    InMemoryPersistence,
    PersistenceBackend,
    ReviewGate,
    StepRuntimeRegistry,
    TriggerDispatcher,
    WorkflowDefinitionStore,
    WorkflowEngineSettings,
    WorkflowHealthMonitor,
    register_default_step_bodies,
)
from libs.workflow_automation.drift import DriftDataSource

logger = structlog.get_logger(__name__)


@dataclass
class WorkflowEngine:
    """Every engine component the service exposes."""

    settings: WorkflowEngineSettings
    persistence: PersistenceBackend
    definition_store: WorkflowDefinitionStore
    registry: StepRuntimeRegistry
    review_gate: ReviewGate
    orchestrator: ExecutionOrchestrator
    drift_data_source: DriftDataSource
    drift_monitor: DriftMonitor
    trigger_dispatcher: TriggerDispatcher
    health_monitor: WorkflowHealthMonitor

    async def shutdown(self) -> None:
        await self.trigger_dispatcher.stop()
        await self.orchestrator.shutdown()


def build_engine(
    settings: WorkflowEngineSettings,
    persistence: PersistenceBackend | None = None,
    drift_data_source: DriftDataSource | None = None,
) -> WorkflowEngine:
    """Assemble the engine with the default step bodies registered."""
    persistence = persistence or InMemoryPersistence()
    drift_data_source = drift_data_source or InMemoryDriftDataSource()

    definition_store = WorkflowDefinitionStore(persistence, settings)
    registry = register_default_step_bodies(StepRuntimeRegistry())
    review_gate = ReviewGate(persistence, settings)
    orchestrator = ExecutionOrchestrator(
        definition_store,
        registry,
        persistence,
        review_gate=review_gate,
        settings=settings,
    )
    drift_monitor = DriftMonitor(orchestrator, drift_data_source, persistence, settings)
    trigger_dispatcher = TriggerDispatcher(orchestrator, drift_monitor, settings)

    logger.info(
        "Workflow engine assembled",
        persistence=type(persistence).__name__,
        step_types=[step_type.value for step_type in registry.registered_types],
    )
    return WorkflowEngine(
        settings=settings,
        persistence=persistence,
        definition_store=definition_store,
        registry=registry,
        review_gate=review_gate,
        orchestrator=orchestrator,
        drift_data_source=drift_data_source,
        drift_monitor=drift_monitor,
        trigger_dispatcher=trigger_dispatcher,
        health_monitor=WorkflowHealthMonitor(orchestrator),
    )


def get_engine(request: Request) -> WorkflowEngine:
    """Dependency to get the engine built by the application lifespan."""
    return request.app.state.engine
