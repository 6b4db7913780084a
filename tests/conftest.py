"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio

from libs.workflow_automation import (
    ExecutionOrchestrator,
    InMemoryPersistence,
    StepRuntimeRegistry,
    WorkflowDefinitionStore,
    WorkflowEngineSettings,
    register_default_step_bodies,
)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    """Engine settings isolated from the environment."""
    return WorkflowEngineSettings(
        _env_file=None,
        persistence_retry_delay_seconds=0.0,
        configure_logging=False,
        start_trigger_loop=False,
    )


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def store(persistence, settings):
    return WorkflowDefinitionStore(persistence, settings)


@pytest.fixture
def registry():
    """Registry with the default step bodies."""
    return register_default_step_bodies(StepRuntimeRegistry())


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest_asyncio.fixture
async def orchestrator(store, registry, persistence, settings, fake_sleep):
    """Orchestrator whose retry backoff never really sleeps."""
    orchestrator = ExecutionOrchestrator(
        store, registry, persistence, settings=settings, sleep=fake_sleep
    )
    yield orchestrator
    await orchestrator.shutdown()
