"""Workflow Automation Engine Library.

This module provides the workflow execution engine for lead scoring and
model operations pipelines:
- Declarative workflow definitions validated as dependency graphs
- Frontier-based concurrent step execution with bounded retries
- Human review gates completed by external reviewer decisions
- Drift monitoring with single-flight retraining submission
- Schedule, event and drift-watch triggers
"""

from .config import WorkflowEngineSettings, configure_settings, get_settings
from .dag import (
    StepDefinition,
    StepType,
    TriggerDefinition,
    TriggerType,
    WorkflowDefinition,
)
from .drift import (
    DriftKind,
    DriftMonitor,
    DriftSeverity,
    DriftSignal,
    InMemoryDriftDataSource,
    ModelDriftProfile,
    RetrainingGuard,
    SignalStatus,
    TrackedFeature,
    classify_severity,
    register_score_function,
)
from .engine import ExecutionOrchestrator
from .exceptions import (
    DriftProfileNotFoundError,
    DuplicateRetrainingSuppressed,
    ExecutionNotFoundError,
    GraphError,
    IllegalTransitionError,
    ReviewRequestNotFoundError,
    ReviewTimeoutWarning,
    StepExecutionError,
    StepTypeNotRegisteredError,
    UnreachableStepError,
    WorkflowAutomationError,
    WorkflowNotFoundError,
)
from .executor import StepExecutor
from .monitoring import WorkflowHealthMonitor, WorkflowHealthReport
from .registry import StepRuntimeRegistry
from .retry import BackoffKind, RetryPolicy
from .review import REVIEWER_DECISIONS, ReviewGate, ReviewRequest, ReviewStatus
from .scheduler import DependencyScheduler
from .state import (
    Execution,
    ExecutionStatus,
    ExecutionStatusReport,
    StepRuntimeState,
    StepStatus,
)
from .steps import register_default_step_bodies
from .storage import InMemoryPersistence, PersistenceBackend, WorkflowDefinitionStore
from .triggers import TriggerDispatcher

__all__ = [
    # Configuration
    "WorkflowEngineSettings",
    "get_settings",
    "configure_settings",
    # Definitions
    "StepDefinition",
    "StepType",
    "TriggerDefinition",
    "TriggerType",
    "WorkflowDefinition",
    "BackoffKind",
    "RetryPolicy",
    # Runtime
    "DependencyScheduler",
    "Execution",
    "ExecutionOrchestrator",
    "ExecutionStatus",
    "ExecutionStatusReport",
    "StepExecutor",
    "StepRuntimeRegistry",
    "StepRuntimeState",
    "StepStatus",
    "register_default_step_bodies",
    # Persistence
    "InMemoryPersistence",
    "PersistenceBackend",
    "WorkflowDefinitionStore",
    # Human review
    "REVIEWER_DECISIONS",
    "ReviewGate",
    "ReviewRequest",
    "ReviewStatus",
    # Drift
    "DriftKind",
    "DriftMonitor",
    "DriftSeverity",
    "DriftSignal",
    "InMemoryDriftDataSource",
    "ModelDriftProfile",
    "RetrainingGuard",
    "SignalStatus",
    "TrackedFeature",
    "classify_severity",
    "register_score_function",
    # Triggers and monitoring
    "TriggerDispatcher",
    "WorkflowHealthMonitor",
    "WorkflowHealthReport",
    # Errors
    "DriftProfileNotFoundError",
    "DuplicateRetrainingSuppressed",
    "ExecutionNotFoundError",
    "GraphError",
    "IllegalTransitionError",
    "ReviewRequestNotFoundError",
    "ReviewTimeoutWarning",
    "StepExecutionError",
    "StepTypeNotRegisteredError",
    "UnreachableStepError",
    "WorkflowAutomationError",
    "WorkflowNotFoundError",
]
