"""Drift monitoring and drift-triggered retraining."""

import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

import numpy as np
import pandas as pd
import structlog
from pydantic import BaseModel, ConfigDict, Field
from scipy import stats

from libs.observability.tracing import trace_function

from .config import WorkflowEngineSettings, get_settings
from .dag import TriggerType
from .engine import ExecutionOrchestrator
from .exceptions import (
    DriftProfileNotFoundError,
    DuplicateRetrainingSuppressed,
    IllegalTransitionError,
    WorkflowNotFoundError,
)
from .state import Execution
from .storage import PersistenceBackend

logger = structlog.get_logger(__name__)


class DriftKind(str, Enum):
    """Kind of drift a tracked feature is scored for."""

    STATISTICAL = "statistical"
    CONCEPT = "concept"
    DATA_QUALITY = "data_quality"


class DriftSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SignalStatus(str, Enum):
    """Drift signal status, changed only by human action."""

    DETECTED = "detected"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"


SIGNAL_TRANSITIONS: dict[SignalStatus, frozenset[SignalStatus]] = {
    SignalStatus.DETECTED: frozenset(
        {SignalStatus.INVESTIGATING, SignalStatus.RESOLVED, SignalStatus.IGNORED}
    ),
    SignalStatus.INVESTIGATING: frozenset({SignalStatus.RESOLVED, SignalStatus.IGNORED}),
    SignalStatus.RESOLVED: frozenset(),
    SignalStatus.IGNORED: frozenset(),
}


def classify_severity(score: float, threshold: float) -> DriftSeverity:
    """Severity from the score/threshold ratio."""
    if threshold <= 0:
        raise ValueError("Drift threshold must be positive")
    ratio = score / threshold
    if ratio > 1.5:
        return DriftSeverity.CRITICAL
    if ratio > 1.2:
        return DriftSeverity.HIGH
    if ratio > 1.0:
        return DriftSeverity.MEDIUM
    return DriftSeverity.LOW


def drift_recommendations(severity: DriftSeverity, kind: DriftKind) -> list[str]:
    if severity == DriftSeverity.LOW:
        return ["Continue monitoring"]

    recommendations = []
    if severity in (DriftSeverity.HIGH, DriftSeverity.CRITICAL):
        recommendations.append("Retrain model with recent data")
    if kind == DriftKind.DATA_QUALITY:
        recommendations.append("Check upstream data pipeline for missing or malformed values")
    else:
        recommendations.append("Investigate feature distribution changes")
    recommendations.append("Consider feature engineering updates")
    return recommendations


class DriftSignal(BaseModel):
    """Evidence that one feature of a model drifted."""

    model_config = ConfigDict(protected_namespaces=())

    signal_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    model_id: str = Field(description="Model identifier")
    feature_name: str = Field(description="Feature name")
    drift_kind: DriftKind = Field(description="Drift kind")
    score: float = Field(description="Drift score")
    threshold: float = Field(description="Per-model threshold")
    severity: DriftSeverity = Field(description="Derived from score/threshold")
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: SignalStatus = Field(default=SignalStatus.DETECTED)
    details: dict[str, Any] = Field(default_factory=dict)
    recommendations: list[str] = Field(default_factory=list)
    status_updated_by: str | None = Field(default=None)

    def update_status(self, status: SignalStatus, actor: str) -> None:
        if status not in SIGNAL_TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"drift signal '{self.signal_id}'", self.status.value, status.value
            )
        self.status = status
        self.status_updated_by = actor


class TrackedFeature(BaseModel):
    name: str = Field(description="Column name in baseline and recent data")
    drift_kind: DriftKind = Field(default=DriftKind.STATISTICAL)
    method: str = Field(default="psi", description="Registered score function name")


class ModelDriftProfile(BaseModel):
    """Drift monitoring configuration for one model."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str = Field(description="Model identifier")
    threshold: float = Field(gt=0, description="Score above which a feature drifted")
    features: list[TrackedFeature] = Field(min_length=1)
    retraining_workflow_id: str | None = Field(
        default=None, description="Retraining workflow; else the drift trigger lookup"
    )
    report_all_features: bool | None = Field(
        default=None, description="Overrides the engine default when set"
    )
    min_samples: int = Field(default=10, ge=1)


class RetrainingPriority(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"


class RetrainingRequest(BaseModel):
    """Record of a retraining execution requested for a model."""

    model_config = ConfigDict(protected_namespaces=())

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    model_id: str
    workflow_id: str
    execution_id: str
    trigger_type: TriggerType
    reason: str
    priority: RetrainingPriority
    signal_ids: list[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DriftDataSource(Protocol):
    """Supplies baseline and recent observations for a model."""

    def get_baseline(self, model_id: str) -> pd.DataFrame: ...

    def get_recent(self, model_id: str) -> pd.DataFrame: ...


class InMemoryDriftDataSource:
    def __init__(self) -> None:
        self._baseline: dict[str, pd.DataFrame] = {}
        self._recent: dict[str, pd.DataFrame] = {}

    def set_baseline(self, model_id: str, data: pd.DataFrame) -> None:
        self._baseline[model_id] = data

    def set_recent(self, model_id: str, data: pd.DataFrame) -> None:
        self._recent[model_id] = data

    def get_baseline(self, model_id: str) -> pd.DataFrame:
        return self._baseline.get(model_id, pd.DataFrame())

    def get_recent(self, model_id: str) -> pd.DataFrame:
        return self._recent.get(model_id, pd.DataFrame())


ScoreFunction = Callable[[pd.Series, pd.Series], float]


def population_stability_index(
    reference: pd.Series, current: pd.Series, bins: int = 10
) -> float:
    """PSI over baseline quantile bins, or over categories for object data."""
    ref = reference.dropna()
    cur = current.dropna()
    if ref.empty or cur.empty:
        return 0.0

    if ref.dtype == "object" or isinstance(ref.dtype, pd.CategoricalDtype):
        ref_counts = ref.value_counts(normalize=True)
        cur_counts = cur.value_counts(normalize=True)
        categories = ref_counts.index.union(cur_counts.index)
        ref_pct = ref_counts.reindex(categories, fill_value=0.0).to_numpy(dtype=float)
        cur_pct = cur_counts.reindex(categories, fill_value=0.0).to_numpy(dtype=float)
    else:
        ref_values = ref.to_numpy(dtype=float)
        cur_values = cur.to_numpy(dtype=float)
        quantiles = np.quantile(ref_values, np.linspace(0, 1, bins + 1))
        edges = np.unique(quantiles[1:-1])
        ref_pct = np.bincount(
            np.searchsorted(edges, ref_values, side="right"), minlength=len(edges) + 1
        ) / len(ref_values)
        cur_pct = np.bincount(
            np.searchsorted(edges, cur_values, side="right"), minlength=len(edges) + 1
        ) / len(cur_values)

    # Avoid log(0) for empty bins
    ref_pct = np.clip(ref_pct, 1e-6, None)
    cur_pct = np.clip(cur_pct, 1e-6, None)
    return float(np.sum((cur_pct - ref_pct) * np.log(cur_pct / ref_pct)))


def ks_statistic(reference: pd.Series, current: pd.Series) -> float:
    ref = reference.dropna()
    cur = current.dropna()
    if ref.empty or cur.empty:
        return 0.0
    return float(stats.ks_2samp(ref.to_numpy(dtype=float), cur.to_numpy(dtype=float)).statistic)


def wasserstein_score(reference: pd.Series, current: pd.Series) -> float:
    """Earth mover's distance scaled by the baseline standard deviation."""
    ref = reference.dropna().to_numpy(dtype=float)
    cur = current.dropna().to_numpy(dtype=float)
    if ref.size == 0 or cur.size == 0:
        return 0.0
    scale = float(np.std(ref)) or 1.0
    return float(stats.wasserstein_distance(ref, cur)) / scale


def missing_rate_change(reference: pd.Series, current: pd.Series) -> float:
    if reference.empty or current.empty:
        return 0.0
    return float(abs(current.isna().mean() - reference.isna().mean()))


SCORE_FUNCTIONS: dict[str, ScoreFunction] = {
    "psi": population_stability_index,
    "ks": ks_statistic,
    "wasserstein": wasserstein_score,
    "missing_rate": missing_rate_change,
}


def register_score_function(name: str, func: ScoreFunction) -> None:
    SCORE_FUNCTIONS[name] = func


class RetrainingGuard:
    """At most one active retraining execution per model.

    ``try_acquire`` is an atomic check-and-set; the slot stays held until the
    bound execution finishes or the submission fails.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, str | None] = {}

    def try_acquire(self, model_id: str) -> bool:
        with self._lock:
            if model_id in self._active:
                return False
            self._active[model_id] = None
            return True

    def bind(self, model_id: str, execution_id: str) -> None:
        with self._lock:
            self._active[model_id] = execution_id

    def release(self, model_id: str) -> None:
        with self._lock:
            self._active.pop(model_id, None)

    def release_execution(self, execution_id: str) -> str | None:
        with self._lock:
            for model_id, active_id in self._active.items():
                if active_id == execution_id:
                    del self._active[model_id]
                    return model_id
        return None

    def active_execution(self, model_id: str) -> str | None:
        with self._lock:
            return self._active.get(model_id)

    def is_active(self, model_id: str) -> bool:
        with self._lock:
            return model_id in self._active


class DriftMonitor:
    """Scores tracked features and submits retraining on critical drift."""

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        data_source: DriftDataSource,
        persistence: PersistenceBackend,
        settings: WorkflowEngineSettings | None = None,
    ):
        self.orchestrator = orchestrator
        self.data_source = data_source
        self.persistence = persistence
        self.settings = settings or get_settings()
        self.guard = RetrainingGuard()

        self._profiles: dict[str, ModelDriftProfile] = {}
        self._signals: dict[str, DriftSignal] = {}
        retained = self.settings.max_retained_executions
        self.retraining_requests: deque[RetrainingRequest] = deque(maxlen=retained)
        self.suppressed: deque[DuplicateRetrainingSuppressed] = deque(maxlen=retained)

        orchestrator.add_completion_listener(self._on_execution_finished)

    def register_profile(self, profile: ModelDriftProfile) -> None:
        for feature in profile.features:
            if feature.method not in SCORE_FUNCTIONS:
                raise ValueError(
                    f"Unknown drift score method '{feature.method}' for feature "
                    f"'{feature.name}'"
                )
        self._profiles[profile.model_id] = profile
        logger.info(
            "Drift profile registered",
            model_id=profile.model_id,
            threshold=profile.threshold,
            features=[feature.name for feature in profile.features],
        )

    def get_profile(self, model_id: str) -> ModelDriftProfile:
        try:
            return self._profiles[model_id]
        except KeyError:
            raise DriftProfileNotFoundError(
                f"No drift profile registered for model '{model_id}'"
            ) from None

    @trace_function("workflow.detect_drift")
    async def detect_drift(self, model_id: str) -> list[DriftSignal]:
        """Score every tracked feature and return the emitted signals.

        Any critical signal submits the model's retraining workflow.
        """
        profile = self.get_profile(model_id)
        baseline = self.data_source.get_baseline(model_id)
        recent = self.data_source.get_recent(model_id)
        report_all = (
            profile.report_all_features
            if profile.report_all_features is not None
            else self.settings.drift_report_all_features
        )

        signals = []
        for feature in profile.features:
            if feature.name not in baseline.columns or feature.name not in recent.columns:
                logger.warning(
                    "Tracked feature missing from drift data",
                    model_id=model_id,
                    feature=feature.name,
                )
                continue

            reference_values = baseline[feature.name]
            current_values = recent[feature.name]
            sample_count = min(len(reference_values), len(current_values))
            if sample_count < profile.min_samples:
                logger.warning(
                    "Insufficient samples for drift scoring",
                    model_id=model_id,
                    feature=feature.name,
                    baseline_samples=len(reference_values),
                    recent_samples=len(current_values),
                )
                continue

            score = SCORE_FUNCTIONS[feature.method](reference_values, current_values)
            if score <= profile.threshold and not report_all:
                continue

            severity = classify_severity(score, profile.threshold)
            signals.append(
                DriftSignal(
                    model_id=model_id,
                    feature_name=feature.name,
                    drift_kind=feature.drift_kind,
                    score=score,
                    threshold=profile.threshold,
                    severity=severity,
                    details={
                        "method": feature.method,
                        "baseline_samples": len(reference_values),
                        "recent_samples": len(current_values),
                        "ratio": score / profile.threshold,
                    },
                    recommendations=drift_recommendations(severity, feature.drift_kind),
                )
            )

        for signal in signals:
            self._signals[signal.signal_id] = signal
        self._prune_signals()
        if signals:
            try:
                await self.persistence.save_drift_signals(signals)
            except Exception as e:
                logger.warning("Drift signals not persisted", model_id=model_id, error=str(e))

        critical = [signal for signal in signals if signal.severity == DriftSeverity.CRITICAL]
        logger.info(
            "Drift detection completed",
            model_id=model_id,
            signals=len(signals),
            critical_signals=len(critical),
        )

        if critical:
            await self.trigger_retraining(
                model_id, reason="data_drift", signals=critical, trigger_type=TriggerType.DRIFT
            )

        return [signal.model_copy(deep=True) for signal in signals]

    async def trigger_retraining(
        self,
        model_id: str,
        reason: str,
        signals: list[DriftSignal] | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> RetrainingRequest | None:
        """Submit the model's retraining workflow unless one is already active."""
        workflow_id = self._retraining_workflow_id(model_id)

        if not self.guard.try_acquire(model_id):
            suppressed = DuplicateRetrainingSuppressed(
                model_id, self.guard.active_execution(model_id)
            )
            self.suppressed.append(suppressed)
            logger.info(
                "Duplicate retraining suppressed",
                model_id=model_id,
                active_execution_id=suppressed.active_execution_id,
                reason=reason,
            )
            return None

        signals = signals or []
        priority = (
            RetrainingPriority.HIGH
            if trigger_type == TriggerType.DRIFT
            else RetrainingPriority.MEDIUM
        )
        try:
            execution = await self.orchestrator.submit_execution(
                workflow_id,
                inputs={
                    "model_id": model_id,
                    "trigger_reason": reason,
                    "priority": priority.value,
                    "drift_signals": [
                        signal.model_dump(mode="json") for signal in signals
                    ],
                },
                trigger_type=trigger_type,
            )
        except Exception:
            self.guard.release(model_id)
            logger.exception(
                "Retraining submission failed", model_id=model_id, workflow_id=workflow_id
            )
            raise

        self.guard.bind(model_id, execution.execution_id)
        request = RetrainingRequest(
            model_id=model_id,
            workflow_id=workflow_id,
            execution_id=execution.execution_id,
            trigger_type=trigger_type,
            reason=reason,
            priority=priority,
            signal_ids=[signal.signal_id for signal in signals],
        )
        self.retraining_requests.append(request)
        logger.info(
            "Model retraining triggered",
            model_id=model_id,
            workflow_id=workflow_id,
            execution_id=execution.execution_id,
            priority=priority.value,
        )
        return request

    def _retraining_workflow_id(self, model_id: str) -> str:
        profile = self._profiles.get(model_id)
        if profile and profile.retraining_workflow_id:
            return profile.retraining_workflow_id

        definition = self.orchestrator.definition_store.retraining_workflow_for(model_id)
        if definition is None:
            raise WorkflowNotFoundError(f"No retraining workflow configured for '{model_id}'")
        return definition.workflow_id

    def _on_execution_finished(self, execution: Execution) -> None:
        model_id = self.guard.release_execution(execution.execution_id)
        if model_id is not None:
            logger.info(
                "Retraining slot released",
                model_id=model_id,
                execution_id=execution.execution_id,
                status=execution.status.value,
            )

    def _prune_signals(self) -> None:
        """Drop the oldest signals beyond the retention limit, closed ones first."""
        excess = len(self._signals) - self.settings.max_retained_drift_signals
        if excess <= 0:
            return
        closed = [
            signal_id
            for signal_id, signal in self._signals.items()
            if signal.status in (SignalStatus.RESOLVED, SignalStatus.IGNORED)
        ]
        victims = closed[:excess]
        if len(victims) < excess:
            chosen = set(victims)
            still_open = [signal_id for signal_id in self._signals if signal_id not in chosen]
            victims.extend(still_open[: excess - len(victims)])
        for signal_id in victims:
            del self._signals[signal_id]
        logger.debug("Drift signals pruned", count=len(victims))

    def list_signals(self, model_id: str | None = None) -> list[DriftSignal]:
        return [
            signal.model_copy(deep=True)
            for signal in self._signals.values()
            if model_id is None or signal.model_id == model_id
        ]

    async def update_signal_status(
        self, signal_id: str, status: SignalStatus, actor: str
    ) -> DriftSignal:
        """Human-driven signal status change."""
        try:
            signal = self._signals[signal_id]
        except KeyError:
            raise KeyError(f"Drift signal '{signal_id}' not found") from None

        signal.update_status(status, actor)
        await self.persistence.save_drift_signals([signal])
        logger.info(
            "Drift signal status updated",
            signal_id=signal_id,
            status=status.value,
            actor=actor,
        )
        return signal.model_copy(deep=True)
