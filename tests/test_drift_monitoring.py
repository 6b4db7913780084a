"""Tests for drift detection and drift-triggered retraining."""

import asyncio

import numpy as np
import pandas as pd
import pytest
from structlog.testing import capture_logs

from libs.workflow_automation import (
    DriftKind,
    DriftMonitor,
    DriftSeverity,
    ExecutionStatus,
    IllegalTransitionError,
    InMemoryDriftDataSource,
    ModelDriftProfile,
    SignalStatus,
    StepDefinition,
    StepType,
    TrackedFeature,
    TriggerDefinition,
    TriggerType,
    WorkflowDefinition,
    WorkflowEngineSettings,
    WorkflowNotFoundError,
    classify_severity,
    register_score_function,
)
from libs.workflow_automation.drift import (
    ks_statistic,
    missing_rate_change,
    population_stability_index,
)
from libs.workflow_automation.exceptions import DriftProfileNotFoundError

MODEL_ID = "lead-scoring-v2"

register_score_function("constant_critical", lambda reference, current: 0.16)
register_score_function("constant_high", lambda reference, current: 0.13)
register_score_function("constant_low", lambda reference, current: 0.05)


def retraining_workflow():
    return WorkflowDefinition(
        workflow_id="retrain-lead-scoring",
        name="Lead scoring retraining",
        steps=[StepDefinition(step_id="retrain", step_type=StepType.TRAINING)],
        triggers=[TriggerDefinition(trigger_type=TriggerType.DRIFT, model_id=MODEL_ID)],
    )


def lead_frame(size=50, seed=7, shift=0.0):
    rng = np.random.default_rng(seed)
    return pd.DataFrame(
        {
            "lead_score": rng.normal(0.5 + shift, 0.1, size),
            "company_size": rng.choice(["smb", "mid", "enterprise"], size),
        }
    )


@pytest.fixture
def data_source():
    source = InMemoryDriftDataSource()
    source.set_baseline(MODEL_ID, lead_frame(seed=1))
    source.set_recent(MODEL_ID, lead_frame(seed=2))
    return source


@pytest.fixture
def monitor(orchestrator, data_source, persistence, settings):
    return DriftMonitor(orchestrator, data_source, persistence, settings)


def profile(method, threshold=0.1, **kwargs):
    return ModelDriftProfile(
        model_id=MODEL_ID,
        threshold=threshold,
        features=[TrackedFeature(name="lead_score", method=method)],
        **kwargs,
    )


class TestSeverity:
    """Severity bands from the score/threshold ratio."""

    @pytest.mark.parametrize(
        "score,expected",
        [
            (0.16, DriftSeverity.CRITICAL),
            (0.13, DriftSeverity.HIGH),
            (0.11, DriftSeverity.MEDIUM),
            (0.10, DriftSeverity.LOW),
            (0.02, DriftSeverity.LOW),
        ],
    )
    def test_classify_severity(self, score, expected):
        """Test severity classification against a 0.1 threshold."""
        assert classify_severity(score, 0.1) == expected

    def test_threshold_must_be_positive(self):
        """Test that a non-positive threshold is rejected."""
        with pytest.raises(ValueError):
            classify_severity(0.5, 0.0)


class TestScoreFunctions:
    """Built-in drift score functions."""

    def test_psi_identical_distributions(self):
        """Test that PSI is zero for identical data."""
        series = lead_frame(size=500)["lead_score"]
        assert population_stability_index(series, series) == pytest.approx(0.0)

    def test_psi_shifted_distribution(self):
        """Test that a one standard deviation shift scores as significant drift."""
        baseline = lead_frame(size=1000, seed=1)["lead_score"]
        shifted = lead_frame(size=1000, seed=2, shift=0.1)["lead_score"]
        assert population_stability_index(baseline, shifted) > 0.25

    def test_psi_categorical(self):
        """Test PSI over categories, including unseen ones."""
        baseline = pd.Series(["smb"] * 50 + ["enterprise"] * 50)
        current = pd.Series(["smb"] * 20 + ["enterprise"] * 30 + ["partner"] * 50)
        assert population_stability_index(baseline, baseline) == pytest.approx(0.0)
        assert population_stability_index(baseline, current) > 0.25

    def test_ks_statistic(self):
        """Test the two-sample KS statistic on shifted data."""
        baseline = lead_frame(size=500, seed=1)["lead_score"]
        shifted = lead_frame(size=500, seed=2, shift=0.2)["lead_score"]
        assert ks_statistic(baseline, baseline) == pytest.approx(0.0)
        assert ks_statistic(baseline, shifted) > 0.5

    def test_missing_rate_change(self):
        """Test the change in missing-value rate."""
        baseline = pd.Series([1.0] * 10)
        current = pd.Series([1.0] * 7 + [np.nan] * 3)
        assert missing_rate_change(baseline, current) == pytest.approx(0.3)


class TestDriftDetection:
    """Signals emitted by detect_drift."""

    @pytest.mark.asyncio
    async def test_high_drift_emits_signal_without_retraining(self, monitor, persistence):
        """Test that non-critical drift is reported but does not retrain."""
        monitor.register_profile(profile("constant_high"))

        signals = await monitor.detect_drift(MODEL_ID)

        assert len(signals) == 1
        assert signals[0].severity == DriftSeverity.HIGH
        assert signals[0].status == SignalStatus.DETECTED
        assert signals[0].details["method"] == "constant_high"
        assert list(monitor.retraining_requests) == []
        assert signals[0].signal_id in persistence.drift_signals

    @pytest.mark.asyncio
    async def test_below_threshold_features_not_reported_by_default(self, monitor):
        """Test that only drifted features produce signals unless asked otherwise."""
        monitor.register_profile(profile("constant_low"))
        assert await monitor.detect_drift(MODEL_ID) == []

        monitor.register_profile(profile("constant_low", report_all_features=True))
        signals = await monitor.detect_drift(MODEL_ID)
        assert [s.severity for s in signals] == [DriftSeverity.LOW]
        assert signals[0].recommendations == ["Continue monitoring"]

    @pytest.mark.asyncio
    async def test_missing_feature_and_small_samples_skipped(self, monitor, data_source):
        """Test that features without enough data are not scored."""
        monitor.register_profile(
            ModelDriftProfile(
                model_id=MODEL_ID,
                threshold=0.1,
                features=[TrackedFeature(name="not_a_column", method="constant_critical")],
            )
        )
        assert await monitor.detect_drift(MODEL_ID) == []

        data_source.set_recent(MODEL_ID, lead_frame(size=5))
        monitor.register_profile(profile("constant_critical"))
        assert await monitor.detect_drift(MODEL_ID) == []

    @pytest.mark.asyncio
    async def test_profile_validation(self, monitor):
        """Test that profiles must name registered score functions."""
        with pytest.raises(ValueError, match="Unknown drift score method"):
            monitor.register_profile(profile("no_such_method"))

    @pytest.mark.asyncio
    async def test_unknown_model(self, monitor):
        """Test that detection requires a registered profile."""
        with pytest.raises(DriftProfileNotFoundError):
            await monitor.detect_drift("unknown-model")

    @pytest.mark.asyncio
    async def test_signal_status_is_changed_by_people(self, monitor):
        """Test the drift signal status lifecycle."""
        monitor.register_profile(profile("constant_high"))
        signal = (await monitor.detect_drift(MODEL_ID))[0]

        updated = await monitor.update_signal_status(
            signal.signal_id, SignalStatus.INVESTIGATING, "data-scientist"
        )
        assert updated.status == SignalStatus.INVESTIGATING
        assert updated.status_updated_by == "data-scientist"

        await monitor.update_signal_status(
            signal.signal_id, SignalStatus.RESOLVED, "data-scientist"
        )
        with pytest.raises(IllegalTransitionError):
            await monitor.update_signal_status(
                signal.signal_id, SignalStatus.INVESTIGATING, "data-scientist"
            )

    @pytest.mark.asyncio
    async def test_data_quality_recommendations(self, monitor):
        """Test that data quality drift points at the upstream pipeline."""
        monitor.register_profile(
            ModelDriftProfile(
                model_id=MODEL_ID,
                threshold=0.1,
                features=[
                    TrackedFeature(
                        name="lead_score",
                        drift_kind=DriftKind.DATA_QUALITY,
                        method="constant_high",
                    )
                ],
            )
        )
        signals = await monitor.detect_drift(MODEL_ID)
        assert any("upstream data pipeline" in r for r in signals[0].recommendations)


class TestRetrainingTrigger:
    """Single-flight retraining on critical drift."""

    @pytest.fixture
    def release(self, registry):
        """Blocks the retraining step until set."""
        event = asyncio.Event()

        async def retrain(inputs):
            await event.wait()
            return {"model_id": inputs["model_id"], "priority": inputs["priority"]}

        registry.register(StepType.TRAINING, retrain)
        return event

    @pytest.mark.asyncio
    async def test_duplicate_retraining_suppressed(
        self, monitor, orchestrator, store, release
    ):
        """Test that a second critical detection does not start a second retraining."""
        await store.activate(retraining_workflow())
        monitor.register_profile(profile("constant_critical"))

        signals = await monitor.detect_drift(MODEL_ID)
        assert signals[0].severity == DriftSeverity.CRITICAL
        assert len(monitor.retraining_requests) == 1
        active_id = monitor.retraining_requests[0].execution_id

        with capture_logs() as logs:
            await monitor.detect_drift(MODEL_ID)

        suppressed_logs = [
            entry for entry in logs if entry["event"] == "Duplicate retraining suppressed"
        ]
        assert len(suppressed_logs) == 1
        assert suppressed_logs[0]["active_execution_id"] == active_id
        assert len(monitor.retraining_requests) == 1
        assert len(monitor.suppressed) == 1
        assert monitor.suppressed[0].active_execution_id == active_id
        assert len(orchestrator.list_executions(workflow_id="retrain-lead-scoring")) == 1

        release.set()
        execution = await orchestrator.wait_for_completion(active_id, timeout=5)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.trigger_type == TriggerType.DRIFT
        assert execution.inputs["trigger_reason"] == "data_drift"
        assert execution.steps["retrain"].outputs["priority"] == "high"
        assert not monitor.guard.is_active(MODEL_ID)

        await monitor.detect_drift(MODEL_ID)
        assert len(monitor.retraining_requests) == 2

    @pytest.mark.asyncio
    async def test_concurrent_detections_start_one_retraining(
        self, monitor, orchestrator, store, release
    ):
        """Test that racing detections for one model submit a single execution."""
        await store.activate(retraining_workflow())
        monitor.register_profile(profile("constant_critical"))

        await asyncio.gather(
            monitor.detect_drift(MODEL_ID), monitor.detect_drift(MODEL_ID)
        )

        assert len(orchestrator.list_executions(workflow_id="retrain-lead-scoring")) == 1
        assert len(monitor.suppressed) == 1
        release.set()

    @pytest.mark.asyncio
    async def test_slot_released_after_failed_retraining(
        self, monitor, orchestrator, store, registry
    ):
        """Test that a failed retraining execution frees the model's slot."""

        async def retrain(inputs):
            raise RuntimeError("training cluster unavailable")

        registry.register(StepType.TRAINING, retrain)
        await store.activate(retraining_workflow())

        request = await monitor.trigger_retraining(MODEL_ID, reason="manual_request")
        execution = await orchestrator.wait_for_completion(request.execution_id, timeout=5)

        assert request.priority.value == "medium"
        assert execution.status == ExecutionStatus.FAILED
        assert not monitor.guard.is_active(MODEL_ID)

    @pytest.mark.asyncio
    async def test_submission_failure_releases_slot(self, monitor):
        """Test that a retraining that cannot be submitted does not hold the slot."""
        monitor.register_profile(
            profile("constant_critical", retraining_workflow_id="missing-workflow")
        )

        with pytest.raises(WorkflowNotFoundError):
            await monitor.trigger_retraining(MODEL_ID, reason="manual_request")

        assert not monitor.guard.is_active(MODEL_ID)

    @pytest.mark.asyncio
    async def test_no_retraining_workflow_configured(self, monitor):
        """Test that a model without a retraining workflow is reported."""
        with pytest.raises(WorkflowNotFoundError):
            await monitor.trigger_retraining(MODEL_ID, reason="manual_request")


class TestRetention:
    """In-memory history stays bounded."""

    @pytest.fixture
    def bounded_settings(self):
        return WorkflowEngineSettings(
            _env_file=None,
            persistence_retry_delay_seconds=0.0,
            configure_logging=False,
            start_trigger_loop=False,
            max_retained_executions=2,
            max_retained_drift_signals=3,
        )

    @pytest.mark.asyncio
    async def test_signal_history_is_bounded_closed_first(
        self, orchestrator, data_source, persistence, bounded_settings
    ):
        """Test that the oldest closed signal is evicted before older open ones."""
        monitor = DriftMonitor(orchestrator, data_source, persistence, bounded_settings)
        monitor.register_profile(profile("constant_high"))

        first = (await monitor.detect_drift(MODEL_ID))[0]
        second = (await monitor.detect_drift(MODEL_ID))[0]
        await monitor.update_signal_status(
            second.signal_id, SignalStatus.IGNORED, "data-scientist"
        )
        third = (await monitor.detect_drift(MODEL_ID))[0]
        fourth = (await monitor.detect_drift(MODEL_ID))[0]

        retained = [signal.signal_id for signal in monitor.list_signals(MODEL_ID)]
        assert sorted(retained) == sorted(
            [first.signal_id, third.signal_id, fourth.signal_id]
        )
        assert second.signal_id in persistence.drift_signals

        fifth = (await monitor.detect_drift(MODEL_ID))[0]
        retained = [signal.signal_id for signal in monitor.list_signals(MODEL_ID)]
        assert sorted(retained) == sorted(
            [third.signal_id, fourth.signal_id, fifth.signal_id]
        )

    @pytest.mark.asyncio
    async def test_retraining_history_is_bounded(
        self, orchestrator, store, registry, data_source, persistence, bounded_settings
    ):
        """Test that retraining and suppression records keep only the newest entries."""
        monitor = DriftMonitor(orchestrator, data_source, persistence, bounded_settings)
        await store.activate(retraining_workflow())
        monitor.register_profile(profile("constant_critical"))
        gate = {}

        async def retrain(inputs):
            await gate["release"].wait()
            return {"model_id": inputs["model_id"]}

        registry.register(StepType.TRAINING, retrain)

        execution_ids = []
        for _ in range(3):
            gate["release"] = asyncio.Event()
            await monitor.detect_drift(MODEL_ID)
            await monitor.detect_drift(MODEL_ID)
            execution_id = monitor.retraining_requests[-1].execution_id
            execution_ids.append(execution_id)
            gate["release"].set()
            await orchestrator.wait_for_completion(execution_id, timeout=5)
            assert not monitor.guard.is_active(MODEL_ID)

        assert len(set(execution_ids)) == 3
        assert [r.execution_id for r in monitor.retraining_requests] == execution_ids[1:]
        assert len(monitor.suppressed) == 2
        assert [s.active_execution_id for s in monitor.suppressed] == execution_ids[1:]
