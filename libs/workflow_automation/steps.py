"""Default step bodies for the computed step types.

These stand in for the real ingestion, training and serving collaborators so
workflows can run end to end in development and tests.
"""

from typing import Any

import structlog

from .dag import StepType
from .registry import StepRuntimeRegistry

logger = structlog.get_logger(__name__)


def _upstream_value(inputs: dict[str, Any], key: str) -> Any:
    """Find ``key`` in the outputs of any completed dependency."""
    for outputs in inputs.get("upstream_outputs", {}).values():
        if key in outputs:
            return outputs[key]
    return None


def ingest_data(inputs: dict[str, Any]) -> dict[str, Any]:
    records = int(inputs.get("record_count", 1000))
    source = inputs.get("source", "lead_events")
    logger.info("Ingesting data", source=source, records=records)
    return {"records_processed": records, "source": source, "status": "success"}


def train_model(inputs: dict[str, Any]) -> dict[str, Any]:
    model_id = inputs.get("model_id", "default")
    records = _upstream_value(inputs, "records_processed") or 0
    version = inputs.get("model_version", "v1.1.0")
    logger.info("Training model", model_id=model_id, training_records=records)
    return {
        "model_id": model_id,
        "model_version": version,
        "accuracy": float(inputs.get("expected_accuracy", 0.95)),
        "training_records": records,
        "status": "success",
    }


def generate_predictions(inputs: dict[str, Any]) -> dict[str, Any]:
    count = int(inputs.get("prediction_count", 100))
    model_version = _upstream_value(inputs, "model_version")
    return {
        "predictions_generated": count,
        "model_version": model_version,
        "status": "success",
    }


def validate_outputs(inputs: dict[str, Any]) -> dict[str, Any]:
    """Compliance and quality gate. Raises when the upstream accuracy is too low."""
    min_accuracy = inputs.get("min_accuracy")
    accuracy = _upstream_value(inputs, "accuracy")
    if min_accuracy is not None and accuracy is not None and accuracy < min_accuracy:
        raise ValueError(
            f"Model accuracy {accuracy:.3f} is below the required {min_accuracy:.3f}"
        )
    return {"validation_passed": True, "accuracy": accuracy, "status": "success"}


def send_notifications(inputs: dict[str, Any]) -> dict[str, Any]:
    recipients = inputs.get("recipients", [])
    logger.info("Notifications queued", recipients=len(recipients))
    return {"notifications_sent": len(recipients), "status": "success"}


def generate_report(inputs: dict[str, Any]) -> dict[str, Any]:
    report_types = inputs.get("report_types", ["summary"])
    return {
        "reports_generated": len(report_types),
        "report_types": list(report_types),
        "status": "success",
    }


DEFAULT_STEP_BODIES = {
    StepType.INGESTION: ingest_data,
    StepType.TRAINING: train_model,
    StepType.PREDICTION: generate_predictions,
    StepType.VALIDATION: validate_outputs,
    StepType.NOTIFICATION: send_notifications,
    StepType.REPORTING: generate_report,
}


def register_default_step_bodies(registry: StepRuntimeRegistry) -> StepRuntimeRegistry:
    for step_type, handler in DEFAULT_STEP_BODIES.items():
        registry.register(step_type, handler)
    return registry
