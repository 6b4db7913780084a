"""Request and response models for the workflow API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from libs.workflow_automation import (
    REVIEWER_DECISIONS,
    DriftSignal,
    ExecutionStatus,
    ReviewStatus,
    SignalStatus,
    TrackedFeature,
)


class ExecutionSubmitRequest(BaseModel):
    """Manual submission of a workflow execution."""

    workflow_id: str = Field(description="Workflow to execute")
    inputs: dict[str, Any] = Field(default_factory=dict, description="Execution inputs")


class ExecutionSubmitResponse(BaseModel):
    execution_id: str
    workflow_id: str
    status: ExecutionStatus


class CancellationResponse(BaseModel):
    execution_id: str
    cancellation_requested: bool


class ReviewDecisionRequest(BaseModel):
    """A reviewer's decision on a pending review request."""

    decision: ReviewStatus = Field(description="approved, rejected or needs_changes")
    reviewer_id: str = Field(description="Identity of the deciding reviewer")
    comments: str | None = Field(default=None, description="Reviewer comments")
    changes: dict[str, Any] = Field(
        default_factory=dict, description="Outputs of the review step when approved"
    )

    @field_validator("decision")
    @classmethod
    def validate_decision(cls, v: ReviewStatus) -> ReviewStatus:
        if v not in REVIEWER_DECISIONS:
            raise ValueError("decision must be approved, rejected or needs_changes")
        return v


class DriftProfileRequest(BaseModel):
    """Drift monitoring configuration submitted for one model."""

    threshold: float = Field(gt=0, description="Score above which a feature drifted")
    features: list[TrackedFeature] = Field(min_length=1)
    retraining_workflow_id: str | None = Field(default=None)
    report_all_features: bool | None = Field(default=None)
    min_samples: int = Field(default=10, ge=1)
    watch: bool = Field(
        default=False, description="Poll this model from the trigger loop"
    )


class DriftDetectionResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    signals: list[DriftSignal]
    retraining_execution_id: str | None = Field(
        default=None, description="Active retraining execution for the model, if any"
    )


class SignalStatusUpdate(BaseModel):
    status: SignalStatus
    actor: str = Field(description="Person changing the signal status")


class EventPublishResponse(BaseModel):
    event_type: str
    execution_ids: list[str]
