"""Workflow health reporting and overdue review surfacing."""

from datetime import UTC, datetime

import structlog
from pydantic import BaseModel, Field

from .engine import ExecutionOrchestrator
from .exceptions import ReviewTimeoutWarning
from .review import ReviewStatus
from .state import ExecutionStatus

logger = structlog.get_logger(__name__)

FAILED_EXECUTION_ALERT_THRESHOLD = 5
SLOW_EXECUTION_ALERT_SECONDS = 30 * 60
TIME_SCORE_NORMALIZATION_SECONDS = 3600


class WorkflowHealthReport(BaseModel):
    """Engine-wide health snapshot."""

    health_status: str = Field(description="Overall health: healthy, degraded, unhealthy")
    health_score: float = Field(ge=0.0, le=100.0, description="Health score 0-100")
    active_executions: int = Field(description="Executions still running")
    finished_executions: int = Field(description="Retained finished executions")
    failed_executions: int = Field(description="Retained failed executions")
    average_duration_seconds: float = Field(description="Average finished duration")
    pending_reviews: int = Field(description="Review requests awaiting a decision")
    overdue_reviews: list[str] = Field(
        default_factory=list, description="Overdue review request ids"
    )
    alerts: list[str] = Field(default_factory=list, description="Active alerts")
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def calculate_health_score(
    total_executions: int, failed_executions: int, average_duration_seconds: float
) -> float:
    """Failure rate and execution time combined into a 0-100 score."""
    failure_rate = min(1.0, failed_executions / max(total_executions, 1))
    time_score = max(0.0, 1 - average_duration_seconds / TIME_SCORE_NORMALIZATION_SECONDS)
    return round((1 - failure_rate) * time_score * 100, 2)


class WorkflowHealthMonitor:
    def __init__(self, orchestrator: ExecutionOrchestrator):
        self.orchestrator = orchestrator
        self.review_gate = orchestrator.review_gate

    def overdue_reviews(self, now: datetime | None = None) -> list[ReviewTimeoutWarning]:
        """Overdue pending reviews. The engine takes no action on them."""
        warnings = self.review_gate.overdue_requests(now)
        for warning in warnings:
            logger.warning(
                "Review request overdue",
                review_id=warning.review_id,
                step_id=warning.step_id,
                reviewer_id=warning.reviewer_id,
                overdue_seconds=warning.overdue_seconds,
            )
        return warnings

    def health_report(self, now: datetime | None = None) -> WorkflowHealthReport:
        executions = self.orchestrator.list_executions(
            limit=self.orchestrator.settings.max_retained_executions
        )
        active = [e for e in executions if e.status == ExecutionStatus.RUNNING]
        finished = [e for e in executions if e.status != ExecutionStatus.RUNNING]
        failed = [e for e in finished if e.status == ExecutionStatus.FAILED]
        durations = [e.duration_seconds for e in finished if e.duration_seconds is not None]
        average_duration = sum(durations) / len(durations) if durations else 0.0

        health_score = calculate_health_score(
            len(executions), len(failed), average_duration
        )
        if health_score >= 90:
            health_status = "healthy"
        elif health_score >= 70:
            health_status = "degraded"
        else:
            health_status = "unhealthy"

        overdue = self.overdue_reviews(now)
        alerts = []
        if len(failed) > FAILED_EXECUTION_ALERT_THRESHOLD:
            alerts.append("High number of failed executions detected")
        if average_duration > SLOW_EXECUTION_ALERT_SECONDS:
            alerts.append("Average execution time is high")
        if overdue:
            alerts.append(f"{len(overdue)} review request(s) past their deadline")

        return WorkflowHealthReport(
            health_status=health_status,
            health_score=health_score,
            active_executions=len(active),
            finished_executions=len(finished),
            failed_executions=len(failed),
            average_duration_seconds=average_duration,
            pending_reviews=len(self.review_gate.list_requests(status=ReviewStatus.PENDING)),
            overdue_reviews=[warning.review_id for warning in overdue],
            alerts=alerts,
        )
