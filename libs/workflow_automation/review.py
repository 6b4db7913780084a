"""Human review gate: pause points completed by reviewer decisions."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from .config import WorkflowEngineSettings
from .dag import StepDefinition
from .exceptions import (
    IllegalTransitionError,
    ReviewRequestNotFoundError,
    ReviewTimeoutWarning,
)
from .storage import PersistenceBackend

logger = structlog.get_logger(__name__)


class ReviewStatus(str, Enum):
    """Review request status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_CHANGES = "needs_changes"
    CANCELLED = "cancelled"


# Decisions a reviewer may submit; CANCELLED is recorded by the engine only
REVIEWER_DECISIONS = frozenset(
    {ReviewStatus.APPROVED, ReviewStatus.REJECTED, ReviewStatus.NEEDS_CHANGES}
)

REVIEW_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.PENDING: REVIEWER_DECISIONS | {ReviewStatus.CANCELLED},
    ReviewStatus.APPROVED: frozenset(),
    ReviewStatus.REJECTED: frozenset(),
    ReviewStatus.NEEDS_CHANGES: frozenset(),
    ReviewStatus.CANCELLED: frozenset(),
}


class ReviewRequest(BaseModel):
    """A pending or resolved human decision gating one step."""

    review_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str = Field(description="Execution the gated step belongs to")
    step_id: str = Field(description="Step gated by this request")
    reviewer_id: str = Field(description="Assigned reviewer")
    status: ReviewStatus = Field(default=ReviewStatus.PENDING)
    comments: str | None = Field(default=None, description="Reviewer comments")
    changes: dict[str, Any] = Field(
        default_factory=dict, description="Reviewer supplied changes"
    )
    context: dict[str, Any] = Field(
        default_factory=dict, description="Information shown to the reviewer"
    )
    deadline: datetime = Field(description="When the request becomes overdue")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    decided_at: datetime | None = Field(default=None)
    decided_by: str | None = Field(default=None, description="Identity recorded for audit")

    def resolve(
        self,
        decision: ReviewStatus,
        decided_by: str,
        comments: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> None:
        if decision not in REVIEW_TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"review request '{self.review_id}'", self.status.value, decision.value
            )
        self.status = decision
        self.decided_by = decided_by
        self.decided_at = datetime.now(UTC)
        self.comments = comments
        self.changes = dict(changes or {})

    def is_overdue(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        return self.status == ReviewStatus.PENDING and now > self.deadline


class ReviewerNotifier(Protocol):
    """Notification collaborator for assigned reviewers."""

    async def notify_reviewer(self, reviewer_id: str, request: ReviewRequest) -> None: ...


class LoggingReviewerNotifier:
    """Default notifier that only records the notification."""

    async def notify_reviewer(self, reviewer_id: str, request: ReviewRequest) -> None:
        logger.info(
            "Reviewer notified",
            reviewer_id=reviewer_id,
            review_id=request.review_id,
            step_id=request.step_id,
            deadline=request.deadline.isoformat(),
        )


class ReviewGate:
    """Creates review requests and resolves them from external decisions.

    The gate never resolves a request by itself. Overdue requests are only
    reported through ``overdue_requests``.
    """

    def __init__(
        self,
        persistence: PersistenceBackend,
        settings: WorkflowEngineSettings,
        notifier: ReviewerNotifier | None = None,
    ):
        self.persistence = persistence
        self.settings = settings
        self.notifier = notifier or LoggingReviewerNotifier()
        self._requests: dict[str, ReviewRequest] = {}
        self._waiters: dict[str, asyncio.Future] = {}

    async def open_request(
        self,
        execution_id: str,
        step: StepDefinition,
        context: dict[str, Any] | None = None,
    ) -> ReviewRequest:
        reviewer_id = step.parameters.get("reviewer_id", self.settings.default_reviewer_id)
        deadline_hours = float(
            step.parameters.get("review_deadline_hours", self.settings.review_deadline_hours)
        )
        request = ReviewRequest(
            execution_id=execution_id,
            step_id=step.step_id,
            reviewer_id=reviewer_id,
            context=dict(context or {}),
            deadline=datetime.now(UTC) + timedelta(hours=deadline_hours),
        )
        self._requests[request.review_id] = request
        self._waiters[request.review_id] = asyncio.get_running_loop().create_future()

        await self.persistence.save_review_request(request)

        try:
            await self.notifier.notify_reviewer(reviewer_id, request)
        except Exception as e:
            logger.warning(
                "Reviewer notification failed",
                review_id=request.review_id,
                reviewer_id=reviewer_id,
                error=str(e),
            )

        logger.info(
            "Review request opened",
            review_id=request.review_id,
            execution_id=execution_id,
            step_id=step.step_id,
            reviewer_id=reviewer_id,
        )
        return request

    async def wait_for_decision(self, review_id: str) -> ReviewRequest:
        """Suspend until an external decision resolves the request."""
        request = self.get_request(review_id)
        if request.status != ReviewStatus.PENDING:
            return request.model_copy(deep=True)
        await asyncio.shield(self._waiters[review_id])
        return self.get_request(review_id).model_copy(deep=True)

    async def submit_decision(
        self,
        review_id: str,
        decision: ReviewStatus,
        reviewer_id: str,
        comments: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> ReviewRequest:
        if decision == ReviewStatus.CANCELLED:
            raise ValueError("Review requests are cancelled by the engine, not by reviewers")
        request = self.get_request(review_id)
        if reviewer_id != request.reviewer_id:
            # Authorization belongs to the caller; the identity is kept for audit
            logger.warning(
                "Review decided by a non-assigned reviewer",
                review_id=review_id,
                assigned_reviewer=request.reviewer_id,
                decided_by=reviewer_id,
            )

        request.resolve(decision, reviewer_id, comments=comments, changes=changes)
        await self.persistence.save_review_request(request)

        waiter = self._waiters.pop(review_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(decision)

        logger.info(
            "Review decision submitted",
            review_id=review_id,
            step_id=request.step_id,
            decision=decision.value,
            decided_by=reviewer_id,
        )
        return request.model_copy(deep=True)

    async def cancel_pending(self, execution_id: str, reason: str) -> list[ReviewRequest]:
        """Close the still pending requests of an execution that ended early."""
        cancelled = []
        for request in list(self._requests.values()):
            if request.execution_id != execution_id or request.status != ReviewStatus.PENDING:
                continue
            request.resolve(ReviewStatus.CANCELLED, "workflow-engine", comments=reason)
            waiter = self._waiters.pop(request.review_id, None)
            if waiter is not None and not waiter.done():
                waiter.cancel()
            try:
                await self.persistence.save_review_request(request)
            except Exception as e:
                logger.warning(
                    "Cancelled review request not persisted",
                    review_id=request.review_id,
                    error=str(e),
                )
            cancelled.append(request.model_copy(deep=True))
            logger.info(
                "Review request cancelled",
                review_id=request.review_id,
                execution_id=execution_id,
                step_id=request.step_id,
            )
        return cancelled

    def forget_execution(self, execution_id: str) -> None:
        """Drop resolved requests of an execution the engine no longer retains."""
        for review_id, request in list(self._requests.items()):
            if request.execution_id == execution_id and request.status != ReviewStatus.PENDING:
                del self._requests[review_id]
                self._waiters.pop(review_id, None)

    def get_request(self, review_id: str) -> ReviewRequest:
        try:
            return self._requests[review_id]
        except KeyError:
            raise ReviewRequestNotFoundError(
                f"Review request '{review_id}' not found"
            ) from None

    def list_requests(
        self, status: ReviewStatus | None = None, execution_id: str | None = None
    ) -> list[ReviewRequest]:
        return [
            request.model_copy(deep=True)
            for request in self._requests.values()
            if (status is None or request.status == status)
            and (execution_id is None or request.execution_id == execution_id)
        ]

    def overdue_requests(self, now: datetime | None = None) -> list[ReviewTimeoutWarning]:
        now = now or datetime.now(UTC)
        return [
            ReviewTimeoutWarning(
                review_id=request.review_id,
                step_id=request.step_id,
                reviewer_id=request.reviewer_id,
                overdue_seconds=(now - request.deadline).total_seconds(),
            )
            for request in self._requests.values()
            if request.is_overdue(now)
        ]
