"""Workflow API routes."""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from libs.api_common.response_models import StandardResponse
from libs.workflow_automation import (
    DriftSignal,
    ExecutionStatus,
    ExecutionStatusReport,
    ModelDriftProfile,
    ReviewRequest,
    ReviewStatus,
    WorkflowDefinition,
    WorkflowHealthReport,
)

from .dependencies import WorkflowEngine, get_engine
from .models import (
    CancellationResponse,
    DriftDetectionResponse,
    DriftProfileRequest,
    EventPublishResponse,
    ExecutionSubmitRequest,
    ExecutionSubmitResponse,
    ReviewDecisionRequest,
    SignalStatusUpdate,
)

router = APIRouter(tags=["workflows"])


@router.post(
    "/workflows",
    response_model=StandardResponse[WorkflowDefinition],
    status_code=status.HTTP_201_CREATED,
    summary="Activate workflow definition",
    description="Validate a workflow definition and make it available for execution.",
)
async def activate_workflow(
    definition: WorkflowDefinition,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[WorkflowDefinition]:
    """Activate a workflow definition. Invalid dependency graphs are rejected."""
    try:
        activated = await engine.definition_store.activate(definition)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return StandardResponse[WorkflowDefinition](
        success=True,
        data=activated,
        message=f"Workflow '{activated.workflow_id}' activated",
    )


@router.get(
    "/workflows",
    response_model=StandardResponse[list[WorkflowDefinition]],
    summary="List workflow definitions",
)
async def list_workflows(
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[list[WorkflowDefinition]]:
    definitions = engine.definition_store.list_definitions()
    return StandardResponse[list[WorkflowDefinition]](
        success=True,
        data=definitions,
        message=f"Found {len(definitions)} workflow definitions",
    )


@router.post(
    "/executions",
    response_model=StandardResponse[ExecutionSubmitResponse],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit workflow execution",
    description="Start an execution of an activated workflow. Returns immediately.",
)
async def submit_execution(
    request: ExecutionSubmitRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[ExecutionSubmitResponse]:
    execution = await engine.orchestrator.submit_execution(
        request.workflow_id, inputs=request.inputs
    )
    return StandardResponse[ExecutionSubmitResponse](
        success=True,
        data=ExecutionSubmitResponse(
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            status=execution.status,
        ),
        message="Execution submitted",
    )


@router.get(
    "/executions",
    response_model=StandardResponse[list[ExecutionStatusReport]],
    summary="List executions",
)
async def list_executions(
    workflow_id: str | None = Query(None, description="Filter by workflow"),
    status_filter: ExecutionStatus | None = Query(
        None, alias="status", description="Filter by status"
    ),
    limit: int = Query(100, ge=1, le=1000),
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[list[ExecutionStatusReport]]:
    executions = engine.orchestrator.list_executions(
        workflow_id=workflow_id, status=status_filter, limit=limit
    )
    return StandardResponse[list[ExecutionStatusReport]](
        success=True,
        data=[ExecutionStatusReport.from_execution(e) for e in executions],
    )


@router.get(
    "/executions/{execution_id}",
    response_model=StandardResponse[ExecutionStatusReport],
    summary="Get execution status",
)
async def get_execution_status(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[ExecutionStatusReport]:
    report = engine.orchestrator.get_execution_status(execution_id)
    return StandardResponse[ExecutionStatusReport](success=True, data=report)


@router.get(
    "/executions/{execution_id}/log",
    response_model=StandardResponse[list[str]],
    summary="Get execution log",
)
async def get_execution_log(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[list[str]]:
    execution = engine.orchestrator.get_execution(execution_id)
    return StandardResponse[list[str]](success=True, data=execution.log)


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=StandardResponse[CancellationResponse],
    summary="Cancel execution",
    description="Steps already running settle first; pending steps are skipped.",
)
async def cancel_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[CancellationResponse]:
    requested = engine.orchestrator.cancel_execution(execution_id)
    return StandardResponse[CancellationResponse](
        success=True,
        data=CancellationResponse(
            execution_id=execution_id, cancellation_requested=requested
        ),
        message="Cancellation requested" if requested else "Execution already finished",
    )


@router.get(
    "/reviews",
    response_model=StandardResponse[list[ReviewRequest]],
    summary="List review requests",
)
async def list_reviews(
    status_filter: ReviewStatus | None = Query(
        None, alias="status", description="Filter by status"
    ),
    execution_id: str | None = Query(None, description="Filter by execution"),
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[list[ReviewRequest]]:
    requests = engine.review_gate.list_requests(
        status=status_filter, execution_id=execution_id
    )
    return StandardResponse[list[ReviewRequest]](success=True, data=requests)


@router.post(
    "/reviews/{review_id}/decision",
    response_model=StandardResponse[ReviewRequest],
    summary="Submit review decision",
)
async def submit_review_decision(
    review_id: str,
    decision: ReviewDecisionRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[ReviewRequest]:
    resolved = await engine.orchestrator.submit_review_decision(
        review_id,
        decision.decision,
        decision.reviewer_id,
        comments=decision.comments,
        changes=decision.changes,
    )
    return StandardResponse[ReviewRequest](
        success=True,
        data=resolved,
        message=f"Review {resolved.status.value}",
    )


@router.put(
    "/models/{model_id}/drift-profile",
    response_model=StandardResponse[ModelDriftProfile],
    summary="Register drift profile",
)
async def register_drift_profile(
    model_id: str,
    request: DriftProfileRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[ModelDriftProfile]:
    profile = ModelDriftProfile(
        model_id=model_id, **request.model_dump(exclude={"watch"})
    )
    try:
        engine.drift_monitor.register_profile(profile)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )

    if request.watch:
        engine.trigger_dispatcher.watch_model(model_id)

    return StandardResponse[ModelDriftProfile](
        success=True, data=profile, message="Drift profile registered"
    )


@router.post(
    "/models/{model_id}/drift",
    response_model=StandardResponse[DriftDetectionResponse],
    summary="Run drift detection",
    description="Score tracked features; critical drift submits retraining.",
)
async def detect_drift(
    model_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[DriftDetectionResponse]:
    signals = await engine.drift_monitor.detect_drift(model_id)
    return StandardResponse[DriftDetectionResponse](
        success=True,
        data=DriftDetectionResponse(
            model_id=model_id,
            signals=signals,
            retraining_execution_id=engine.drift_monitor.guard.active_execution(model_id),
        ),
        message=f"{len(signals)} drift signal(s) emitted",
    )


@router.get(
    "/models/{model_id}/drift",
    response_model=StandardResponse[list[DriftSignal]],
    summary="Drift signal history",
)
async def list_drift_signals(
    model_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[list[DriftSignal]]:
    signals = engine.drift_monitor.list_signals(model_id)
    return StandardResponse[list[DriftSignal]](success=True, data=signals)


@router.post(
    "/drift-signals/{signal_id}/status",
    response_model=StandardResponse[DriftSignal],
    summary="Update drift signal status",
)
async def update_drift_signal_status(
    signal_id: str,
    update: SignalStatusUpdate,
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[DriftSignal]:
    try:
        signal = await engine.drift_monitor.update_signal_status(
            signal_id, update.status, update.actor
        )
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Drift signal '{signal_id}' not found",
        )
    return StandardResponse[DriftSignal](success=True, data=signal)


@router.post(
    "/events",
    response_model=StandardResponse[EventPublishResponse],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Publish trigger event",
)
async def publish_event(
    event: dict[str, Any] = Body(..., description="Event with a 'type' field"),
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[EventPublishResponse]:
    try:
        execution_ids = await engine.trigger_dispatcher.publish_event(event)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return StandardResponse[EventPublishResponse](
        success=True,
        data=EventPublishResponse(event_type=event["type"], execution_ids=execution_ids),
        message=f"{len(execution_ids)} execution(s) triggered",
    )


@router.get(
    "/health",
    response_model=StandardResponse[WorkflowHealthReport],
    summary="Engine health",
)
async def health(
    engine: WorkflowEngine = Depends(get_engine),
) -> StandardResponse[WorkflowHealthReport]:
    report = engine.health_monitor.health_report()
    return StandardResponse[WorkflowHealthReport](
        success=True, data=report, message=report.health_status
    )
