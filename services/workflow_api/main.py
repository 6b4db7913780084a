"""Workflow Automation Service - Main FastAPI application."""

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware

from libs.api_common.middleware import RequestLoggingMiddleware, register_error_handlers
from libs.observability import configure_structured_logging, get_observability_config
from libs.workflow_automation import (
    DriftProfileNotFoundError,
    ExecutionNotFoundError,
    GraphError,
    IllegalTransitionError,
    ReviewRequestNotFoundError,
    StepTypeNotRegisteredError,
    WorkflowEngineSettings,
    WorkflowNotFoundError,
    get_settings,
)

from .dependencies import build_engine
from .routes import router as workflow_router

logger = structlog.get_logger(__name__)

ERROR_STATUSES: dict[type[Exception], tuple[int, str]] = {
    GraphError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_WORKFLOW_GRAPH"),
    StepTypeNotRegisteredError: (
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "STEP_TYPE_NOT_REGISTERED",
    ),
    WorkflowNotFoundError: (status.HTTP_404_NOT_FOUND, "WORKFLOW_NOT_FOUND"),
    ExecutionNotFoundError: (status.HTTP_404_NOT_FOUND, "EXECUTION_NOT_FOUND"),
    ReviewRequestNotFoundError: (status.HTTP_404_NOT_FOUND, "REVIEW_NOT_FOUND"),
    DriftProfileNotFoundError: (status.HTTP_404_NOT_FOUND, "DRIFT_PROFILE_NOT_FOUND"),
    IllegalTransitionError: (status.HTTP_409_CONFLICT, "ILLEGAL_TRANSITION"),
}


def create_app(settings: WorkflowEngineSettings | None = None) -> FastAPI:
    """Create the workflow API with its own engine instance."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan management."""
        if settings.configure_logging:
            configure_structured_logging(get_observability_config().logging)

        engine = build_engine(settings)
        app.state.engine = engine

        if settings.definitions_directory:
            await engine.definition_store.load_directory(settings.definitions_directory)
        if settings.start_trigger_loop:
            await engine.trigger_dispatcher.start()

        logger.info("Starting Workflow Automation service", service="workflow_api")

        yield

        await engine.shutdown()
        logger.info("Workflow Automation service stopped", service="workflow_api")

    app = FastAPI(
        title="Workflow Automation Service",
        description=(
            "Executes lead scoring and model operations workflows: dependency "
            "scheduling, retries, human review gates and drift-triggered retraining"
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    allowed_origins = os.getenv(
        "CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001"
    ).split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
    app.add_middleware(
        RequestLoggingMiddleware, environment=get_observability_config().environment
    )
    register_error_handlers(
        app, ERROR_STATUSES, environment=get_observability_config().environment
    )

    app.include_router(workflow_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "workflow_api",
            "version": "1.0.0",
            "status": "healthy",
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.workflow_api.main:app",
        host="0.0.0.0",
        port=8003,
        log_level="info",
    )
