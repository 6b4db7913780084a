"""Request logging middleware and standardized error responses."""

import time
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .response_models import APIMetadata, ErrorDetail, ErrorResponse

logger = structlog.get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs every request with its timing."""

    def __init__(self, app, environment: str = "development", version: str = "v1"):
        super().__init__(app)
        self.environment = environment
        self.version = version

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        response = await call_next(request)

        process_time = round((time.time() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Version"] = self.version
        response.headers["X-Response-Time"] = str(process_time)

        logger.info(
            "API request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=process_time,
            request_id=request_id,
        )
        return response


def error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    field: str | None = None,
    environment: str = "development",
) -> JSONResponse:
    """Create a standardized error response."""
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    body = ErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field),
        metadata=APIMetadata(request_id=request_id, environment=environment),
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


def register_error_handlers(
    app: FastAPI,
    error_statuses: dict[type[Exception], tuple[int, str]],
    environment: str = "development",
) -> None:
    """Map exception types to error envelopes.

    ``error_statuses`` maps an exception class to its HTTP status and error
    code. Request validation and HTTP errors are always handled.
    """

    def handler_for(status_code: int, error_code: str):
        async def handle(request: Request, exc: Exception) -> JSONResponse:
            logger.info(
                "API request rejected",
                path=request.url.path,
                status_code=status_code,
                error_code=error_code,
                error=str(exc),
            )
            return error_response(
                request, status_code, error_code, str(exc), environment=environment
            )

        return handle

    for exc_class, (status_code, error_code) in error_statuses.items():
        app.add_exception_handler(exc_class, handler_for(status_code, error_code))

    async def handle_http_error(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return error_response(
            request,
            exc.status_code,
            f"HTTP_{exc.status_code}",
            str(exc.detail),
            environment=environment,
        )

    async def handle_validation_error(
        request: Request, exc: RequestValidationError | ValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        field = ".".join(str(loc) for loc in errors[0]["loc"]) if errors else None
        message = errors[0]["msg"] if errors else "Request validation failed"
        return error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "VALIDATION_ERROR",
            message,
            field=field,
            environment=environment,
        )

    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(ValidationError, handle_validation_error)
