"""Shared API building blocks: response envelopes, request logging, error mapping."""

from .middleware import RequestLoggingMiddleware, error_response, register_error_handlers
from .response_models import APIMetadata, ErrorDetail, ErrorResponse, StandardResponse

__all__ = [
    "APIMetadata",
    "ErrorDetail",
    "ErrorResponse",
    "StandardResponse",
    "RequestLoggingMiddleware",
    "error_response",
    "register_error_handlers",
]
