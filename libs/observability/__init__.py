"""Logging and tracing stack shared by the workflow engine and its service."""

from .config import (
    LoggingConfig,
    ObservabilityConfig,
    TracingConfig,
    get_observability_config,
)
from .logging import (
    configure_structured_logging,
    get_correlation_id,
    set_correlation_id,
)
from .tracing import add_span_attributes, get_tracer, trace_function

__all__ = [
    "LoggingConfig",
    "ObservabilityConfig",
    "TracingConfig",
    "get_observability_config",
    "configure_structured_logging",
    "get_correlation_id",
    "set_correlation_id",
    "add_span_attributes",
    "get_tracer",
    "trace_function",
]
