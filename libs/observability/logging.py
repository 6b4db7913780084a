"""Structured logging with correlation and tracing integration."""

import contextvars
import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from .config import LoggingConfig

# Set to the execution id inside each workflow execution task
correlation_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

_TIMESTAMP_PROCESSORS = {"TimeStamper"}


def configure_structured_logging(config: LoggingConfig) -> None:
    """Configure structlog and stdlib logging from a LoggingConfig."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.level.upper()),
    )

    processors: list[Any] = []
    for processor_path in config.processors:
        processor = _resolve_processor(processor_path)
        if processor is not None:
            processors.append(processor)

    if config.enable_tracing_integration:
        processors.append(add_trace_context)

    if config.enable_correlation:
        processors.append(add_correlation_context)

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.level.upper())
        ),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=config.cache_logger_on_first_use,
    )


def _resolve_processor(processor_path: str) -> Any:
    """Turn a dotted structlog name into a processor instance."""
    module_name, _, attribute = processor_path.rpartition(".")
    module = {
        "structlog.processors": structlog.processors,
        "structlog.contextvars": structlog.contextvars,
        "structlog.dev": structlog.dev,
    }.get(module_name)
    if module is None or not hasattr(module, attribute):
        return None

    processor = getattr(module, attribute)
    if attribute in _TIMESTAMP_PROCESSORS:
        return processor(fmt="iso")
    if isinstance(processor, type):
        return processor()
    return processor


def add_trace_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add OpenTelemetry trace context to log entries."""
    span = trace.get_current_span()

    if span and span.is_recording():
        span_context = span.get_span_context()
        event_dict.update(
            {
                "trace_id": format(span_context.trace_id, "032x"),
                "span_id": format(span_context.span_id, "016x"),
            }
        )

    return event_dict


def add_correlation_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add correlation context to log entries."""
    if "correlation_id" not in event_dict:
        correlation_id = correlation_id_var.get()
        if correlation_id:
            event_dict["correlation_id"] = correlation_id

    return event_dict


def set_correlation_id(correlation_id: str | None) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id_var.get()
