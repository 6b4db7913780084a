"""Distributed tracing utilities and decorators."""

import functools
import inspect
from collections.abc import Callable
from typing import Any, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

F = TypeVar("F", bound=Callable[..., Any])


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for the given name."""
    return trace.get_tracer(name)


def trace_function(
    name: str | None = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
    attributes: dict[str, Any] | None = None,
    record_exception: bool = True,
) -> Callable[[F], F]:
    """Decorator to automatically trace function calls.

    Args:
        name: Custom span name. If None, uses the function name.
        kind: The span kind (INTERNAL, CLIENT, SERVER, etc.)
        attributes: Static attributes to add to the span
        record_exception: Whether to record exceptions in the span

    Returns:
        Decorated function
    """

    def decorator(func: F) -> F:
        span_name = name or f"{func.__module__}.{func.__qualname__}"
        tracer = get_tracer(func.__module__)

        def start_span() -> Any:
            return tracer.start_as_current_span(
                span_name,
                kind=kind,
                attributes=attributes,
                record_exception=False,
                set_status_on_exception=False,
            )

        def fail(span: trace.Span, error: Exception) -> None:
            if record_exception:
                span.record_exception(error)
                span.set_status(Status(StatusCode.ERROR, str(error)))

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with start_span() as span:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    fail(span, e)
                    raise
                span.set_status(Status(StatusCode.OK))
                return result

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with start_span() as span:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    fail(span, e)
                    raise
                span.set_status(Status(StatusCode.OK))
                return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator


def add_span_attributes(**attributes: Any) -> None:
    """Add attributes to the current active span."""
    span = trace.get_current_span()
    if span and span.is_recording():
        span.set_attributes(attributes)
