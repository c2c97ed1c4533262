"""
OpenTelemetry span helpers for the business rules engine.

Only the OpenTelemetry API is used here; without an SDK configured by the
host process every span is a no-op.
"""

from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

TRACER_NAME = "erp.rules"


def get_tracer(name: str = TRACER_NAME) -> trace.Tracer:
    """Get a tracer instance."""
    return trace.get_tracer(name)


def _set_attributes(span: Span, attributes: dict) -> None:
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (str, bool, int, float)):
            value = str(value)
        span.set_attribute(key, value)


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """Context manager for tracing an operation."""
    tracer = get_tracer()
    with tracer.start_as_current_span(operation_name) as span:
        _set_attributes(span, attributes)
        try:
            yield span
        except Exception as exc:
            span.set_attribute("error", True)
            span.set_attribute("error.message", str(exc))
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def add_span_attributes(**attributes: Any) -> None:
    """Add attributes to the current span."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        _set_attributes(current_span, attributes)


def add_span_event(name: str, **attributes: Any) -> None:
    """Add an event to the current span."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        current_span.add_event(
            name,
            {key: str(value) for key, value in attributes.items() if value is not None}
        )
