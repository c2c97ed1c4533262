"""
Structured logging for the business rules engine.

Log lines are JSON by default and carry the active trace ids plus the
execution context (correlation id, user, entity, rule group) of whatever
rule execution is in progress.
"""

import sys
import structlog
import logging
import uuid
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from contextvars import ContextVar

from opentelemetry import trace

# Execution context of the rule run in progress
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
entity_id_var: ContextVar[Optional[str]] = ContextVar('entity_id', default=None)
group_id_var: ContextVar[Optional[str]] = ContextVar('group_id', default=None)

_CONTEXT_VARS = {
    "correlation_id": correlation_id_var,
    "user_id": user_id_var,
    "entity_id": entity_id_var,
    "group_id": group_id_var,
}


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structlog and the stdlib root logger for the engine."""

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            service_context(service_name),
            add_trace_context,
            add_execution_context,
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def service_context(service_name: str):
    """Processor stamping every event with the service name."""

    def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_context


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def add_execution_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the rule execution context; explicit event fields win."""
    for key, var in _CONTEXT_VARS.items():
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    event_dict["timestamp_epoch"] = time.time()
    return event_dict


def set_correlation_context(correlation_id: Optional[str] = None,
                            user_id: Optional[str] = None,
                            entity_id: Optional[str] = None,
                            group_id: Optional[str] = None) -> str:
    """Set the execution context for the current task; returns the correlation id."""
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    if user_id:
        user_id_var.set(user_id)
    if entity_id:
        entity_id_var.set(entity_id)
    if group_id:
        group_id_var.set(group_id)
    return correlation_id


@contextmanager
def correlation_scope(**values: Optional[str]) -> Iterator[None]:
    """Bind execution context for a block and restore the previous values on exit.

    Only keys naming a known context variable are accepted; ``None`` values
    leave the current binding untouched.
    """
    unknown = set(values) - set(_CONTEXT_VARS)
    if unknown:
        raise ValueError(f"Unknown log context keys: {sorted(unknown)}")

    tokens = [
        (_CONTEXT_VARS[key], _CONTEXT_VARS[key].set(value))
        for key, value in values.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def clear_context():
    """Clear all context variables."""
    for var in _CONTEXT_VARS.values():
        var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
