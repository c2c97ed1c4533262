"""
Shared error handling for the business rules engine.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RulesEngineException(Exception):
    """Base exception for the rules engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RulesEngineException):
    """Malformed group or action definition; carries every violation found."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)

    @property
    def errors(self) -> list:
        return self.details.get("errors", [])


class NotFoundError(RulesEngineException):
    """Group, rule or action absent."""

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(RulesEngineException):
    """Concurrent modification detected at the store boundary."""

    def __init__(self, message: str = "Conflicting update", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class UnknownActionTypeError(RulesEngineException):
    """No handler registered for an action type."""

    def __init__(self, action_type: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "UNKNOWN_ACTION_TYPE",
            f"Unknown action type: {action_type}",
            {"action_type": action_type, **(details or {})}
        )


class MissingParameterError(RulesEngineException):
    """A handler-declared required parameter is absent."""

    def __init__(self, parameter: str, action_type: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "MISSING_PARAMETER",
            f'Missing required parameter "{parameter}" for action type "{action_type}"',
            {"parameter": parameter, "action_type": action_type, **(details or {})}
        )


class ActionTimeoutError(RulesEngineException):
    """Handler did not settle before its deadline."""

    def __init__(self, timeout_ms: float, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "TIMEOUT",
            f"Operation timed out after {timeout_ms:g}ms",
            {"timeout_ms": timeout_ms, **(details or {})}
        )


class HandlerError(RulesEngineException):
    """Action handler failed."""

    def __init__(self, message: str = "Action handler failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("HANDLER_ERROR", message, details)
