"""
Action executor.

Dispatches actions to registered handlers under a per-action timeout,
evaluates guard conditions fail-closed, and isolates failures so one action
never aborts the rest of its batch.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from shared.config import RulesEngineConfig, get_config
from shared.errors import (
    ActionTimeoutError, HandlerError, RulesEngineException, UnknownActionTypeError
)
from shared.logging import correlation_scope, get_logger
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, add_span_event, trace_operation

from .expressions import evaluate_condition
from .handlers import ActionHandler, FunctionActionHandler, default_handlers
from .models import ActionResult, RuleAction, RuleExecutionContext


class ActionExecutor:
    """Runs rule actions against an execution context."""

    def __init__(self,
                 config: Optional[RulesEngineConfig] = None,
                 metrics_service: Optional[Any] = None,
                 metrics_collector: Optional[MetricsCollector] = None,
                 handlers: Optional[Dict[str, ActionHandler]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_config()
        self.logger = get_logger("rules.action_executor")
        self.metrics_service = metrics_service
        self.metrics_collector = metrics_collector

        if handlers is None:
            handlers = default_handlers(self.config, transport=transport)
        self._handlers: Dict[str, ActionHandler] = dict(handlers)

    def register_action(self,
                        action_type: Union[str, Enum],
                        handler: Union[ActionHandler, Callable[..., Any]],
                        required_parameters: Tuple[str, ...] = ()) -> None:
        """Register or replace the handler for an action type.

        ``handler`` is either an ``ActionHandler`` or a plain callable taking
        ``(parameters, context)``; callables may be sync or async.
        """
        key = action_type.value if isinstance(action_type, Enum) else str(action_type)
        if not isinstance(handler, ActionHandler):
            if not callable(handler):
                raise TypeError(f"Handler for {key} must be an ActionHandler or callable")
            handler = FunctionActionHandler(key, handler, required_parameters)

        replaced = key in self._handlers
        self._handlers[key] = handler
        self.logger.info("Action handler registered", action_type=key, replaced=replaced)

    def get_action_types(self) -> List[str]:
        """Registered action types."""
        return list(self._handlers.keys())

    def get_handler(self, action_type: str) -> Optional[ActionHandler]:
        return self._handlers.get(action_type)

    async def execute(self, action: RuleAction, context: RuleExecutionContext) -> Any:
        """Execute a single action and return the handler's result.

        Raises UnknownActionTypeError, MissingParameterError,
        ActionTimeoutError or HandlerError.
        """
        action_type = action.type_name
        handler = self._handlers.get(action_type)
        if handler is None:
            raise UnknownActionTypeError(action_type, details={"action_id": action.id})

        parameters = action.parameters or {}
        handler.validate(parameters)

        timeout_ms = self._timeout_ms(parameters)
        deadline = time.monotonic() + timeout_ms / 1000.0

        with trace_operation("rules.action.execute", action_id=action.id, action_type=action_type):
            try:
                return await asyncio.wait_for(
                    self._invoke(handler, action, parameters, context, deadline),
                    timeout=timeout_ms / 1000.0
                )
            except asyncio.TimeoutError:
                raise ActionTimeoutError(
                    timeout_ms,
                    details={"action_id": action.id, "action_type": action_type}
                )
            except RulesEngineException:
                raise
            except Exception as e:
                raise HandlerError(
                    f"{action_type} failed: {e}",
                    details={"action_id": action.id, "error_type": type(e).__name__}
                ) from e

    @staticmethod
    async def _invoke(handler: ActionHandler,
                      action: RuleAction,
                      parameters: Dict[str, Any],
                      context: RuleExecutionContext,
                      deadline: float) -> Any:
        # Only the enclosing wait_for may report an action timeout; a
        # TimeoutError raised by the handler is a handler failure.
        try:
            return await handler.execute(parameters, context, deadline)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise HandlerError(
                f"{action.type_name} failed: {str(e) or 'TimeoutError'}",
                details={"action_id": action.id, "error_type": type(e).__name__}
            ) from e

    async def execute_actions(self,
                              actions: Sequence[RuleAction],
                              context: RuleExecutionContext,
                              report_errors: bool = True) -> List[ActionResult]:
        """Run a batch sequentially in ascending ``order``.

        The returned list has one entry per input action, at the input's
        position. Failures are recorded in their entry and never stop the
        batch. With ``report_errors=False`` failures still count in the
        statistics but are left out of the recent-errors feed, for callers
        that report them themselves.
        """
        results: List[Optional[ActionResult]] = [None] * len(actions)
        ordered = sorted(enumerate(actions), key=lambda pair: pair[1].order)

        with correlation_scope(
            correlation_id=context.correlation_id,
            user_id=context.user_id,
            entity_id=context.entity_id
        ), trace_operation(
            "rules.actions.execute_batch",
            entity_type=context.entity_type,
            action_count=len(actions)
        ):
            for index, action in ordered:
                results[index] = await self._run_action(action, context, report_errors)

            failed = sum(1 for result in results if result is not None and not result.success)
            skipped = sum(1 for result in results if result is not None and result.skipped)
            add_span_attributes(failed_actions=failed, skipped_actions=skipped)

            self.logger.info(
                "Action batch executed",
                entity_type=context.entity_type,
                total=len(actions),
                failed=failed,
                skipped=skipped
            )

        return results

    async def _run_action(self,
                          action: RuleAction,
                          context: RuleExecutionContext,
                          report_errors: bool = True) -> ActionResult:
        action_type = action.type_name

        if action.condition and not self._guard_passes(action, context):
            add_span_event("action.skipped", action_id=action.id, condition=action.condition)
            result = ActionResult(
                action_id=action.id,
                action_type=action_type,
                success=True,
                result=None,
                skipped=True
            )
            self._record(result)
            return result

        start_time = time.perf_counter()
        try:
            value = await self.execute(action, context)
            result = ActionResult(
                action_id=action.id,
                action_type=action_type,
                success=True,
                result=value,
                execution_time=(time.perf_counter() - start_time) * 1000
            )
        except RulesEngineException as e:
            result = self._failure(action, e.message, start_time)
            self.logger.warning(
                "Action failed",
                action_id=action.id,
                action_type=action_type,
                error_code=e.code,
                error=e.message
            )
            if self.metrics_collector:
                self.metrics_collector.record_error(e.code)
        except Exception as e:
            result = self._failure(action, str(e) or type(e).__name__, start_time)
            self.logger.error(
                "Unexpected action error",
                action_id=action.id,
                action_type=action_type,
                error=str(e),
                exc_info=True
            )
            if self.metrics_collector:
                self.metrics_collector.record_error(type(e).__name__)

        self._record(result, report_errors)
        return result

    def _guard_passes(self, action: RuleAction, context: RuleExecutionContext) -> bool:
        """Evaluate an action guard; any evaluation error counts as false."""
        deadline = time.monotonic() + self.config.guard_timeout_ms / 1000.0
        try:
            return evaluate_condition(action.condition, context.guard_namespace(), deadline=deadline)
        except Exception as e:
            self.logger.debug(
                "Guard condition failed to evaluate",
                action_id=action.id,
                condition=action.condition,
                error=str(e)
            )
            return False

    def _timeout_ms(self, parameters: Dict[str, Any]) -> float:
        timeout = parameters.get("timeout")
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            return float(self.config.default_action_timeout_ms)
        return float(timeout)

    @staticmethod
    def _failure(action: RuleAction, message: str, start_time: float) -> ActionResult:
        return ActionResult(
            action_id=action.id,
            action_type=action.type_name,
            success=False,
            error=message,
            execution_time=(time.perf_counter() - start_time) * 1000
        )

    def _record(self, result: ActionResult, report_errors: bool = True) -> None:
        if self.metrics_collector:
            status = "skipped" if result.skipped else ("success" if result.success else "failure")
            self.metrics_collector.record_action_execution(
                result.action_type, status, result.execution_time / 1000.0
            )

        # Skipped actions never ran, so they stay out of per-type statistics
        if self.metrics_service and not result.skipped:
            self.metrics_service.record_action_execution(
                result.action_type,
                result.execution_time,
                result.success,
                error=result.error if report_errors else None
            )
