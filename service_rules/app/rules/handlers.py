"""
Built-in action handlers.

Every handler implements the same small interface: it declares its required
parameters, validates them, and executes against the resolved parameters and
the live context before an absolute ``time.monotonic()`` deadline. Handlers
resolve their own templated parameters so each one decides which values are
templates and which are taken literally.
"""

import asyncio
import inspect
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from shared.circuit_breaker import CircuitBreakerManager, CircuitBreakerOpenException
from shared.config import RulesEngineConfig
from shared.errors import HandlerError, MissingParameterError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception

from .expressions import ArithmeticEvaluator, ExpressionError, ExpressionTimeout, run_script
from .models import ActionType, RuleExecutionContext
from .templates import TemplateResolver, get_path, resolve_templates, set_path


def generate_id(prefix: str) -> str:
    """Time-ordered identifier for simulated side effects."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ActionHandler:
    """Base class for action handlers."""

    action_type: str = ""
    required_parameters: Tuple[str, ...] = ()

    def __init__(self):
        self.logger = get_logger(f"rules.actions.{self.action_type.lower() or 'custom'}")

    def validate(self, parameters: Dict[str, Any]) -> None:
        """Raise MissingParameterError for the first absent required parameter."""
        for name in self.required_parameters:
            if name not in parameters:
                raise MissingParameterError(name, self.action_type)

    async def execute(self, parameters: Dict[str, Any], context: RuleExecutionContext,
                      deadline: float) -> Any:
        raise NotImplementedError

    @staticmethod
    def resolve(value: Any, context: RuleExecutionContext) -> Any:
        return resolve_templates(value, context)


class FunctionActionHandler(ActionHandler):
    """Adapts a plain ``(parameters, context)`` callable, sync or async."""

    def __init__(self, action_type: str, func: Callable[..., Any],
                 required_parameters: Tuple[str, ...] = ()):
        self.action_type = action_type
        self.required_parameters = tuple(required_parameters)
        self.func = func
        super().__init__()

    async def execute(self, parameters, context, deadline):
        result = self.func(parameters, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class SetFieldHandler(ActionHandler):
    action_type = ActionType.SET_FIELD.value
    required_parameters = ("field",)

    async def execute(self, parameters, context, deadline):
        field_path = parameters["field"]
        if not isinstance(field_path, str) or not field_path:
            raise HandlerError('SET_FIELD "field" must be a non-empty dot path')

        value = self.resolve(parameters.get("value"), context)
        previous_value = get_path(context.entity, field_path.split("."))
        set_path(context.entity, field_path, value)

        return {
            "field": field_path,
            "value": value,
            "previous_value": previous_value,
        }


class SendNotificationHandler(ActionHandler):
    action_type = ActionType.SEND_NOTIFICATION.value
    required_parameters = ("recipient",)

    async def execute(self, parameters, context, deadline):
        recipient = self.resolve(parameters["recipient"], context)
        subject = self.resolve(parameters.get("subject"), context)
        message = self.resolve(parameters.get("message"), context)
        priority = parameters.get("priority", "normal")

        notification_id = generate_id("notif")
        self.logger.info(
            "Notification sent",
            notification_id=notification_id,
            recipient=recipient,
            subject=subject,
            priority=priority
        )

        return {
            "notification_id": notification_id,
            "recipient": recipient,
            "subject": subject,
            "message": message,
            "priority": priority,
            "sent_at": now_iso(),
        }


class SendEmailHandler(ActionHandler):
    action_type = ActionType.SEND_EMAIL.value
    required_parameters = ("to", "subject")

    async def execute(self, parameters, context, deadline):
        to = self.resolve(parameters["to"], context)
        subject = self.resolve(parameters["subject"], context)
        message = self.resolve(parameters.get("message"), context)
        template_data = self.resolve(parameters.get("templateData", {}), context)

        email_id = generate_id("email")
        self.logger.info("Email sent", email_id=email_id, to=to, subject=subject)

        return {
            "email_id": email_id,
            "to": to,
            "cc": self.resolve(parameters.get("cc", []), context),
            "bcc": self.resolve(parameters.get("bcc", []), context),
            "subject": subject,
            "message": message,
            "template": parameters.get("template"),
            "template_data": template_data,
            "priority": parameters.get("priority", "normal"),
            "sent": True,
            "sent_at": now_iso(),
        }


class TriggerWorkflowHandler(ActionHandler):
    action_type = ActionType.TRIGGER_WORKFLOW.value
    required_parameters = ("workflowId",)

    async def execute(self, parameters, context, deadline):
        workflow_id = self.resolve(parameters["workflowId"], context)
        workflow_input = self.resolve(parameters.get("input", {}), context)

        instance_id = generate_id("workflow")
        self.logger.info("Workflow triggered", workflow_id=workflow_id, instance_id=instance_id)

        return {
            "workflow_id": workflow_id,
            "workflow_instance_id": instance_id,
            "input": workflow_input,
            "priority": parameters.get("priority", "normal"),
            "triggered_at": now_iso(),
        }


class CallApiHandler(ActionHandler):
    """Outbound HTTP call, one circuit breaker per host."""

    action_type = ActionType.CALL_API.value
    required_parameters = ("url",)

    def __init__(self, config: RulesEngineConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self.transport = transport
        self.retry_config = RetryConfig(
            max_attempts=config.call_api_max_attempts,
            base_delay=config.call_api_retry_base_delay,
            max_delay=2.0,
            jitter=False
        )
        self.circuit_breakers = CircuitBreakerManager(
            failure_threshold=config.call_api_failure_threshold,
            recovery_timeout=config.call_api_recovery_timeout,
            is_failure=lambda response: response.status_code >= 500
        )

    async def execute(self, parameters, context, deadline):
        url = self.resolve(parameters["url"], context)
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise HandlerError(f"CALL_API url must be an http(s) URL, got {url!r}")
        method = str(parameters.get("method", "POST")).upper()
        headers = self.resolve(parameters.get("headers") or {}, context)
        body = self.resolve(parameters.get("body"), context)
        query = self.resolve(parameters.get("query") or {}, context)

        remaining = max(deadline - time.monotonic(), 0.001)
        breaker = self.circuit_breakers.get_circuit_breaker(urlsplit(url).netloc)

        @retry_on_exception((httpx.TransportError,), config=self.retry_config, deadline=deadline)
        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=remaining, transport=self.transport) as client:
                return await client.request(
                    method,
                    url,
                    headers={str(k): str(v) for k, v in headers.items()},
                    params=query or None,
                    json=body if method not in ("GET", "HEAD") else None,
                )

        try:
            response = await breaker.call(_send)
        except CircuitBreakerOpenException as e:
            raise HandlerError(str(e), details={"url": url}) from e
        except RetryError as e:
            raise HandlerError(f"API call to {url} failed: {e.last_exception}", details={"url": url}) from e
        except httpx.HTTPError as e:
            raise HandlerError(f"API call to {url} failed: {e}", details={"url": url}) from e

        if response.status_code >= 400:
            raise HandlerError(
                f"API call to {url} returned HTTP {response.status_code}",
                details={"url": url, "status_code": response.status_code}
            )

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        self.logger.info("API call completed", url=url, method=method, status_code=response.status_code)

        return {
            "response_id": generate_id("api"),
            "url": url,
            "method": method,
            "headers": headers,
            "body": body,
            "status_code": response.status_code,
            "response": payload,
            "executed_at": now_iso(),
        }


class ExecuteScriptHandler(ActionHandler):
    """Runs a restricted script against a copy of the context fields."""

    action_type = ActionType.EXECUTE_SCRIPT.value
    required_parameters = ("script",)
    languages = ("script",)

    def __init__(self, config: RulesEngineConfig):
        super().__init__()
        self.default_timeout_ms = config.script_timeout_ms
        self.max_steps = config.script_max_steps

    async def execute(self, parameters, context, deadline):
        script = parameters["script"]
        language = parameters.get("language", "script")
        if language not in self.languages:
            raise HandlerError(f"Unsupported script language: {language}")

        timeout_ms = parameters.get("scriptTimeout", self.default_timeout_ms)
        started = time.monotonic()
        # The worker thread outlives a cancelled await, so it must stop on its own
        script_deadline = min(deadline, started + timeout_ms / 1000.0)
        logs: List[str] = []

        def log(*args: Any) -> None:
            logs.append(" ".join(str(arg) for arg in args))

        try:
            result = await asyncio.to_thread(
                run_script,
                script,
                context.guard_namespace(),
                {"log": log},
                self.max_steps,
                script_deadline,
            )
        except ExpressionTimeout as e:
            budget_ms = max(0, round((script_deadline - started) * 1000))
            raise HandlerError(f"Script execution failed: timed out after {budget_ms}ms") from e
        except ExpressionError as e:
            raise HandlerError(f"Script execution failed: {e}") from e
        except Exception as e:
            raise HandlerError(f"Script execution failed: {type(e).__name__}: {e}") from e

        for line in logs:
            self.logger.debug("Script output", line=line)

        return {
            "result": result,
            "language": language,
            "logs": logs,
            "executed_at": now_iso(),
        }


class ApproveHandler(ActionHandler):
    action_type = ActionType.APPROVE.value

    async def execute(self, parameters, context, deadline):
        reason = self.resolve(parameters.get("reason"), context) or "Auto-approved"
        approval_id = generate_id("approval")
        self.logger.info("Entity approved", approval_id=approval_id, reason=reason)
        return {
            "approval_id": approval_id,
            "approved": True,
            "approver": self.resolve(parameters.get("approver", "system"), context),
            "reason": reason,
            "conditions": self.resolve(parameters.get("conditions"), context),
            "approved_at": now_iso(),
        }


class RejectHandler(ActionHandler):
    action_type = ActionType.REJECT.value

    async def execute(self, parameters, context, deadline):
        reason = self.resolve(parameters.get("reason"), context) or "Auto-rejected"
        rejection_id = generate_id("rejection")
        self.logger.info("Entity rejected", rejection_id=rejection_id, reason=reason)
        return {
            "rejection_id": rejection_id,
            "rejected": True,
            "rejector": self.resolve(parameters.get("rejector", "system"), context),
            "reason": reason,
            "conditions": self.resolve(parameters.get("conditions"), context),
            "rejected_at": now_iso(),
        }


class EscalateHandler(ActionHandler):
    action_type = ActionType.ESCALATE.value
    required_parameters = ("escalateTo",)

    async def execute(self, parameters, context, deadline):
        escalate_to = self.resolve(parameters["escalateTo"], context)
        reason = self.resolve(parameters.get("reason"), context)
        escalation_id = generate_id("escalation")
        self.logger.info("Escalation raised", escalation_id=escalation_id, escalate_to=escalate_to)
        return {
            "escalation_id": escalation_id,
            "escalated": True,
            "escalate_to": escalate_to,
            "reason": reason,
            "deadline": self.resolve(parameters.get("deadline"), context),
            "notify_emails": self.resolve(parameters.get("notifyEmails", []), context),
            "escalated_at": now_iso(),
        }


class LogEventHandler(ActionHandler):
    action_type = ActionType.LOG_EVENT.value
    required_parameters = ("message",)
    levels = ("debug", "info", "warning", "error", "critical")

    async def execute(self, parameters, context, deadline):
        level = str(parameters.get("level", "info")).lower()
        if level not in self.levels:
            level = "info"
        message = self.resolve(parameters["message"], context)
        details = self.resolve(parameters.get("details", {}), context)
        tags = self.resolve(parameters.get("tags", []), context)

        log_id = generate_id("log")
        getattr(self.logger, level)(
            str(message),
            log_id=log_id,
            details=details,
            tags=tags,
            entity_type=context.entity_type
        )

        return {
            "log_id": log_id,
            "level": level,
            "message": message,
            "details": details,
            "tags": tags,
            "logged_at": now_iso(),
        }


DatabaseWriter = Callable[[str, str, Dict[str, Any], Dict[str, Any]], Awaitable[int]]


class UpdateDatabaseHandler(ActionHandler):
    """Delegates to an injected writer; without one the update is simulated."""

    action_type = ActionType.UPDATE_DATABASE.value
    required_parameters = ("table",)

    def __init__(self, writer: Optional[DatabaseWriter] = None):
        super().__init__()
        self.writer = writer

    async def execute(self, parameters, context, deadline):
        table = parameters["table"]
        operation = parameters.get("operation", "update")
        where = self.resolve(parameters.get("where", {}), context)
        data = self.resolve(parameters.get("data", {}), context)

        if self.writer is not None:
            affected_rows = await self.writer(table, operation, where, data)
            simulated = False
        else:
            affected_rows = 0
            simulated = True

        self.logger.info(
            "Database operation",
            table=table,
            operation=operation,
            affected_rows=affected_rows,
            simulated=simulated
        )

        return {
            "table": table,
            "operation": operation,
            "where": where,
            "data": data,
            "affected_rows": affected_rows,
            "simulated": simulated,
            "updated": True,
            "executed_at": now_iso(),
        }


class CalculateHandler(ActionHandler):
    """Restricted arithmetic with optional rounding and write-back."""

    action_type = ActionType.CALCULATE.value
    required_parameters = ("expression",)

    def __init__(self):
        super().__init__()
        self.evaluator = ArithmeticEvaluator()

    async def execute(self, parameters, context, deadline):
        expression = parameters["expression"]
        variables = self.resolve(parameters.get("variables", {}), context)
        if not isinstance(variables, dict):
            raise HandlerError('CALCULATE "variables" must be a mapping')

        scope = {**variables, **context.entity}
        substituted = TemplateResolver(context, extra=scope).resolve(str(expression))
        try:
            result = self.evaluator.evaluate(str(substituted))
        except ExpressionError as e:
            raise HandlerError(f"Expression evaluation error: {e}") from e

        precision = parameters.get("precision")
        if precision is not None:
            result = round(float(result), int(precision))

        target_field = parameters.get("targetField")
        if target_field:
            set_path(context.entity, target_field, result)

        return {
            "expression": expression,
            "evaluated_expression": str(substituted),
            "result": result,
            "variables": variables,
            "target_field": target_field,
            "calculated_at": now_iso(),
        }


def default_handlers(config: RulesEngineConfig,
                     transport: Optional[httpx.AsyncBaseTransport] = None,
                     database_writer: Optional[DatabaseWriter] = None) -> Dict[str, ActionHandler]:
    """Built-in handlers keyed by action type."""
    handlers: List[ActionHandler] = [
        SetFieldHandler(),
        SendNotificationHandler(),
        SendEmailHandler(),
        TriggerWorkflowHandler(),
        CallApiHandler(config, transport=transport),
        ExecuteScriptHandler(config),
        ApproveHandler(),
        RejectHandler(),
        EscalateHandler(),
        LogEventHandler(),
        UpdateDatabaseHandler(database_writer),
        CalculateHandler(),
    ]
    return {handler.action_type: handler for handler in handlers}
