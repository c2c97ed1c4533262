"""
Rule group execution.

Execution modes:

- ``ALL``: every enabled rule is evaluated in priority order and each matching
  rule runs its actions. The group matches only when every rule matched.
- ``ANY``: runs actions exactly as ``ALL`` does (the aggregate mode); the
  group matches when at least one rule matched.
- ``FIRST_MATCH``: rules are evaluated in priority order and only the first
  matching rule runs its actions; later rules are not evaluated.
"""

import time
from typing import List, Optional, Sequence, Union

from shared.errors import NotFoundError, ValidationError
from shared.logging import correlation_scope, get_logger
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, trace_operation

from .conditions import ConditionEvaluator
from .executor import ActionExecutor
from .groups import RuleGroupService, coerce_execution_mode
from .models import (
    ExecutionMode, GroupExecutionResult, RuleDefinition, RuleError,
    RuleExecutionContext, RuleExecutionResult
)
from .statistics import RuleMetricsService
from .store import RuleStore


class RulesEngine:
    """Resolves rule groups and runs their rules through the action executor."""

    def __init__(self,
                 rule_store: RuleStore,
                 group_service: RuleGroupService,
                 executor: ActionExecutor,
                 metrics_service: Optional[RuleMetricsService] = None,
                 condition_evaluator: Optional[ConditionEvaluator] = None,
                 metrics_collector: Optional[MetricsCollector] = None):
        self.logger = get_logger("rules.engine")
        self.rule_store = rule_store
        self.group_service = group_service
        self.executor = executor
        self.metrics_service = metrics_service
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()
        self.metrics_collector = metrics_collector

    async def execute_group(self, group_id: str, context: RuleExecutionContext) -> GroupExecutionResult:
        """Execute the rules of a stored group under its execution mode."""
        group = await self.group_service.get(group_id)
        if group is None:
            raise NotFoundError(
                f"Rule group with id {group_id} not found",
                details={"group_id": group_id}
            )

        rules: List[RuleDefinition] = []
        missing: List[RuleError] = []
        for rule_id in group.rule_ids:
            rule = await self.rule_store.get_rule(rule_id)
            if rule is None:
                missing.append(RuleError(
                    code="RULE_NOT_FOUND",
                    message=f"Rule with id {rule_id} not found",
                    rule_id=rule_id
                ))
                self.logger.warning("Group references missing rule", group_id=group_id, rule_id=rule_id)
            else:
                rules.append(rule)

        result = await self.execute_rules(rules, context, group.execution_mode, group_id=group.id)
        result.errors = missing + result.errors
        return result

    async def execute_rules(self,
                            rules: Sequence[RuleDefinition],
                            context: RuleExecutionContext,
                            mode: Union[ExecutionMode, str] = ExecutionMode.ALL,
                            group_id: Optional[str] = None) -> GroupExecutionResult:
        """Execute ``rules`` under ``mode``; lower priority values run first."""
        execution_mode = coerce_execution_mode(mode)
        if execution_mode is None:
            raise ValidationError(
                f"Invalid execution mode: {mode}",
                details={"errors": [{
                    "code": "INVALID_EXECUTION_MODE",
                    "message": f"Invalid execution mode: {mode}",
                    "field": "executionMode",
                    "severity": "error",
                }]}
            )

        ordered = sorted((rule for rule in rules if rule.enabled), key=lambda rule: rule.priority)
        start_time = time.perf_counter()

        with correlation_scope(correlation_id=context.correlation_id, group_id=group_id), trace_operation(
            "rules.group.execute",
            group_id=group_id,
            mode=execution_mode.value,
            rule_count=len(ordered)
        ):
            if execution_mode == ExecutionMode.ALL:
                rule_results = await self._execute_each(ordered, context)
                matched = bool(ordered) and all(result.matched for result in rule_results)
            elif execution_mode == ExecutionMode.ANY:
                rule_results = await self._execute_each(ordered, context)
                matched = any(result.matched for result in rule_results)
            else:
                rule_results = await self._execute_first_match(ordered, context)
                matched = any(result.matched for result in rule_results)
            add_span_attributes(matched=matched)

        result = GroupExecutionResult(
            group_id=group_id,
            mode=execution_mode,
            matched=matched,
            rule_results=rule_results,
            execution_time=(time.perf_counter() - start_time) * 1000,
            errors=[rule_result.error for rule_result in rule_results if rule_result.error is not None],
        )

        self.logger.info(
            "Rule group executed",
            execution_id=result.execution_id,
            group_id=group_id,
            mode=execution_mode.value,
            matched=matched,
            rules_evaluated=len(rule_results),
            actions_run=len(result.action_results),
            execution_time=result.execution_time
        )
        return result

    async def _execute_each(self, rules: List[RuleDefinition],
                            context: RuleExecutionContext) -> List[RuleExecutionResult]:
        results = []
        for rule in rules:
            start_time = time.perf_counter()
            matched = self._matches(rule, context)
            elapsed = (time.perf_counter() - start_time) * 1000
            results.append(await self._finish_rule(rule, matched, context, elapsed))
        return results

    async def _execute_first_match(self, rules: List[RuleDefinition],
                                   context: RuleExecutionContext) -> List[RuleExecutionResult]:
        results = []
        for rule in rules:
            start_time = time.perf_counter()
            matched = self._matches(rule, context)
            elapsed = (time.perf_counter() - start_time) * 1000
            results.append(await self._finish_rule(rule, matched, context, elapsed))
            if matched:
                break
        return results

    def _matches(self, rule: RuleDefinition, context: RuleExecutionContext) -> bool:
        return self.condition_evaluator.evaluate_conditions(rule.conditions, context, rule.logical_operator)

    async def _finish_rule(self,
                           rule: RuleDefinition,
                           matched: bool,
                           context: RuleExecutionContext,
                           elapsed: float) -> RuleExecutionResult:
        """Run the rule's actions if it matched and record the execution."""
        start_time = time.perf_counter()
        actions = []
        if matched and rule.actions:
            actions = await self.executor.execute_actions(rule.actions, context, report_errors=False)
        execution_time = elapsed + (time.perf_counter() - start_time) * 1000

        error = None
        failed = [action for action in actions if not action.success]
        if failed:
            error = RuleError(
                code="ACTION_FAILED",
                message=f"{len(failed)} action(s) failed in rule {rule.name}: {failed[0].error}",
                rule_id=rule.id,
                action_id=failed[0].action_id,
                details={"failed_actions": [action.action_id for action in failed]}
            )

        result = RuleExecutionResult(
            rule_id=rule.id,
            rule_name=rule.name,
            matched=matched,
            actions=actions,
            execution_time=execution_time,
            error=error
        )

        if self.metrics_service:
            self.metrics_service.record_rule_execution(
                rule.id,
                execution_time,
                matched,
                result.success,
                category=rule.category,
                error=error
            )
        if self.metrics_collector:
            self.metrics_collector.record_rule_execution(matched, result.success, execution_time / 1000.0)

        self.logger.debug(
            "Rule executed",
            rule_id=rule.id,
            matched=matched,
            actions_run=len(actions),
            success=result.success
        )
        return result
