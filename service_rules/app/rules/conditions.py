"""
Rule condition evaluation.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from shared.logging import get_logger

from .models import (
    ComparisonOperator, LogicalOperator, RuleCondition, RuleExecutionContext
)
from .templates import get_path

OperatorFunc = Callable[[Any, Any, RuleCondition, RuleExecutionContext], bool]

_INDEX_SUFFIX = re.compile(r"\[(\d+)\]")


def to_number(value: Any) -> Optional[float]:
    """Numeric view of a value, or None when it has none."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    if isinstance(value, datetime):
        return value.timestamp()
    return None


def _equals(field_value: Any, expected: Any) -> bool:
    if field_value is None or expected is None:
        return field_value is None and expected is None
    return field_value == expected or str(field_value) == str(expected)


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def evaluate(field_value: Any, expected: Any) -> bool:
        left, right = to_number(field_value), to_number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)
    return evaluate


def _contains(field_value: Any, expected: Any) -> bool:
    if isinstance(field_value, (list, tuple, set)):
        return expected in field_value
    return str(expected if expected is not None else "").lower() in str(field_value or "").lower()


def _in(field_value: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return field_value in expected


def _between(field_value: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple)) or len(expected) != 2:
        return False
    value, low, high = to_number(field_value), to_number(expected[0]), to_number(expected[1])
    if value is None or low is None or high is None:
        return False
    return low <= value <= high


def _regex(field_value: Any, expected: Any) -> bool:
    try:
        return re.search(str(expected), "" if field_value is None else str(field_value)) is not None
    except re.error:
        return False


class ConditionEvaluator:
    """Evaluates rule conditions against an execution context."""

    def __init__(self):
        self.logger = get_logger("rules.condition_evaluator")
        self._operators: Dict[str, OperatorFunc] = {}
        self._register_default_operators()

    def _register_default_operators(self) -> None:
        simple = {
            ComparisonOperator.EQUALS: _equals,
            ComparisonOperator.NOT_EQUALS: lambda f, v: not _equals(f, v),
            ComparisonOperator.GREATER_THAN: _numeric(lambda a, b: a > b),
            ComparisonOperator.GREATER_THAN_OR_EQUAL: _numeric(lambda a, b: a >= b),
            ComparisonOperator.LESS_THAN: _numeric(lambda a, b: a < b),
            ComparisonOperator.LESS_THAN_OR_EQUAL: _numeric(lambda a, b: a <= b),
            ComparisonOperator.CONTAINS: _contains,
            ComparisonOperator.NOT_CONTAINS: lambda f, v: not _contains(f, v),
            ComparisonOperator.STARTS_WITH: lambda f, v: str(f or "").lower().startswith(str(v or "").lower()),
            ComparisonOperator.ENDS_WITH: lambda f, v: str(f or "").lower().endswith(str(v or "").lower()),
            ComparisonOperator.IN: _in,
            ComparisonOperator.NOT_IN: lambda f, v: not _in(f, v),
            ComparisonOperator.BETWEEN: _between,
            ComparisonOperator.IS_NULL: lambda f, v: f is None,
            ComparisonOperator.IS_NOT_NULL: lambda f, v: f is not None,
            ComparisonOperator.REGEX: _regex,
        }
        for operator, func in simple.items():
            self._operators[operator.value] = (
                lambda field_value, expected, condition, context, func=func: func(field_value, expected)
            )

    def register_operator(self, operator: Union[str, Enum], func: OperatorFunc) -> None:
        """Add or replace an operator.

        ``func`` receives ``(field_value, condition_value, condition, context)``.
        """
        key = operator.value if isinstance(operator, Enum) else str(operator)
        self._operators[key] = func
        self.logger.info("Condition operator registered", operator=key)

    def get_operators(self) -> List[str]:
        return list(self._operators.keys())

    def evaluate(self, condition: RuleCondition, context: RuleExecutionContext) -> bool:
        """Evaluate one condition; unknown operators and errors evaluate to False."""
        operator = condition.operator.value if isinstance(condition.operator, Enum) else str(condition.operator)
        func = self._operators.get(operator)
        if func is None:
            self.logger.warning("Unknown condition operator", operator=operator, condition_id=condition.id)
            return False

        try:
            field_value = self.get_field_value(condition.field, context)
            result = bool(func(field_value, condition.value, condition, context))
        except Exception as e:
            self.logger.error(
                "Error evaluating condition",
                condition_id=condition.id,
                field=condition.field,
                error=str(e)
            )
            return False

        return not result if condition.negate else result

    def evaluate_conditions(self,
                            conditions: Sequence[RuleCondition],
                            context: RuleExecutionContext,
                            logical_operator: Union[LogicalOperator, str] = LogicalOperator.AND) -> bool:
        """Combine condition results; an empty list always matches."""
        if not conditions:
            return True

        results = [self.evaluate(condition, context) for condition in conditions]
        try:
            mode = LogicalOperator(logical_operator)
        except ValueError:
            mode = LogicalOperator.AND

        if mode == LogicalOperator.OR:
            return any(results)
        if mode == LogicalOperator.XOR:
            return results.count(True) == 1
        return all(results)

    @staticmethod
    def get_field_value(field_path: str, context: RuleExecutionContext) -> Any:
        """Context identifiers by name, otherwise a dot path into the entity.

        List elements are addressed either as ``items.0`` or ``items[0]``.
        """
        namespace = {
            "entityId": context.entity_id,
            "entityType": context.entity_type,
            "userId": context.user_id,
            "correlationId": context.correlation_id,
            "timestamp": context.timestamp,
        }
        if field_path in namespace:
            return namespace[field_path]

        path = _INDEX_SUFFIX.sub(r".\1", field_path)
        return get_path(context.entity, path.split("."))
