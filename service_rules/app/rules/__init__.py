"""
Rules engine package.

Defines the rule, group and action models and the runtime that executes
data-defined side effects against a live execution context.

Modules of interest:
- models: Data classes for groups, actions, contexts, results and statistics.
- templates: ``{{path}}`` placeholder resolution against a context.
- expressions: Restricted expression/script interpreter used by guards,
  CALCULATE and EXECUTE_SCRIPT.
- handlers: Built-in action handlers.
- executor: Ordered, guarded, timeout-bounded action dispatch.
- groups: Rule group CRUD and validation.
- statistics: Per-rule and engine-wide execution statistics.
- conditions / engine: Rule condition evaluation and group execution.

State is held in memory; persistence sits behind the store interfaces.
"""

from .models import (
    ActionResult,
    ActionType,
    ExecutionMode,
    RuleAction,
    RuleCondition,
    RuleDefinition,
    RuleExecutionContext,
    RuleGroup,
)
from .executor import ActionExecutor
from .groups import RuleGroupService
from .statistics import RuleMetricsService
from .engine import RulesEngine

__all__ = [
    "ActionExecutor",
    "ActionResult",
    "ActionType",
    "ExecutionMode",
    "RuleAction",
    "RuleCondition",
    "RuleDefinition",
    "RuleExecutionContext",
    "RuleGroup",
    "RuleGroupService",
    "RuleMetricsService",
    "RulesEngine",
]
