"""
Rule data models for the business rules engine.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionMode(str, Enum):
    """Rule group combination policy."""
    ALL = "ALL"
    ANY = "ANY"
    FIRST_MATCH = "FIRST_MATCH"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value == value.strip().upper():
                    return member
        return None


class ActionType(str, Enum):
    """Built-in action types."""
    SET_FIELD = "SET_FIELD"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    TRIGGER_WORKFLOW = "TRIGGER_WORKFLOW"
    CALL_API = "CALL_API"
    EXECUTE_SCRIPT = "EXECUTE_SCRIPT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ESCALATE = "ESCALATE"
    LOG_EVENT = "LOG_EVENT"
    UPDATE_DATABASE = "UPDATE_DATABASE"
    SEND_EMAIL = "SEND_EMAIL"
    CALCULATE = "CALCULATE"


class ComparisonOperator(str, Enum):
    """Rule condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    REGEX = "regex"


class LogicalOperator(str, Enum):
    """How a rule combines its conditions."""
    AND = "AND"
    OR = "OR"
    XOR = "XOR"


@dataclass
class RuleAction:
    """A declarative effect executable against a context."""
    type: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    order: int = 0
    condition: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def type_name(self) -> str:
        return self.type.value if isinstance(self.type, Enum) else str(self.type)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleAction":
        """Build an action from a plain mapping."""
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            type=data["type"],
            parameters=dict(data.get("parameters") or {}),
            order=data.get("order", 0),
            condition=data.get("condition"),
        )


@dataclass
class RuleExecutionContext:
    """Per-invocation bundle of identifying fields plus the mutable entity."""
    entity_id: str
    entity_type: str
    user_id: str
    entity: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def template_roots(self) -> Mapping[str, Any]:
        """Read-only view of the names templates may start from."""
        return MappingProxyType({
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "userId": self.user_id,
            "correlationId": self.correlation_id,
            "timestamp": self.timestamp,
            "entity": self.entity,
        })

    def guard_namespace(self) -> Dict[str, Any]:
        """Names visible to action guard conditions and scripts."""
        namespace = dict(self.entity)
        namespace.update({
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "userId": self.user_id,
            "timestamp": self.timestamp,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "user_id": self.user_id,
        })
        return namespace


@dataclass
class ActionResult:
    """Outcome of a single action within a batch."""
    action_id: str
    action_type: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    execution_time: float = 0.0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RuleGroup:
    """Named set of rule ids combined under an execution mode."""
    id: str
    name: str
    execution_mode: Union[ExecutionMode, str, None]
    rule_ids: List[str] = field(default_factory=list)
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class RuleGroupCreateRequest(BaseModel):
    """Request model for creating a rule group.

    Fields are loosely typed; semantic checks happen in
    ``RuleGroupService.validate_group``, which reports every violation at once.
    """
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, description="Group name")
    execution_mode: Optional[Any] = Field(None, alias="executionMode", description="ALL, ANY or FIRST_MATCH")
    rule_ids: List[str] = Field(default_factory=list, alias="ruleIds", description="Member rule ids")
    description: Optional[str] = Field(None, description="Group description")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")


class RuleGroupUpdateRequest(BaseModel):
    """Request model for updating a rule group."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, description="Group name")
    execution_mode: Optional[Any] = Field(None, alias="executionMode", description="ALL, ANY or FIRST_MATCH")
    rule_ids: Optional[List[str]] = Field(None, alias="ruleIds", description="Member rule ids")
    description: Optional[str] = Field(None, description="Group description")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Free-form metadata")


@dataclass
class ValidationIssue:
    """A single validation finding."""
    code: str
    message: str
    field: Optional[str] = None
    severity: str = "error"


@dataclass
class ValidationResult:
    """Outcome of validating a group definition."""
    is_valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)


@dataclass
class RuleCondition:
    """Rule condition."""
    field: str
    operator: Union[ComparisonOperator, str]
    value: Any = None
    negate: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class RuleDefinition:
    """A rule as held by the rule store."""
    id: str
    name: str
    conditions: List[RuleCondition] = field(default_factory=list)
    actions: List[RuleAction] = field(default_factory=list)
    logical_operator: LogicalOperator = LogicalOperator.AND
    priority: int = 0
    enabled: bool = True
    category: Optional[str] = None
    description: Optional[str] = None


@dataclass
class RuleError:
    """Error record surfaced in the engine metrics feed."""
    code: str
    message: str
    rule_id: Optional[str] = None
    action_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    recoverable: bool = True
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleStatistics:
    """Per-rule execution statistics."""
    rule_id: str
    execution_count: int = 0
    match_count: int = 0
    error_count: int = 0
    success_rate: float = 1.0
    average_execution_time: float = 0.0
    last_executed: Optional[datetime] = None
    last_matched: Optional[datetime] = None


@dataclass
class ActionStatistics:
    """Per-action-type execution statistics."""
    action_type: str
    execution_count: int = 0
    error_count: int = 0
    success_rate: float = 1.0
    average_execution_time: float = 0.0


@dataclass
class RuleEngineMetrics:
    """Engine-wide aggregate snapshot."""
    total_executions: int = 0
    total_rules: int = 0
    active_rules: int = 0
    average_execution_time: float = 0.0
    error_rate: float = 0.0
    popular_rules: List[RuleStatistics] = field(default_factory=list)
    recent_errors: List[RuleError] = field(default_factory=list)
    execution_by_category: Dict[str, int] = field(default_factory=dict)
    execution_by_hour: Dict[str, int] = field(default_factory=dict)
    execution_by_action_type: Dict[str, ActionStatistics] = field(default_factory=dict)


@dataclass
class RuleExecutionResult:
    """Outcome of evaluating one rule and running its actions."""
    rule_id: str
    rule_name: str
    matched: bool
    actions: List[ActionResult] = field(default_factory=list)
    execution_time: float = 0.0
    error: Optional[RuleError] = None

    @property
    def success(self) -> bool:
        return self.error is None and all(a.success for a in self.actions)


@dataclass
class GroupExecutionResult:
    """Outcome of executing a rule group."""
    group_id: Optional[str]
    mode: ExecutionMode
    matched: bool
    rule_results: List[RuleExecutionResult] = field(default_factory=list)
    execution_time: float = 0.0
    errors: List[RuleError] = field(default_factory=list)
    execution_id: str = field(default_factory=lambda: f"exec-{uuid.uuid4().hex[:12]}")

    @property
    def action_results(self) -> List[ActionResult]:
        return [action for rule in self.rule_results for action in rule.actions]
