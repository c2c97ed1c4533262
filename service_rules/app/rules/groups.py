"""
Rule group management.
"""

import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional, Union

import pydantic

from shared.config import RulesEngineConfig, get_config
from shared.errors import NotFoundError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .models import (
    ExecutionMode, RuleGroup, RuleGroupCreateRequest, RuleGroupUpdateRequest,
    ValidationIssue, ValidationResult
)
from .store import InMemoryRuleGroupStore, RuleGroupStore, RuleStore

GroupData = Union[RuleGroupCreateRequest, Mapping[str, Any]]
GroupUpdate = Union[RuleGroupUpdateRequest, Mapping[str, Any]]


def coerce_execution_mode(value: Any) -> Optional[ExecutionMode]:
    """Return the matching ExecutionMode, or None if ``value`` names none."""
    if isinstance(value, ExecutionMode):
        return value
    try:
        return ExecutionMode(value)
    except ValueError:
        return None


class RuleGroupService:
    """Creates, updates and validates rule groups."""

    def __init__(self,
                 rule_store: RuleStore,
                 group_store: Optional[RuleGroupStore] = None,
                 config: Optional[RulesEngineConfig] = None,
                 metrics_collector: Optional[MetricsCollector] = None):
        self.rule_store = rule_store
        self.group_store = group_store if group_store is not None else InMemoryRuleGroupStore()
        self.config = config or get_config()
        self.metrics_collector = metrics_collector
        self.logger = get_logger("rules.group_service")

    async def create(self, data: GroupData) -> RuleGroup:
        """Validate and store a new group under a generated id."""
        request = self._parse(RuleGroupCreateRequest, data)
        candidate = RuleGroup(
            id=str(uuid.uuid4()),
            name=request.name,
            execution_mode=request.execution_mode,
            rule_ids=list(request.rule_ids),
            description=request.description,
            metadata=dict(request.metadata),
        )

        await self._ensure_valid(candidate)
        candidate.execution_mode = coerce_execution_mode(candidate.execution_mode)

        group = await self.group_store.save(candidate)
        await self._publish_group_count()

        self.logger.info(
            "Rule group created",
            group_id=group.id,
            name=group.name,
            execution_mode=group.execution_mode.value,
            rule_count=len(group.rule_ids)
        )
        return group

    async def update(self, group_id: str, partial: GroupUpdate) -> RuleGroup:
        """Merge ``partial`` into the stored group and re-validate the result in full."""
        existing = await self._require(group_id)
        request = self._parse(RuleGroupUpdateRequest, partial)
        changes = request.model_dump(exclude_unset=True)

        merged = RuleGroup(
            id=existing.id,
            name=changes.get("name", existing.name),
            execution_mode=changes.get("execution_mode", existing.execution_mode),
            rule_ids=list(changes["rule_ids"]) if changes.get("rule_ids") is not None else list(existing.rule_ids),
            description=changes.get("description", existing.description),
            metadata=changes["metadata"] if changes.get("metadata") is not None else existing.metadata,
            version=existing.version,
            created_at=existing.created_at,
        )

        await self._ensure_valid(merged)
        merged.execution_mode = coerce_execution_mode(merged.execution_mode)

        group = await self.group_store.save(merged, expected_version=existing.version)
        self.logger.info(
            "Rule group updated",
            group_id=group.id,
            fields=sorted(changes.keys()),
            version=group.version
        )
        return group

    async def delete(self, group_id: str) -> None:
        """Remove a group."""
        if not await self.group_store.delete(group_id):
            raise self._group_not_found(group_id)
        await self._publish_group_count()
        self.logger.info("Rule group deleted", group_id=group_id)

    async def get(self, group_id: str) -> Optional[RuleGroup]:
        return await self.group_store.get(group_id)

    async def list(self) -> List[RuleGroup]:
        return await self.group_store.list()

    async def add_rule_to_group(self, group_id: str, rule_id: str) -> RuleGroup:
        """Add a rule to a group; adding a present id changes nothing."""
        group = await self._require(group_id)
        if await self.rule_store.get_rule(rule_id) is None:
            raise NotFoundError(
                f"Rule with id {rule_id} not found",
                details={"rule_id": rule_id}
            )

        if rule_id in group.rule_ids:
            return group

        group.rule_ids.append(rule_id)
        group = await self.group_store.save(group, expected_version=group.version)
        self.logger.info("Rule added to group", group_id=group_id, rule_id=rule_id)
        return group

    async def remove_rule_from_group(self, group_id: str, rule_id: str) -> RuleGroup:
        """Remove a rule from a group; removing an absent id changes nothing."""
        group = await self._require(group_id)
        if rule_id not in group.rule_ids:
            return group

        group.rule_ids = [existing for existing in group.rule_ids if existing != rule_id]
        group = await self.group_store.save(group, expected_version=group.version)
        self.logger.info("Rule removed from group", group_id=group_id, rule_id=rule_id)
        return group

    async def validate_group(self, group: RuleGroup) -> ValidationResult:
        """Check a group definition without changing anything.

        Every violation is collected; warnings never make a group invalid.
        """
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        name = group.name
        if not isinstance(name, str) or not name.strip():
            errors.append(ValidationIssue(
                code="MISSING_NAME",
                message="Group name is required",
                field="name"
            ))

        if group.execution_mode is None or group.execution_mode == "":
            errors.append(ValidationIssue(
                code="MISSING_EXECUTION_MODE",
                message="Group execution mode is required",
                field="executionMode"
            ))
        elif coerce_execution_mode(group.execution_mode) is None:
            errors.append(ValidationIssue(
                code="INVALID_EXECUTION_MODE",
                message=(
                    f"Invalid execution mode: {group.execution_mode}; "
                    f"expected one of {', '.join(mode.value for mode in ExecutionMode)}"
                ),
                field="executionMode"
            ))

        rule_ids = list(group.rule_ids or [])
        checked = set()
        for rule_id in rule_ids:
            if rule_id in checked:
                continue
            checked.add(rule_id)
            if await self.rule_store.get_rule(rule_id) is None:
                errors.append(ValidationIssue(
                    code="RULE_NOT_FOUND",
                    message=f"Rule with id {rule_id} not found",
                    field="ruleIds"
                ))

        duplicates = []
        seen = set()
        for rule_id in rule_ids:
            if rule_id in seen and rule_id not in duplicates:
                duplicates.append(rule_id)
            seen.add(rule_id)
        if duplicates:
            errors.append(ValidationIssue(
                code="DUPLICATE_RULE_IDS",
                message=f"Duplicate rule IDs: {', '.join(duplicates)}",
                field="ruleIds"
            ))

        if isinstance(name, str) and len(name) > self.config.group_name_warning_length:
            warnings.append(ValidationIssue(
                code="LONG_NAME",
                message=f"Group name is very long (> {self.config.group_name_warning_length} characters)",
                field="name",
                severity="warning"
            ))

        if len(rule_ids) > self.config.group_size_warning:
            warnings.append(ValidationIssue(
                code="MANY_RULES",
                message=(
                    f"Group has many rules (> {self.config.group_size_warning}), "
                    "consider splitting into smaller groups"
                ),
                field="ruleIds",
                severity="warning"
            ))

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    async def _ensure_valid(self, group: RuleGroup) -> ValidationResult:
        result = await self.validate_group(group)
        if not result.is_valid:
            self.logger.warning(
                "Rule group rejected",
                group_id=group.id,
                error_codes=[issue.code for issue in result.errors]
            )
            raise ValidationError(
                f"Invalid rule group: {', '.join(issue.message for issue in result.errors)}",
                details={
                    "errors": [asdict(issue) for issue in result.errors],
                    "warnings": [asdict(issue) for issue in result.warnings],
                }
            )
        for warning in result.warnings:
            self.logger.info("Rule group warning", group_id=group.id, code=warning.code)
        return result

    def _parse(self, model: type, data: Any) -> Any:
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(dict(data))
        except (TypeError, ValueError) as e:
            if isinstance(e, pydantic.ValidationError):
                issues = [
                    {
                        "code": "INVALID_FIELD",
                        "message": error["msg"],
                        "field": ".".join(str(part) for part in error["loc"]),
                        "severity": "error",
                    }
                    for error in e.errors()
                ]
            else:
                issues = [{"code": "INVALID_FIELD", "message": str(e), "field": None, "severity": "error"}]
            raise ValidationError(
                f"Invalid rule group: {', '.join(issue['message'] for issue in issues)}",
                details={"errors": issues, "warnings": []}
            ) from e

    async def _require(self, group_id: str) -> RuleGroup:
        group = await self.group_store.get(group_id)
        if group is None:
            raise self._group_not_found(group_id)
        return group

    @staticmethod
    def _group_not_found(group_id: str) -> NotFoundError:
        return NotFoundError(
            f"Rule group with id {group_id} not found",
            details={"group_id": group_id}
        )

    async def _publish_group_count(self) -> None:
        if self.metrics_collector:
            groups = await self.group_store.list()
            self.metrics_collector.set_rule_group_count(len(groups))
