"""
Rule and rule group storage.

Rule definitions live outside the engine; the group service only needs
``get_rule`` for existence checks. The in-memory stores back tests and the
single-process composition root.
"""

import copy
from typing import Dict, List, Optional, Protocol

from shared.errors import ConflictError
from shared.logging import get_logger

from .models import RuleDefinition, RuleGroup, utcnow


class RuleStore(Protocol):
    """Lookup capability over externally persisted rules."""

    async def get_rule(self, rule_id: str) -> Optional[RuleDefinition]:
        ...


class InMemoryRuleStore:
    """Rule store held in process memory."""

    def __init__(self, rules: Optional[List[RuleDefinition]] = None):
        self.logger = get_logger("rules.rule_store")
        self._rules: Dict[str, RuleDefinition] = {}
        for rule in rules or []:
            self._rules[rule.id] = rule

    async def get_rule(self, rule_id: str) -> Optional[RuleDefinition]:
        return self._rules.get(rule_id)

    async def save_rule(self, rule: RuleDefinition) -> RuleDefinition:
        self._rules[rule.id] = rule
        self.logger.debug("Rule saved", rule_id=rule.id, name=rule.name)
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    async def list_rules(self) -> List[RuleDefinition]:
        return list(self._rules.values())


class RuleGroupStore(Protocol):
    """Keyed group storage with compare-and-swap writes."""

    async def get(self, group_id: str) -> Optional[RuleGroup]:
        ...

    async def list(self) -> List[RuleGroup]:
        ...

    async def save(self, group: RuleGroup, expected_version: Optional[int] = None) -> RuleGroup:
        ...

    async def delete(self, group_id: str) -> bool:
        ...


class InMemoryRuleGroupStore:
    """Group store held in process memory.

    Reads and writes copy groups, so callers never hold a reference to
    stored state. ``save`` with ``expected_version`` only succeeds when the
    stored version still matches; every successful save bumps the version.
    """

    def __init__(self):
        self._groups: Dict[str, RuleGroup] = {}

    async def get(self, group_id: str) -> Optional[RuleGroup]:
        group = self._groups.get(group_id)
        return copy.deepcopy(group) if group is not None else None

    async def list(self) -> List[RuleGroup]:
        return [copy.deepcopy(group) for group in self._groups.values()]

    async def save(self, group: RuleGroup, expected_version: Optional[int] = None) -> RuleGroup:
        current = self._groups.get(group.id)
        if expected_version is not None:
            current_version = current.version if current is not None else None
            if current_version != expected_version:
                raise ConflictError(
                    f"Rule group {group.id} was modified concurrently",
                    details={
                        "group_id": group.id,
                        "expected_version": expected_version,
                        "current_version": current_version,
                    }
                )

        stored = copy.deepcopy(group)
        stored.version = (current.version if current is not None else 0) + 1
        stored.updated_at = utcnow()
        self._groups[stored.id] = stored
        return copy.deepcopy(stored)

    async def delete(self, group_id: str) -> bool:
        return self._groups.pop(group_id, None) is not None

    def __len__(self) -> int:
        return len(self._groups)
