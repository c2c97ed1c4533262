"""
Unit tests for the Rule Group Service.
"""

import pytest

from prometheus_client import CollectorRegistry

from shared.config import get_config
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.metrics import MetricsCollector
from service_rules.app.rules.groups import RuleGroupService
from service_rules.app.rules.models import (
    ExecutionMode, RuleDefinition, RuleGroup, RuleGroupCreateRequest
)
from service_rules.app.rules.store import InMemoryRuleGroupStore, InMemoryRuleStore


def error_codes(exc: ValidationError):
    return [error["code"] for error in exc.errors]


class TestRuleGroupService:
    """Test cases for RuleGroupService."""

    @pytest.fixture
    def rule_store(self):
        """Create rule store with two rules."""
        return InMemoryRuleStore([
            RuleDefinition(id="r1", name="High value"),
            RuleDefinition(id="r3", name="Weekend order"),
        ])

    @pytest.fixture
    def service(self, rule_store):
        """Create RuleGroupService instance."""
        return RuleGroupService(rule_store, InMemoryRuleGroupStore(), config=get_config())

    @pytest.mark.asyncio
    async def test_create_scenario(self, service):
        """Test dangling, duplicate and valid rule ids in turn."""
        with pytest.raises(ValidationError) as exc_info:
            await service.create({"name": "G1", "executionMode": "ALL", "ruleIds": ["r1", "r2"]})
        assert error_codes(exc_info.value) == ["RULE_NOT_FOUND"]
        assert "r2" in exc_info.value.errors[0]["message"]

        with pytest.raises(ValidationError) as exc_info:
            await service.create({"name": "G1", "executionMode": "ALL", "ruleIds": ["r1", "r1"]})
        assert error_codes(exc_info.value) == ["DUPLICATE_RULE_IDS"]

        group = await service.create({"name": "G1", "executionMode": "ALL", "ruleIds": ["r1"]})
        assert group.id
        assert group.execution_mode == ExecutionMode.ALL
        assert group.rule_ids == ["r1"]
        assert await service.list() == [group]

    @pytest.mark.asyncio
    async def test_create_reports_all_violations(self, service):
        """Test every violation is reported together."""
        with pytest.raises(ValidationError) as exc_info:
            await service.create({"name": "  ", "executionMode": "SOMETIMES", "ruleIds": ["x", "y", "y"]})

        codes = error_codes(exc_info.value)
        assert codes == [
            "MISSING_NAME",
            "INVALID_EXECUTION_MODE",
            "RULE_NOT_FOUND",
            "RULE_NOT_FOUND",
            "DUPLICATE_RULE_IDS",
        ]
        assert await service.list() == []

    @pytest.mark.asyncio
    async def test_create_missing_execution_mode(self, service):
        """Test absent execution mode."""
        with pytest.raises(ValidationError) as exc_info:
            await service.create({"name": "G"})
        assert error_codes(exc_info.value) == ["MISSING_EXECUTION_MODE"]

    @pytest.mark.asyncio
    async def test_create_accepts_request_model_and_snake_case(self, service):
        """Test both request models and field names are accepted."""
        by_model = await service.create(RuleGroupCreateRequest(name="A", execution_mode="any", rule_ids=["r1"]))
        by_name = await service.create({"name": "B", "execution_mode": "FIRST_MATCH"})

        assert by_model.execution_mode == ExecutionMode.ANY
        assert by_name.execution_mode == ExecutionMode.FIRST_MATCH
        assert by_model.id != by_name.id

    @pytest.mark.asyncio
    async def test_create_rejects_malformed_payload(self, service):
        """Test payloads of the wrong shape become validation errors."""
        with pytest.raises(ValidationError) as exc_info:
            await service.create({"name": "G", "executionMode": "ALL", "ruleIds": "r1"})
        assert error_codes(exc_info.value) == ["INVALID_FIELD"]

    @pytest.mark.asyncio
    async def test_created_group_is_valid(self, service):
        """Test any accepted group passes validation."""
        group = await service.create({"name": "G", "executionMode": "ANY", "ruleIds": ["r1", "r3"]})

        result = await service.validate_group(group)

        assert result.is_valid is True
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_validate_group_warnings(self, service, rule_store):
        """Test warnings do not block validity."""
        for index in range(51):
            await rule_store.save_rule(RuleDefinition(id=f"bulk-{index}", name=f"Bulk {index}"))
        group = RuleGroup(
            id="g",
            name="n" * 101,
            execution_mode=ExecutionMode.ALL,
            rule_ids=[f"bulk-{index}" for index in range(51)]
        )

        result = await service.validate_group(group)

        assert result.is_valid is True
        assert [warning.code for warning in result.warnings] == ["LONG_NAME", "MANY_RULES"]
        assert all(warning.severity == "warning" for warning in result.warnings)

    @pytest.mark.asyncio
    async def test_validate_group_has_no_side_effects(self, service):
        """Test validation stores nothing."""
        await service.validate_group(RuleGroup(id="g", name="G", execution_mode="ALL", rule_ids=["r1"]))
        assert await service.list() == []

    @pytest.mark.asyncio
    async def test_update_merges_and_preserves_id(self, service):
        """Test partial update."""
        group = await service.create({"name": "G", "executionMode": "ALL", "ruleIds": ["r1"]})

        updated = await service.update(group.id, {"name": "Renamed", "id": "other"})

        assert updated.id == group.id
        assert updated.name == "Renamed"
        assert updated.rule_ids == ["r1"]
        assert updated.execution_mode == ExecutionMode.ALL
        assert updated.version == group.version + 1

    @pytest.mark.asyncio
    async def test_update_introducing_duplicate_fails(self, service):
        """Test a merged result with duplicates is rejected."""
        group = await service.create({"name": "G", "executionMode": "ALL", "ruleIds": ["r1"]})

        with pytest.raises(ValidationError) as exc_info:
            await service.update(group.id, {"ruleIds": ["r1", "r1"]})
        assert "DUPLICATE_RULE_IDS" in error_codes(exc_info.value)

        stored = await service.get(group.id)
        assert stored.rule_ids == ["r1"]

    @pytest.mark.asyncio
    async def test_update_revalidates_full_group(self, service):
        """Test an invalid mode change is rejected and nothing is stored."""
        group = await service.create({"name": "G", "executionMode": "ALL", "ruleIds": ["r1"]})

        with pytest.raises(ValidationError) as exc_info:
            await service.update(group.id, {"executionMode": "NEVER"})
        assert error_codes(exc_info.value) == ["INVALID_EXECUTION_MODE"]

        stored = await service.get(group.id)
        assert stored.execution_mode == ExecutionMode.ALL

    @pytest.mark.asyncio
    async def test_update_missing_group(self, service):
        """Test update of an absent group."""
        with pytest.raises(NotFoundError):
            await service.update("nope", {"name": "X"})

    @pytest.mark.asyncio
    async def test_delete(self, service):
        """Test delete and delete of an absent group."""
        group = await service.create({"name": "G", "executionMode": "ALL"})

        await service.delete(group.id)

        assert await service.get(group.id) is None
        with pytest.raises(NotFoundError):
            await service.delete(group.id)

    @pytest.mark.asyncio
    async def test_add_rule_is_idempotent(self, service):
        """Test repeated adds leave a single occurrence."""
        group = await service.create({"name": "G", "executionMode": "ANY", "ruleIds": ["r1"]})

        await service.add_rule_to_group(group.id, "r3")
        await service.add_rule_to_group(group.id, "r3")
        await service.add_rule_to_group(group.id, "r1")

        stored = await service.get(group.id)
        assert stored.rule_ids == ["r1", "r3"]

    @pytest.mark.asyncio
    async def test_add_rule_not_found(self, service):
        """Test add fails for absent group or absent rule."""
        group = await service.create({"name": "G", "executionMode": "ANY"})

        with pytest.raises(NotFoundError, match="Rule group"):
            await service.add_rule_to_group("missing", "r1")
        with pytest.raises(NotFoundError, match="Rule with id r9"):
            await service.add_rule_to_group(group.id, "r9")

    @pytest.mark.asyncio
    async def test_remove_rule_is_idempotent(self, service):
        """Test removing present and absent ids."""
        group = await service.create({"name": "G", "executionMode": "ANY", "ruleIds": ["r1", "r3"]})

        await service.remove_rule_from_group(group.id, "r1")
        await service.remove_rule_from_group(group.id, "r1")

        stored = await service.get(group.id)
        assert stored.rule_ids == ["r3"]
        with pytest.raises(NotFoundError):
            await service.remove_rule_from_group("missing", "r3")

    @pytest.mark.asyncio
    async def test_returned_groups_are_copies(self, service):
        """Test callers cannot change stored state through returned objects."""
        group = await service.create({"name": "G", "executionMode": "ANY", "ruleIds": ["r1"]})

        group.rule_ids.append("r3")
        fetched = await service.get(group.id)

        assert fetched.rule_ids == ["r1"]

    @pytest.mark.asyncio
    async def test_group_count_published(self, rule_store):
        """Test the group gauge follows creates and deletes."""
        registry = CollectorRegistry()
        service = RuleGroupService(rule_store, metrics_collector=MetricsCollector("rules", registry))

        first = await service.create({"name": "A", "executionMode": "ALL"})
        await service.create({"name": "B", "executionMode": "ALL"})
        assert registry.get_sample_value("rule_groups_total") == 2.0

        await service.delete(first.id)
        assert registry.get_sample_value("rule_groups_total") == 1.0


class TestInMemoryRuleGroupStore:
    """Test cases for the compare-and-swap group store."""

    @pytest.mark.asyncio
    async def test_versions_increment(self):
        """Test every save bumps the version."""
        store = InMemoryRuleGroupStore()

        saved = await store.save(RuleGroup(id="g", name="G", execution_mode=ExecutionMode.ALL))
        again = await store.save(saved, expected_version=saved.version)

        assert saved.version == 1
        assert again.version == 2

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self):
        """Test a write against an outdated version fails."""
        store = InMemoryRuleGroupStore()
        saved = await store.save(RuleGroup(id="g", name="G", execution_mode=ExecutionMode.ALL))
        await store.save(saved, expected_version=saved.version)

        with pytest.raises(ConflictError):
            await store.save(saved, expected_version=saved.version)

    @pytest.mark.asyncio
    async def test_concurrent_update_conflicts(self):
        """Test the group service surfaces concurrent modification."""
        rule_store = InMemoryRuleStore([RuleDefinition(id="r1", name="R1")])
        store = InMemoryRuleGroupStore()
        service = RuleGroupService(rule_store, store)
        group = await service.create({"name": "G", "executionMode": "ALL"})

        stale = await store.get(group.id)
        await service.add_rule_to_group(group.id, "r1")

        with pytest.raises(ConflictError):
            await store.save(stale, expected_version=stale.version)
