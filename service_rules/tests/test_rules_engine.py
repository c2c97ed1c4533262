"""
Unit tests for the Rules Engine orchestrator.
"""

import pytest

from prometheus_client import CollectorRegistry

from shared.config import get_config
from shared.errors import NotFoundError, ValidationError
from shared.metrics import MetricsCollector
from service_rules.app.rules.engine import RulesEngine
from service_rules.app.rules.executor import ActionExecutor
from service_rules.app.rules.groups import RuleGroupService
from service_rules.app.rules.models import (
    ComparisonOperator, ExecutionMode, LogicalOperator, RuleAction,
    RuleCondition, RuleDefinition, RuleExecutionContext
)
from service_rules.app.rules.statistics import RuleMetricsService
from service_rules.app.rules.store import InMemoryRuleStore


def set_field(field, value, order=0):
    return RuleAction(type="SET_FIELD", parameters={"field": field, "value": value}, order=order)


def rule(rule_id, field, operator, value, actions, priority=0, enabled=True, category=None):
    return RuleDefinition(
        id=rule_id,
        name=rule_id.replace("-", " ").title(),
        conditions=[RuleCondition(field=field, operator=operator, value=value)],
        actions=actions,
        priority=priority,
        enabled=enabled,
        category=category
    )


class TestRulesEngine:
    """Test cases for RulesEngine."""

    @pytest.fixture
    def rules(self):
        """Create leave-request rules."""
        return [
            rule("long-leave", "days", ComparisonOperator.GREATER_THAN, 10,
                 [set_field("needs_director", True)], priority=2, category="leave"),
            rule("any-leave", "days", ComparisonOperator.GREATER_THAN, 0,
                 [set_field("route", "manager")], priority=1, category="leave"),
            rule("intern", "employee.grade", ComparisonOperator.EQUALS, "intern",
                 [set_field("route", "hr")], priority=0),
        ]

    @pytest.fixture
    def rule_store(self, rules):
        """Create rule store."""
        return InMemoryRuleStore(rules)

    @pytest.fixture
    def metrics(self):
        """Create RuleMetricsService instance."""
        return RuleMetricsService(get_config())

    @pytest.fixture
    def group_service(self, rule_store):
        """Create RuleGroupService instance."""
        return RuleGroupService(rule_store)

    @pytest.fixture
    def engine(self, rule_store, group_service, metrics):
        """Create RulesEngine instance."""
        executor = ActionExecutor(config=get_config(), metrics_service=metrics)
        return RulesEngine(rule_store, group_service, executor, metrics_service=metrics)

    def context(self, days, grade="staff"):
        return RuleExecutionContext(
            entity_id="leave-1",
            entity_type="leave_request",
            user_id="emp-1",
            entity={"days": days, "employee": {"grade": grade}}
        )

    @pytest.mark.asyncio
    async def test_all_mode_runs_when_every_rule_matches(self, engine, rules):
        """Test every rule matching in ALL mode."""
        ctx = self.context(days=14, grade="intern")

        result = await engine.execute_rules(rules, ctx, ExecutionMode.ALL)

        assert result.matched is True
        assert [r.rule_id for r in result.rule_results] == ["intern", "any-leave", "long-leave"]
        assert len(result.action_results) == 3
        assert ctx.entity["route"] == "manager"
        assert ctx.entity["needs_director"] is True

    @pytest.mark.asyncio
    async def test_all_mode_runs_matching_rules_when_one_fails(self, engine, rules):
        """Test matching rules still run their actions when another rule does not match."""
        ctx = self.context(days=14)

        result = await engine.execute_rules(rules, ctx, ExecutionMode.ALL)

        assert result.matched is False
        assert [r.matched for r in result.rule_results] == [False, True, True]
        assert len(result.action_results) == 2
        assert result.rule_results[0].actions == []
        assert ctx.entity["route"] == "manager"
        assert ctx.entity["needs_director"] is True

    @pytest.mark.asyncio
    async def test_all_and_any_run_the_same_actions(self, engine, rules):
        """Test ALL and ANY differ only in how the group match is reported."""
        all_ctx, any_ctx = self.context(days=14), self.context(days=14)

        all_result = await engine.execute_rules(rules, all_ctx, ExecutionMode.ALL)
        any_result = await engine.execute_rules(rules, any_ctx, ExecutionMode.ANY)

        assert all_ctx.entity == any_ctx.entity
        assert [a.action_id for a in all_result.action_results] == [a.action_id for a in any_result.action_results]
        assert (all_result.matched, any_result.matched) == (False, True)

    @pytest.mark.asyncio
    async def test_all_mode_with_no_enabled_rules(self, engine):
        """Test an empty rule list never matches."""
        result = await engine.execute_rules([], self.context(days=14), ExecutionMode.ALL)

        assert result.matched is False
        assert result.rule_results == []

    @pytest.mark.asyncio
    async def test_any_mode_runs_each_matching_rule(self, engine, rules):
        """Test matching rules run their actions."""
        ctx = self.context(days=3)

        result = await engine.execute_rules(rules, ctx, "ANY")

        assert result.matched is True
        assert [r.matched for r in result.rule_results] == [False, True, False]
        assert ctx.entity == {"days": 3, "employee": {"grade": "staff"}, "route": "manager"}

    @pytest.mark.asyncio
    async def test_first_match_stops_at_first_match(self, engine, rules, metrics):
        """Test only the first matching rule by priority runs."""
        ctx = self.context(days=14, grade="intern")

        result = await engine.execute_rules(rules, ctx, ExecutionMode.FIRST_MATCH)

        assert result.matched is True
        assert [r.rule_id for r in result.rule_results] == ["intern"]
        assert ctx.entity["route"] == "hr"
        assert "needs_director" not in ctx.entity
        assert metrics.get_rule_statistics("long-leave").execution_count == 0

    @pytest.mark.asyncio
    async def test_no_match(self, engine, rules):
        """Test a group where nothing matches."""
        result = await engine.execute_rules(rules, self.context(days=0), ExecutionMode.FIRST_MATCH)

        assert result.matched is False
        assert len(result.rule_results) == 3
        assert result.action_results == []

    @pytest.mark.asyncio
    async def test_disabled_rules_skipped(self, engine):
        """Test disabled rules are not evaluated."""
        rules = [
            rule("off", "days", ComparisonOperator.GREATER_THAN, 0, [set_field("off", True)], enabled=False),
            rule("on", "days", ComparisonOperator.GREATER_THAN, 0, [set_field("on", True)]),
        ]
        ctx = self.context(days=1)

        result = await engine.execute_rules(rules, ctx, ExecutionMode.ALL)

        assert [r.rule_id for r in result.rule_results] == ["on"]
        assert "off" not in ctx.entity

    @pytest.mark.asyncio
    async def test_empty_rule_list(self, engine):
        """Test a group with no enabled rules does not match."""
        result = await engine.execute_rules([], self.context(days=1), ExecutionMode.ALL)
        assert result.matched is False
        assert result.rule_results == []

    @pytest.mark.asyncio
    async def test_logical_operator_respected(self, engine):
        """Test a rule combining conditions with OR."""
        either = RuleDefinition(
            id="either",
            name="Either",
            conditions=[
                RuleCondition(field="days", operator=ComparisonOperator.GREATER_THAN, value=100),
                RuleCondition(field="employee.grade", operator=ComparisonOperator.EQUALS, value="staff"),
            ],
            logical_operator=LogicalOperator.OR,
            actions=[set_field("flag", True)]
        )
        ctx = self.context(days=1)

        result = await engine.execute_rules([either], ctx, ExecutionMode.ANY)

        assert result.matched is True
        assert ctx.entity["flag"] is True

    @pytest.mark.asyncio
    async def test_invalid_mode(self, engine, rules):
        """Test an unknown execution mode is rejected."""
        with pytest.raises(ValidationError):
            await engine.execute_rules(rules, self.context(days=1), "SOMETIMES")

    @pytest.mark.asyncio
    async def test_records_rule_metrics(self, engine, rules, metrics):
        """Test each evaluated rule is recorded."""
        await engine.execute_rules(rules, self.context(days=3), ExecutionMode.ANY)
        await engine.execute_rules(rules, self.context(days=30), ExecutionMode.ANY)

        any_leave = metrics.get_rule_statistics("any-leave")
        long_leave = metrics.get_rule_statistics("long-leave")

        assert any_leave.execution_count == 2
        assert any_leave.match_count == 2
        assert long_leave.match_count == 1
        assert metrics.get_engine_metrics().execution_by_category == {"leave": 4}
        assert metrics.get_action_statistics("SET_FIELD").execution_count == 3

    @pytest.mark.asyncio
    async def test_failed_action_marks_rule_error(self, engine, metrics):
        """Test action failures surface on the rule and in metrics."""
        broken = rule("broken", "days", ComparisonOperator.GREATER_THAN, 0, [
            RuleAction(type="SET_FIELD", parameters={"value": 1}),
            set_field("after", True, order=1),
        ])
        ctx = self.context(days=2)

        result = await engine.execute_rules([broken], ctx, ExecutionMode.ANY)

        rule_result = result.rule_results[0]
        assert rule_result.success is False
        assert rule_result.error.code == "ACTION_FAILED"
        assert result.errors == [rule_result.error]
        assert ctx.entity["after"] is True
        assert metrics.get_rule_statistics("broken").error_count == 1

        recent = metrics.get_recent_errors()
        assert len(recent) == 1
        assert recent[0].rule_id == "broken"
        assert recent[0].action_id == rule_result.actions[0].action_id
        assert metrics.get_action_statistics("SET_FIELD").error_count == 1

    @pytest.mark.asyncio
    async def test_prometheus_rule_counters(self, rule_store, group_service, rules):
        """Test rule executions reach the Prometheus collector."""
        registry = CollectorRegistry()
        collector = MetricsCollector("rules", registry)
        engine = RulesEngine(
            rule_store, group_service, ActionExecutor(config=get_config()), metrics_collector=collector
        )

        await engine.execute_rules(rules, self.context(days=3), ExecutionMode.ANY)

        assert registry.get_sample_value("rule_executions_total", {"matched": "true", "success": "true"}) == 1.0
        assert registry.get_sample_value("rule_executions_total", {"matched": "false", "success": "true"}) == 2.0

    @pytest.mark.asyncio
    async def test_execute_group(self, engine, group_service):
        """Test executing a stored group."""
        group = await group_service.create({
            "name": "Leave routing",
            "executionMode": "FIRST_MATCH",
            "ruleIds": ["long-leave", "any-leave"],
        })
        ctx = self.context(days=20)

        result = await engine.execute_group(group.id, ctx)

        assert result.group_id == group.id
        assert result.mode == ExecutionMode.FIRST_MATCH
        assert [r.rule_id for r in result.rule_results] == ["any-leave"]
        assert result.execution_id.startswith("exec-")
        assert ctx.entity["route"] == "manager"

    @pytest.mark.asyncio
    async def test_execute_group_with_deleted_rule(self, engine, group_service, rule_store):
        """Test a rule removed after grouping is reported, not fatal."""
        group = await group_service.create({
            "name": "Leave routing",
            "executionMode": "ANY",
            "ruleIds": ["any-leave", "intern"],
        })
        await rule_store.delete_rule("intern")

        result = await engine.execute_group(group.id, self.context(days=1))

        assert result.matched is True
        assert [error.code for error in result.errors] == ["RULE_NOT_FOUND"]
        assert result.errors[0].rule_id == "intern"

    @pytest.mark.asyncio
    async def test_execute_missing_group(self, engine):
        """Test executing an absent group."""
        with pytest.raises(NotFoundError):
            await engine.execute_group("missing", self.context(days=1))
