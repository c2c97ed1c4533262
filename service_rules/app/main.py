"""
Rules service composition root.
"""

from typing import Any, Dict, Optional

import httpx
from prometheus_client import CollectorRegistry

from shared.config import RulesEngineConfig, get_config
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector

from .rules.conditions import ConditionEvaluator
from .rules.engine import RulesEngine
from .rules.executor import ActionExecutor
from .rules.groups import RuleGroupService
from .rules.handlers import CallApiHandler
from .rules.models import ActionType
from .rules.statistics import RuleMetricsService
from .rules.store import InMemoryRuleGroupStore, InMemoryRuleStore, RuleGroupStore, RuleStore


class RulesService:
    """Wires configuration, logging, metrics, stores and the engine together."""

    def __init__(self,
                 config: Optional[RulesEngineConfig] = None,
                 rule_store: Optional[RuleStore] = None,
                 group_store: Optional[RuleGroupStore] = None,
                 registry: Optional[CollectorRegistry] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 configure_logs: bool = True):
        self.service_name = "rules"
        self.config = config or get_config()
        if configure_logs:
            configure_logging(self.service_name, self.config.log_level)
        self.logger = get_logger(self.service_name)

        self.registry = registry if registry is not None else CollectorRegistry()
        self.metrics = get_metrics_collector(self.service_name, self.registry) if self.config.enable_metrics else None

        self.rule_store = rule_store if rule_store is not None else InMemoryRuleStore()
        self.group_store = group_store if group_store is not None else InMemoryRuleGroupStore()

        self.rule_metrics = RuleMetricsService(self.config)
        self.executor = ActionExecutor(
            config=self.config,
            metrics_service=self.rule_metrics,
            metrics_collector=self.metrics,
            transport=transport
        )
        self.groups = RuleGroupService(
            self.rule_store,
            self.group_store,
            config=self.config,
            metrics_collector=self.metrics
        )
        self.engine = RulesEngine(
            self.rule_store,
            self.groups,
            self.executor,
            metrics_service=self.rule_metrics,
            condition_evaluator=ConditionEvaluator(),
            metrics_collector=self.metrics
        )

        self.logger.info(
            "Rules service initialized",
            env=self.config.env,
            action_types=len(self.executor.get_action_types()),
            metrics_enabled=self.metrics is not None
        )

    def start_metrics_server(self, port: int = 9090) -> None:
        """Expose the service registry over HTTP for Prometheus."""
        if self.metrics is None:
            self.logger.warning("Metrics disabled, not starting metrics server")
            return
        self.metrics.start_metrics_server(port)
        self.logger.info("Metrics server started", port=port)

    async def health_check(self) -> Dict[str, Any]:
        """Component summary for an external dashboard."""
        engine_metrics = self.rule_metrics.get_engine_metrics()
        groups = await self.groups.list()
        call_api = self.executor.get_handler(ActionType.CALL_API.value)
        open_circuits = call_api.circuit_breakers.open_circuits() if isinstance(call_api, CallApiHandler) else []
        return {
            "service": self.service_name,
            "status": "degraded" if open_circuits else "ok",
            "version": "1.0.0",
            "rule_groups": len(groups),
            "action_types": self.executor.get_action_types(),
            "total_executions": engine_metrics.total_executions,
            "error_rate": engine_metrics.error_rate,
            "open_circuits": open_circuits,
        }


def create_service(**kwargs: Any) -> RulesService:
    """Create the rules service."""
    return RulesService(**kwargs)
