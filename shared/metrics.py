"""
Shared metrics configuration for the business rules engine.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, start_http_server


class MetricsCollector:
    """Centralized Prometheus collector for the engine.

    Metrics register only with the registry passed in; with no registry
    they are created unregistered, so several collectors can coexist in
    one process (tests, multiple engines).
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_rules_metrics()

    def _setup_rules_metrics(self):
        """Set up rules engine metrics."""
        self._metrics["rule_executions_total"] = Counter(
            "rule_executions_total",
            "Total rule executions",
            ["matched", "success"],
            registry=self.registry
        )

        self._metrics["rule_execution_duration_seconds"] = Histogram(
            "rule_execution_duration_seconds",
            "Rule execution duration in seconds",
            registry=self.registry
        )

        self._metrics["action_executions_total"] = Counter(
            "action_executions_total",
            "Total action executions",
            ["action_type", "status"],
            registry=self.registry
        )

        self._metrics["action_execution_duration_seconds"] = Histogram(
            "action_execution_duration_seconds",
            "Action execution duration in seconds",
            ["action_type"],
            registry=self.registry
        )

        self._metrics["rule_groups_total"] = Gauge(
            "rule_groups_total",
            "Number of rule groups held in the store",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        if self.registry is not None:
            start_http_server(port, registry=self.registry)
        else:
            start_http_server(port)

    def record_rule_execution(self, matched: bool, success: bool, duration: float):
        """Record a rule execution; duration in seconds."""
        self._metrics["rule_executions_total"].labels(
            matched=str(matched).lower(),
            success=str(success).lower()
        ).inc()
        self._metrics["rule_execution_duration_seconds"].observe(duration)

    def record_action_execution(self, action_type: str, status: str, duration: float):
        """Record an action outcome (success, failure, skipped); duration in seconds."""
        self._metrics["action_executions_total"].labels(
            action_type=action_type,
            status=status
        ).inc()
        if status != "skipped":
            self._metrics["action_execution_duration_seconds"].labels(
                action_type=action_type
            ).observe(duration)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def set_rule_group_count(self, count: int):
        """Publish the number of stored rule groups."""
        self._metrics["rule_groups_total"].set(count)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
