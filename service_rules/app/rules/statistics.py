"""
Rule execution statistics.
"""

import copy
import threading
from collections import deque
from datetime import timedelta
from typing import Deque, Dict, List, Optional

from shared.config import RulesEngineConfig, get_config
from shared.logging import get_logger

from .models import (
    ActionStatistics, RuleEngineMetrics, RuleError, RuleStatistics, utcnow
)


class RuleMetricsService:
    """In-memory per-rule and engine-wide execution statistics.

    Records are created lazily on the first execution of a rule id and are
    only cleared by ``reset_metrics``. Running means are updated
    incrementally, never recomputed from history. A single lock serializes
    every mutation so the service can be shared between threads.
    """

    def __init__(self, config: Optional[RulesEngineConfig] = None):
        self.config = config or get_config()
        self.logger = get_logger("rules.metrics")
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._rule_stats: Dict[str, RuleStatistics] = {}
        self._action_stats: Dict[str, ActionStatistics] = {}
        self._recent_errors: Deque[RuleError] = deque(maxlen=self.config.recent_errors_limit)
        self._by_category: Dict[str, int] = {}
        self._by_hour: Dict[str, int] = {}
        self._total_executions = 0
        self._total_errors = 0
        self._average_execution_time = 0.0

    def record_rule_execution(self,
                              rule_id: str,
                              execution_time: float,
                              matched: bool,
                              success: bool,
                              category: Optional[str] = None,
                              error: Optional[RuleError] = None) -> RuleStatistics:
        """Record one execution of a rule; ``execution_time`` is in ms."""
        now = utcnow()
        with self._lock:
            stats = self._rule_stats.get(rule_id)
            if stats is None:
                stats = RuleStatistics(rule_id=rule_id)
                self._rule_stats[rule_id] = stats

            stats.execution_count += 1
            n = stats.execution_count
            stats.average_execution_time = (stats.average_execution_time * (n - 1) + execution_time) / n
            stats.last_executed = now

            if matched:
                stats.match_count += 1
                stats.last_matched = now
            if not success:
                stats.error_count += 1

            stats.success_rate = (stats.execution_count - stats.error_count) / stats.execution_count

            self._total_executions += 1
            total = self._total_executions
            self._average_execution_time = (self._average_execution_time * (total - 1) + execution_time) / total
            if not success:
                self._total_errors += 1

            if category:
                self._by_category[category] = self._by_category.get(category, 0) + 1
            hour = f"{now.hour:02d}"
            self._by_hour[hour] = self._by_hour.get(hour, 0) + 1

            if error is not None:
                self._recent_errors.append(error)
            elif not success:
                self._recent_errors.append(RuleError(
                    code="RULE_EXECUTION_FAILED",
                    message=f"Rule {rule_id} execution failed",
                    rule_id=rule_id,
                    timestamp=now
                ))

            snapshot = copy.copy(stats)

        self.logger.debug(
            "Rule execution recorded",
            rule_id=rule_id,
            execution_time=execution_time,
            matched=matched,
            success=success
        )
        return snapshot

    def record_action_execution(self,
                                action_type: str,
                                execution_time: float,
                                success: bool,
                                error: Optional[str] = None) -> None:
        """Record one action outcome for its type; ``execution_time`` is in ms."""
        with self._lock:
            stats = self._action_stats.get(action_type)
            if stats is None:
                stats = ActionStatistics(action_type=action_type)
                self._action_stats[action_type] = stats

            stats.execution_count += 1
            n = stats.execution_count
            stats.average_execution_time = (stats.average_execution_time * (n - 1) + execution_time) / n
            if not success:
                stats.error_count += 1
            stats.success_rate = (stats.execution_count - stats.error_count) / stats.execution_count

            if not success and error:
                self._recent_errors.append(RuleError(
                    code="ACTION_FAILED",
                    message=error,
                    details={"action_type": action_type}
                ))

    def get_rule_statistics(self, rule_id: str) -> RuleStatistics:
        """Stored statistics for a rule, or a cold-start record if it never ran."""
        with self._lock:
            stats = self._rule_stats.get(rule_id)
            if stats is None:
                return RuleStatistics(rule_id=rule_id)
            return copy.copy(stats)

    def get_action_statistics(self, action_type: str) -> ActionStatistics:
        with self._lock:
            stats = self._action_stats.get(action_type)
            if stats is None:
                return ActionStatistics(action_type=action_type)
            return copy.copy(stats)

    def get_engine_metrics(self) -> RuleEngineMetrics:
        """Aggregate snapshot; a deep copy the caller may mutate freely."""
        active_since = utcnow() - timedelta(seconds=self.config.active_rule_window_seconds)
        with self._lock:
            metrics = RuleEngineMetrics(
                total_executions=self._total_executions,
                total_rules=len(self._rule_stats),
                active_rules=sum(
                    1 for stats in self._rule_stats.values()
                    if stats.last_executed is not None and stats.last_executed >= active_since
                ),
                average_execution_time=self._average_execution_time,
                error_rate=(self._total_errors / self._total_executions) if self._total_executions else 0.0,
                popular_rules=self._popular(self.config.popular_rules_limit),
                recent_errors=list(self._recent_errors),
                execution_by_category=self._by_category,
                execution_by_hour=self._by_hour,
                execution_by_action_type=self._action_stats,
            )
            return copy.deepcopy(metrics)

    def get_popular_rules(self, limit: int = 10) -> List[RuleStatistics]:
        """Top ``limit`` rules by descending execution count."""
        with self._lock:
            return copy.deepcopy(self._popular(limit))

    def get_recent_errors(self, limit: int = 10) -> List[RuleError]:
        """Most recent errors, newest first."""
        with self._lock:
            errors = list(self._recent_errors)
        errors.reverse()
        return copy.deepcopy(errors[:max(limit, 0)])

    def get_unhealthy_rules(self, min_success_rate: float = 0.9, min_executions: int = 10) -> List[RuleStatistics]:
        """Rules with enough executions whose success rate is below the threshold."""
        with self._lock:
            unhealthy = [
                stats for stats in self._rule_stats.values()
                if stats.execution_count >= min_executions and stats.success_rate < min_success_rate
            ]
            unhealthy.sort(key=lambda stats: stats.success_rate)
            return copy.deepcopy(unhealthy)

    def reset_metrics(self) -> None:
        """Clear all statistics."""
        with self._lock:
            self._reset_state()
        self.logger.info("Rule metrics reset")

    def _popular(self, limit: int) -> List[RuleStatistics]:
        ranked = sorted(self._rule_stats.values(), key=lambda stats: stats.execution_count, reverse=True)
        return ranked[:max(limit, 0)]
