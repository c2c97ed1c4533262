"""
Shared configuration management for the business rules engine.
"""

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RULES_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Observability
    enable_tracing: bool = Field(default=False)
    enable_metrics: bool = Field(default=True)


class RulesEngineConfig(BaseConfig):
    """Rules engine configuration."""

    # Action execution
    default_action_timeout_ms: int = Field(default=5000, ge=1)
    guard_timeout_ms: int = Field(default=50, ge=1)
    script_timeout_ms: int = Field(default=1000, ge=1)
    script_max_steps: int = Field(default=10000, ge=1)

    # Group validation thresholds (warnings only)
    group_name_warning_length: int = Field(default=100)
    group_size_warning: int = Field(default=50)

    # Statistics
    popular_rules_limit: int = Field(default=10)
    recent_errors_limit: int = Field(default=50)
    active_rule_window_seconds: int = Field(default=3600)

    # CALL_API resilience
    call_api_max_attempts: int = Field(default=2, ge=1)
    call_api_retry_base_delay: float = Field(default=0.1, ge=0.0)
    call_api_failure_threshold: int = Field(default=5, ge=1)
    call_api_recovery_timeout: float = Field(default=30.0)


def get_config(**overrides: Any) -> RulesEngineConfig:
    """Get engine configuration, environment first then explicit overrides."""
    return RulesEngineConfig(**overrides)
