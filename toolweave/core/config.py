from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HealthSettings(BaseModel):
    check_interval_seconds: float = Field(30.0, gt=0.0, description="Period of each provider's health timer.")
    check_timeout_seconds: float = Field(5.0, gt=0.0, description="Upper bound for a single health check.")
    latency_threshold_seconds: float = Field(
        2.0,
        gt=0.0,
        description="Successful checks slower than this move a healthy provider to degraded.",
    )
    success_rate_threshold: float = Field(
        0.5,
        ge=0.0,
        le=1.0,
        description="Rolling task success rate below which a healthy provider is degraded.",
    )
    min_samples: int = Field(3, ge=1, description="Task outcomes required before the success rate counts.")
    failures_to_unavailable: int = Field(3, ge=1, description="Consecutive failed checks before unavailable.")
    recoveries_to_healthy: int = Field(2, ge=1, description="Consecutive good checks before degraded -> healthy.")
    recovery_grace_seconds: float = Field(
        60.0,
        ge=0.0,
        description="Minimum time a provider stays unavailable before a recovery check may succeed.",
    )
    removal_grace_seconds: float = Field(
        3600.0,
        ge=0.0,
        description="Sustained unreachability after which a provider is removed from the registry.",
    )


class ProbeSettings(BaseModel):
    latency_budget_seconds: float = Field(5.0, gt=0.0, description="Budget for each diagnostic call.")
    reprobe_interval_seconds: float = Field(
        1800.0,
        gt=0.0,
        description="Long interval used to catch silent capability drift.",
    )
    allow_canary_tasks: bool = Field(
        True,
        description="Fall back to one canary task per declared capability when no listing call exists.",
    )


class RoutingSettings(BaseModel):
    capability_weight: float = Field(0.4, ge=0.0)
    preference_weight: float = Field(0.2, ge=0.0)
    performance_weight: float = Field(0.3, ge=0.0)
    health_weight: float = Field(0.1, ge=0.0)
    exact_match_fit: float = Field(1.0, ge=0.0, le=1.0, description="Fit when the task type itself is probed.")
    covered_fit: float = Field(
        0.6,
        ge=0.0,
        le=1.0,
        description="Fit when required capabilities are covered but the task type is not.",
    )
    generic_fit: float = Field(0.25, ge=0.0, le=1.0, description="Fit for generic fallback providers.")
    healthy_bonus: float = Field(1.0, ge=0.0, le=1.0)
    degraded_bonus: float = Field(0.4, ge=0.0, le=1.0)
    success_rate_share: float = Field(
        0.6,
        ge=0.0,
        le=1.0,
        description="Share of the performance component given to success rate; the rest goes to latency.",
    )
    generic_capabilities: list[str] = Field(
        default_factory=lambda: ["general-purpose", "general"],
        description="Capabilities that let a provider serve as a degraded fallback.",
    )
    parallel_task_types: list[str] = Field(
        default_factory=lambda: ["analysis", "planning"],
        description="Task types worth fanning out to supporting providers.",
    )
    max_parallelism: int = Field(2, ge=1, description="Primary plus supporting providers run concurrently.")
    time_sensitive_threshold_seconds: float = Field(
        30.0,
        ge=0.0,
        description="Tasks whose deadline is closer than this get an on-demand health check first.",
    )


class ExecutionSettings(BaseModel):
    default_timeout_seconds: float = Field(60.0, gt=0.0, description="Deadline applied to tasks without one.")
    retries_per_provider: int = Field(1, ge=0)
    retry_backoff_seconds: float = Field(0.25, ge=0.0)
    retryable_error_kinds: list[str] = Field(
        default_factory=lambda: ["timeout", "connection_reset", "rate_limited"],
    )
    on_demand_check_timeout_seconds: float = Field(2.0, gt=0.0)
    max_reroutes: int = Field(1, ge=0, description="Full re-routes allowed after a capability-class failure.")
    plan_history_size: int = Field(512, ge=1)


class ConflictSettings(BaseModel):
    similarity_threshold: float = Field(
        0.9,
        ge=0.0,
        le=1.0,
        description="Payloads less similar than this are treated as materially different.",
    )
    confirmation_threshold: float = Field(
        0.5,
        ge=0.0,
        le=1.0,
        description="Strict strategy asks for confirmation when similarity drops below this.",
    )
    strategy: Literal["prefer_ranked", "require_confirmation"] = "prefer_ranked"


class PerformanceSettings(BaseModel):
    smoothing: float = Field(0.3, gt=0.0, le=1.0, description="EWMA factor applied to each new observation.")


class PreferenceSettings(BaseModel):
    override_step: float = Field(0.2, gt=0.0, le=1.0)
    minimum: float = Field(0.0, ge=0.0, le=1.0)
    maximum: float = Field(1.0, ge=0.0, le=1.0)
    default_weight: float = Field(0.5, ge=0.0, le=1.0)


class ConnectorSettings(BaseModel):
    terminate_grace_seconds: float = Field(2.0, ge=0.0, description="Wait after SIGTERM before SIGKILL.")
    health_path: str = Field("/health")
    capabilities_path: str = Field("/capabilities")
    invoke_path: str = Field("/invoke")
    rpc_path: str = Field("/rpc")
    verify_ssl: bool = Field(True)
    default_tool_map: dict[str, str] = Field(
        default_factory=lambda: {
            "analysis": "code-analyzer",
            "optimization": "performance-optimizer",
            "security": "security-scanner",
            "refactoring": "code-refactorer",
            "documentation": "doc-generator",
        },
        description="Task type to tool name mapping used by message-rpc providers.",
    )


class DiscoverySettings(BaseModel):
    enabled: bool = Field(True)
    interval_seconds: float = Field(300.0, gt=0.0)
    deregister_missing: bool = Field(
        False,
        description="Remove providers that a discovery source stops reporting.",
    )


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_prefix: str = Field("/api/v1")

    health: HealthSettings = Field(default_factory=HealthSettings)  # type: ignore[arg-type]
    probe: ProbeSettings = Field(default_factory=ProbeSettings)  # type: ignore[arg-type]
    routing: RoutingSettings = Field(default_factory=RoutingSettings)  # type: ignore[arg-type]
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)  # type: ignore[arg-type]
    conflict: ConflictSettings = Field(default_factory=ConflictSettings)  # type: ignore[arg-type]
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)  # type: ignore[arg-type]
    preferences: PreferenceSettings = Field(default_factory=PreferenceSettings)  # type: ignore[arg-type]
    connectors: ConnectorSettings = Field(default_factory=ConnectorSettings)  # type: ignore[arg-type]
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="TOOLWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
