"""Engine configuration models.

Config structure (``.dcaflow/config.yml``):
    scheduler:
      tick_interval: 30
      idle_log_threshold: 10
    risk:
      moderate:
        max_risk_score: 0.6
        warning_threshold: 0.5
    position_sizing:
      min_legs: 4
      max_legs: 20
    providers:
      planner: fallback
      options:
        market_data:
          price: 2500

Every section is optional; omitted values fall back to the defaults below.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dcaflow.domain.constants import (
    DEFAULT_CLEANUP_INTERVAL_SECONDS,
    DEFAULT_EVENT_MAX_AGE_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_IDLE_LOG_THRESHOLD,
    DEFAULT_MAX_ALERTS,
    DEFAULT_MAX_CALLBACK_HISTORY,
    DEFAULT_MAX_EVENT_HISTORY,
    DEFAULT_MAX_METRICS_HISTORY,
    DEFAULT_MAX_SESSION_SNAPSHOTS,
    DEFAULT_SESSION_CLEANUP_SECONDS,
    DEFAULT_SESSION_TIMEOUT_SECONDS,
    DEFAULT_STREAM_IDLE_SECONDS,
    DEFAULT_SUBMISSION_TIMEOUT_SECONDS,
    DEFAULT_TICK_INTERVAL_SECONDS,
    DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
)
from dcaflow.domain.models.plan import RiskTolerance


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tick_interval: float = Field(default=DEFAULT_TICK_INTERVAL_SECONDS, gt=0)
    idle_log_threshold: int = Field(default=DEFAULT_IDLE_LOG_THRESHOLD, ge=1)
    submission_timeout: float = Field(default=DEFAULT_SUBMISSION_TIMEOUT_SECONDS, gt=0)
    auto_start: bool = True


class EventsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_history: int = Field(default=DEFAULT_MAX_EVENT_HISTORY, ge=1)
    max_age: float = Field(default=DEFAULT_EVENT_MAX_AGE_SECONDS, gt=0)
    cleanup_interval: float = Field(default=DEFAULT_CLEANUP_INTERVAL_SECONDS, gt=0)


class ArtifactsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_artifacts: int = Field(default=10_000, ge=1)
    cleanup_interval: float = Field(default=DEFAULT_CLEANUP_INTERVAL_SECONDS, gt=0)


class SessionsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(default=DEFAULT_SESSION_TIMEOUT_SECONDS, gt=0)
    cleanup_interval: float = Field(default=DEFAULT_SESSION_CLEANUP_SECONDS, gt=0)
    max_snapshots: int = Field(default=DEFAULT_MAX_SESSION_SNAPSHOTS, ge=1)


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_history: int = Field(default=DEFAULT_MAX_METRICS_HISTORY, ge=1)
    max_alerts: int = Field(default=DEFAULT_MAX_ALERTS, ge=1)
    collection_interval: float = Field(default=60.0, gt=0)
    enable_system_metrics: bool = True
    default_thresholds: bool = True


class CallbacksConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_execution_history: int = Field(default=DEFAULT_MAX_CALLBACK_HISTORY, ge=1)
    default_webhook_timeout: float = Field(default=DEFAULT_WEBHOOK_TIMEOUT_SECONDS, gt=0)
    register_defaults: bool = True


class TierThreshold(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_risk_score: float = Field(gt=0, le=1)
    warning_threshold: float = Field(ge=0, le=1)

    @model_validator(mode="after")
    def _warning_below_max(self) -> "TierThreshold":
        if self.warning_threshold >= self.max_risk_score:
            raise ValueError("warning_threshold must be less than max_risk_score")
        return self


class RiskConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conservative: TierThreshold = Field(
        default_factory=lambda: TierThreshold(max_risk_score=0.4, warning_threshold=0.3)
    )
    moderate: TierThreshold = Field(
        default_factory=lambda: TierThreshold(max_risk_score=0.6, warning_threshold=0.5)
    )
    aggressive: TierThreshold = Field(
        default_factory=lambda: TierThreshold(max_risk_score=0.8, warning_threshold=0.7)
    )

    def for_tier(self, tier: RiskTolerance) -> TierThreshold:
        return getattr(self, RiskTolerance(tier).value)


class PositionSizingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_legs: int = Field(default=4, ge=1)
    max_legs: int = Field(default=20, ge=1)
    max_single_leg_percent: float = Field(default=25.0, gt=0, le=100)

    @model_validator(mode="after")
    def _legs_ordered(self) -> "PositionSizingConfig":
        if self.min_legs >= self.max_legs:
            raise ValueError("min_legs must be less than max_legs")
        return self


class ApiConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=0)
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)


class ProvidersConfig(BaseModel):
    """Collaborator implementation keys plus per-kind constructor options."""

    model_config = ConfigDict(extra="forbid")

    market_data: str = "static"
    risk_scorer: str = "heuristic"
    planner: str = "fallback"
    submitter: str = "dry-run"
    options: dict[str, dict[str, Any]] = Field(default_factory=dict)


class StreamingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    heartbeat_interval: float = Field(default=DEFAULT_HEARTBEAT_SECONDS, gt=0)
    idle_timeout: float = Field(default=DEFAULT_STREAM_IDLE_SECONDS, gt=0)


class DcaflowConfig(BaseModel):
    """Top-level configuration. Read once at startup."""

    model_config = ConfigDict(extra="forbid")

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    callbacks: CallbacksConfig = Field(default_factory=CallbacksConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    position_sizing: PositionSizingConfig = Field(default_factory=PositionSizingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
