"""Request bodies for the HTTP API."""

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from dcaflow.domain.models import OrchestrationRequest, PlannedLeg
from dcaflow.domain.models.metrics import (
    BusinessMetrics,
    MetricThreshold,
    PerformanceMetrics,
    QualityMetrics,
    UserExperienceMetrics,
)


class OrchestrateBody(OrchestrationRequest):
    # Registers a completion webhook for the new session.
    webhook_url: str | None = None


class ScheduleBody(BaseModel):
    """Plan legs accepted for execution under a delegation."""

    delegation_id: str
    delegator: str
    delegate: str
    router: str
    token_in: str
    token_out: str
    budget: float | None = Field(default=None, gt=0)
    legs: list[PlannedLeg]
    permission_context: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    plan_artifact_id: str | None = None


class CallbackBody(BaseModel):
    trigger_event_types: list[str] = Field(min_length=1)
    kind: Literal["webhook", "log"] = "webhook"
    name: str = ""
    session_id: str | None = None
    conditions: dict[str, Any] = Field(default_factory=dict)
    # webhook
    url: str | None = None
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    # log
    level: Literal["debug", "info", "warning", "error"] = "info"
    message: str | None = None
    # rate limit
    max_calls: int | None = Field(default=None, ge=1)
    window_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _webhook_needs_url(self) -> "CallbackBody":
        if self.kind == "webhook" and not self.url:
            raise ValueError("url is required for webhook callbacks")
        if (self.max_calls is None) != (self.window_seconds is None):
            raise ValueError("max_calls and window_seconds must be given together")
        return self

    @property
    def log_level(self) -> int:
        return logging.getLevelName(self.level.upper())


class MetricsRecordBody(BaseModel):
    agent_type: str
    session_id: str | None = None
    performance: PerformanceMetrics
    quality: QualityMetrics
    user_experience: UserExperienceMetrics
    business: BusinessMetrics
    custom: dict[str, float] = Field(default_factory=dict)


class MetricsActionBody(BaseModel):
    action: Literal["acknowledge_alert", "add_threshold", "remove_threshold"]
    alert_id: str | None = None
    threshold: MetricThreshold | None = None
    metric_path: str | None = None

    @model_validator(mode="after")
    def _action_arguments(self) -> "MetricsActionBody":
        required = {
            "acknowledge_alert": ("alert_id", self.alert_id),
            "add_threshold": ("threshold", self.threshold),
            "remove_threshold": ("metric_path", self.metric_path),
        }
        name, value = required[self.action]
        if value is None:
            raise ValueError(f"{name} is required for {self.action}")
        return self


class StreamActionBody(BaseModel):
    action: Literal["close"]
    stream_id: str
