"""Agent and system metrics, threshold rules, and alerts.

Threshold rules name a metric as ``<category>.<field>`` (for example
``performance.error_rate``). Paths are resolved once, when a rule is added, into
a typed accessor for that category; ``custom.<name>`` reads a custom agent
metric.
"""

import operator
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Union

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Agent metrics
# ============================================================================


class PerformanceMetrics(BaseModel):
    execution_time: float = 0.0  # ms
    success_rate: float = 1.0
    error_rate: float = 0.0
    throughput: float = 0.0


class QualityMetrics(BaseModel):
    accuracy: float = 1.0
    precision: float = 1.0
    recall: float = 1.0
    f1_score: float = 1.0
    user_satisfaction: float | None = None


class UserExperienceMetrics(BaseModel):
    response_time: float = 0.0
    completion_rate: float = 1.0
    abandonment_rate: float = 0.0
    retry_rate: float = 0.0


class BusinessMetrics(BaseModel):
    plans_generated: float = 0.0
    executions_completed: float = 0.0
    total_volume: float = 0.0
    average_savings: float = 0.0


class AgentMetrics(BaseModel):
    agent_id: str
    agent_type: str
    session_id: str | None = None
    timestamp: datetime = Field(default_factory=_now)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)
    user_experience: UserExperienceMetrics = Field(default_factory=UserExperienceMetrics)
    business: BusinessMetrics = Field(default_factory=BusinessMetrics)
    custom: dict[str, float] = Field(default_factory=dict)


# ============================================================================
# System metrics
# ============================================================================


class SystemHealthMetrics(BaseModel):
    total_sessions: float = 0.0
    active_sessions: float = 0.0
    active_executions: float = 0.0
    uptime: float = 0.0  # seconds
    error_rate: float = 0.0


class CoordinationMetrics(BaseModel):
    orchestrations: float = 0.0
    successful_orchestrations: float = 0.0
    average_orchestration_time: float = 0.0  # ms
    callbacks_fired: float = 0.0


class ResourceMetrics(BaseModel):
    memory_usage: float = 0.0  # bytes
    memory_utilization: float = 0.0
    event_history_size: float = 0.0
    artifact_count: float = 0.0


class EventMetrics(BaseModel):
    total_events: float = 0.0
    events_per_second: float = 0.0
    error_events: float = 0.0
    warning_events: float = 0.0


class SystemMetrics(BaseModel):
    timestamp: datetime = Field(default_factory=_now)
    system: SystemHealthMetrics = Field(default_factory=SystemHealthMetrics)
    coordination: CoordinationMetrics = Field(default_factory=CoordinationMetrics)
    resources: ResourceMetrics = Field(default_factory=ResourceMetrics)
    events: EventMetrics = Field(default_factory=EventMetrics)


# ============================================================================
# Thresholds and alerts
# ============================================================================


class ThresholdOperator(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    GTE = "gte"
    LTE = "lte"

    def compare(self, current: float, target: float) -> bool:
        return _OPERATORS[self](current, target)


_OPERATORS: dict[ThresholdOperator, Callable[[float, float], bool]] = {
    ThresholdOperator.GT: operator.gt,
    ThresholdOperator.LT: operator.lt,
    ThresholdOperator.EQ: operator.eq,
    ThresholdOperator.GTE: operator.ge,
    ThresholdOperator.LTE: operator.le,
}


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class MetricThreshold(BaseModel):
    metric_path: str
    operator: ThresholdOperator
    value: float
    severity: AlertSeverity = AlertSeverity.WARNING
    description: str | None = None


class Alert(BaseModel):
    id: str = Field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    threshold: MetricThreshold
    triggered_at: datetime = Field(default_factory=_now)
    current_value: float
    acknowledged: bool = False
    agent_id: str | None = None
    session_id: str | None = None
    message: str = ""


# ============================================================================
# Typed accessors
# ============================================================================

AnyMetrics = Union[AgentMetrics, SystemMetrics]


@dataclass(frozen=True)
class MetricAccessor:
    """Reads one numeric metric from a sample of ``target`` type."""

    path: str
    target: type
    read: Callable[[AnyMetrics], float | None]

    def __call__(self, metrics: AnyMetrics) -> float | None:
        if not isinstance(metrics, self.target):
            return None
        return self.read(metrics)


_AGENT_CATEGORIES: dict[str, type[BaseModel]] = {
    "performance": PerformanceMetrics,
    "quality": QualityMetrics,
    "user_experience": UserExperienceMetrics,
    "business": BusinessMetrics,
}

_SYSTEM_CATEGORIES: dict[str, type[BaseModel]] = {
    "system": SystemHealthMetrics,
    "coordination": CoordinationMetrics,
    "resources": ResourceMetrics,
    "events": EventMetrics,
}


def _field_reader(category: str, name: str) -> Callable[[AnyMetrics], float | None]:
    def read(metrics: AnyMetrics) -> float | None:
        return getattr(getattr(metrics, category), name)

    return read


def _custom_reader(name: str) -> Callable[[AnyMetrics], float | None]:
    def read(metrics: AnyMetrics) -> float | None:
        return metrics.custom.get(name)  # type: ignore[union-attr]

    return read


def _build_accessors() -> dict[str, MetricAccessor]:
    accessors: dict[str, MetricAccessor] = {}
    for target, categories in (
        (AgentMetrics, _AGENT_CATEGORIES),
        (SystemMetrics, _SYSTEM_CATEGORIES),
    ):
        for category, model in categories.items():
            for name in model.model_fields:
                path = f"{category}.{name}"
                accessors[path] = MetricAccessor(
                    path=path, target=target, read=_field_reader(category, name)
                )
    return accessors


METRIC_ACCESSORS: dict[str, MetricAccessor] = _build_accessors()


def resolve_accessor(metric_path: str) -> MetricAccessor:
    """Return the accessor for a metric path.

    Raises:
        ValueError: If the path names no known metric
    """
    accessor = METRIC_ACCESSORS.get(metric_path)
    if accessor is not None:
        return accessor
    category, _, name = metric_path.partition(".")
    if category == "custom" and name:
        return MetricAccessor(path=metric_path, target=AgentMetrics, read=_custom_reader(name))
    raise ValueError(f"Unknown metric path: '{metric_path}'")
