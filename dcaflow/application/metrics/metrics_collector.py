"""Structured metrics, threshold rules and bounded alert history."""

import logging
from collections import Counter, OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Callable

from dcaflow.domain.constants import DEFAULT_MAX_ALERTS, DEFAULT_MAX_METRICS_HISTORY
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event import Event
from dcaflow.domain.events.event_types import EventType
from dcaflow.domain.models.metrics import (
    AgentMetrics,
    Alert,
    AlertSeverity,
    AnyMetrics,
    MetricAccessor,
    MetricThreshold,
    SystemMetrics,
    ThresholdOperator,
    resolve_accessor,
)

logger = logging.getLogger(__name__)

SOURCE = "metrics_collector"

DEFAULT_THRESHOLDS: tuple[MetricThreshold, ...] = (
    MetricThreshold(
        metric_path="performance.execution_time",
        operator=ThresholdOperator.GT,
        value=30_000,
        severity=AlertSeverity.WARNING,
        description="Agent execution time exceeds 30 seconds",
    ),
    MetricThreshold(
        metric_path="performance.error_rate",
        operator=ThresholdOperator.GT,
        value=0.1,
        severity=AlertSeverity.ERROR,
        description="Agent error rate exceeds 10%",
    ),
    MetricThreshold(
        metric_path="quality.accuracy",
        operator=ThresholdOperator.LT,
        value=0.8,
        severity=AlertSeverity.WARNING,
        description="Agent accuracy below 80%",
    ),
    MetricThreshold(
        metric_path="system.error_rate",
        operator=ThresholdOperator.GT,
        value=0.05,
        severity=AlertSeverity.ERROR,
        description="System error rate exceeds 5%",
    ),
    MetricThreshold(
        metric_path="resources.memory_utilization",
        operator=ThresholdOperator.GT,
        value=0.95,
        severity=AlertSeverity.WARNING,
        description="Memory utilization exceeds 95%",
    ),
)

# Returns partial system metrics by category, e.g. {"coordination": {...}}.
SystemSnapshotProvider = Callable[[], dict[str, dict[str, float]]]


class MetricsCollector:
    def __init__(
        self,
        bus: EventBus,
        *,
        max_history: int = DEFAULT_MAX_METRICS_HISTORY,
        max_alerts: int = DEFAULT_MAX_ALERTS,
        default_thresholds: bool = True,
        snapshot_provider: SystemSnapshotProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_history < 1 or max_alerts < 1:
            raise ValueError("history sizes must be positive")
        self.bus = bus
        self.max_history = max_history
        self.max_alerts = max_alerts
        self.snapshot_provider = snapshot_provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._started_at = self._clock()
        self._agent_metrics: dict[str, deque[AgentMetrics]] = {}
        self._system_metrics: deque[SystemMetrics] = deque(maxlen=max_history)
        self._thresholds: dict[str, tuple[MetricThreshold, MetricAccessor]] = {}
        self._alerts: OrderedDict[str, Alert] = OrderedDict()
        self._event_counts: Counter[str] = Counter()
        self._last_collection: tuple[datetime, int] | None = None
        if default_thresholds:
            for threshold in DEFAULT_THRESHOLDS:
                self.add_threshold(threshold)
        self._subscription_id = bus.subscribe(
            [EventType.AGENT_ERROR, EventType.AGENT_WARNING], self._count_event
        )

    # ========================================================================
    # Recording
    # ========================================================================

    async def record(self, metrics: AgentMetrics) -> list[Alert]:
        """Store an agent sample and raise an alert for each violated threshold."""
        key = f"{metrics.agent_type}:{metrics.agent_id}"
        history = self._agent_metrics.get(key)
        if history is None:
            history = self._agent_metrics[key] = deque(maxlen=self.max_history)
        history.append(metrics)
        return await self._evaluate(metrics, agent_id=metrics.agent_id, session_id=metrics.session_id)

    async def record_system(self, metrics: SystemMetrics) -> list[Alert]:
        self._system_metrics.append(metrics)
        return await self._evaluate(metrics)

    async def collect_system_metrics(self) -> SystemMetrics:
        """Build a system sample from bus statistics and the snapshot provider, then record it."""
        now = self._clock()
        stats = self.bus.stats()
        if self._last_collection is None:
            rate = 0.0
        else:
            then, total_then = self._last_collection
            elapsed = (now - then).total_seconds()
            rate = max(stats.total_events - total_then, 0) / elapsed if elapsed > 0 else 0.0
        self._last_collection = (now, stats.total_events)

        categories: dict[str, dict[str, Any]] = {
            "system": {
                "uptime": (now - self._started_at).total_seconds(),
                "error_rate": stats.error_count / stats.total_events if stats.total_events else 0.0,
            },
            "coordination": {},
            "resources": {"event_history_size": float(stats.total_events)},
            "events": {
                "total_events": float(stats.total_events),
                "events_per_second": rate,
                "error_events": float(stats.error_count),
                "warning_events": float(stats.warning_count),
            },
        }
        if self.snapshot_provider is not None:
            for category, values in self.snapshot_provider().items():
                categories.setdefault(category, {}).update(values)

        sample = SystemMetrics(timestamp=now, **categories)
        await self.record_system(sample)
        return sample

    # ========================================================================
    # Thresholds and alerts
    # ========================================================================

    def add_threshold(self, threshold: MetricThreshold) -> None:
        """Add or replace the rule for ``threshold.metric_path``.

        Raises:
            ValueError: If the metric path is unknown
        """
        accessor = resolve_accessor(threshold.metric_path)
        self._thresholds[threshold.metric_path] = (threshold, accessor)
        logger.debug(
            "Threshold %s %s %s", threshold.metric_path, threshold.operator.value, threshold.value
        )

    def remove_threshold(self, metric_path: str) -> bool:
        return self._thresholds.pop(metric_path, None) is not None

    def thresholds(self) -> list[MetricThreshold]:
        return [t for t, _ in self._thresholds.values()]

    def active_alerts(self) -> list[Alert]:
        return [a.model_copy() for a in self._alerts.values() if not a.acknowledged]

    def alerts(self) -> list[Alert]:
        return [a.model_copy() for a in self._alerts.values()]

    def acknowledge(self, alert_id: str) -> bool:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        return True

    async def _evaluate(
        self,
        metrics: AnyMetrics,
        *,
        agent_id: str | None = None,
        session_id: str | None = None,
    ) -> list[Alert]:
        raised: list[Alert] = []
        for threshold, accessor in list(self._thresholds.values()):
            current = accessor(metrics)
            if current is None or not threshold.operator.compare(current, threshold.value):
                continue
            alert = Alert(
                threshold=threshold,
                triggered_at=self._clock(),
                current_value=current,
                agent_id=agent_id,
                session_id=session_id,
                message=(
                    f"{threshold.metric_path} is {current:g} "
                    f"({threshold.operator.value} {threshold.value:g})"
                ),
            )
            self._store_alert(alert)
            raised.append(alert)
            logger.warning("Alert [%s] %s", threshold.severity.value, alert.message)
            await self.bus.agent_warning(
                SOURCE,
                alert.message,
                session_id=session_id,
                context={
                    "alert_id": alert.id,
                    "metric_path": threshold.metric_path,
                    "current_value": current,
                    "threshold": threshold.value,
                    "severity": threshold.severity.value,
                },
            )
        return raised

    def _store_alert(self, alert: Alert) -> None:
        self._alerts[alert.id] = alert
        while len(self._alerts) > self.max_alerts:
            self._alerts.popitem(last=False)

    def _count_event(self, event: Event) -> None:
        self._event_counts[event.type.value] += 1
        self._event_counts[f"{event.type.value}:{event.source}"] += 1

    def event_counts(self) -> dict[str, int]:
        return dict(self._event_counts)

    # ========================================================================
    # Queries
    # ========================================================================

    def agent_types(self) -> list[str]:
        return sorted({key.partition(":")[0] for key in self._agent_metrics})

    def agent_metrics(
        self,
        agent_type: str | None = None,
        agent_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AgentMetrics]:
        samples: list[AgentMetrics] = []
        for key, history in self._agent_metrics.items():
            kind, _, ident = key.partition(":")
            if agent_type is not None and kind != agent_type:
                continue
            if agent_id is not None and ident != agent_id:
                continue
            samples.extend(
                m
                for m in history
                if (start is None or m.timestamp >= start) and (end is None or m.timestamp <= end)
            )
        samples.sort(key=lambda m: m.timestamp)
        return samples

    def system_metrics(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[SystemMetrics]:
        return [
            m
            for m in self._system_metrics
            if (start is None or m.timestamp >= start) and (end is None or m.timestamp <= end)
        ]

    def aggregate(
        self,
        agent_type: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        samples = self.agent_metrics(agent_type=agent_type, start=start, end=end)
        if not samples:
            return {"agent_type": agent_type, "count": 0}

        def mean(values: list[float]) -> float:
            return sum(values) / len(values)

        return {
            "agent_type": agent_type,
            "count": len(samples),
            "performance": {
                "avg_execution_time": mean([m.performance.execution_time for m in samples]),
                "avg_success_rate": mean([m.performance.success_rate for m in samples]),
                "avg_error_rate": mean([m.performance.error_rate for m in samples]),
            },
            "quality": {
                "avg_accuracy": mean([m.quality.accuracy for m in samples]),
                "avg_f1_score": mean([m.quality.f1_score for m in samples]),
            },
            "business": {
                "plans_generated": sum(m.business.plans_generated for m in samples),
                "executions_completed": sum(m.business.executions_completed for m in samples),
                "total_volume": sum(m.business.total_volume for m in samples),
            },
        }

    def performance_report(self) -> str:
        """Markdown summary of agent performance, latest system sample and alerts."""
        lines = ["# DCA Orchestration Performance Report", ""]
        lines.append(f"Generated: {self._clock().isoformat()}")
        lines.append("")

        agent_types = self.agent_types()
        lines.append("## Agent Performance")
        lines.append("")
        if not agent_types:
            lines.append("No agent metrics recorded.")
        for agent_type in agent_types:
            summary = self.aggregate(agent_type)
            perf = summary["performance"]
            lines.append(f"### {agent_type}")
            lines.append(f"- Samples: {summary['count']}")
            lines.append(f"- Avg execution time: {perf['avg_execution_time']:.0f}ms")
            lines.append(f"- Avg success rate: {perf['avg_success_rate'] * 100:.1f}%")
            lines.append(f"- Avg error rate: {perf['avg_error_rate'] * 100:.1f}%")
            lines.append(f"- Avg accuracy: {summary['quality']['avg_accuracy'] * 100:.1f}%")
            lines.append("")

        lines.append("## System")
        lines.append("")
        if self._system_metrics:
            latest = self._system_metrics[-1]
            lines.append(f"- Uptime: {latest.system.uptime:.0f}s")
            lines.append(f"- Error rate: {latest.system.error_rate * 100:.2f}%")
            lines.append(f"- Events: {latest.events.total_events:.0f}")
            lines.append(f"- Active executions: {latest.system.active_executions:.0f}")
        else:
            lines.append("No system metrics recorded.")
        lines.append("")

        active = self.active_alerts()
        lines.append(f"## Active Alerts ({len(active)})")
        lines.append("")
        for alert in active:
            lines.append(f"- [{alert.threshold.severity.value}] {alert.message}")
        return "\n".join(lines) + "\n"

    def close(self) -> None:
        self.bus.unsubscribe(self._subscription_id)
