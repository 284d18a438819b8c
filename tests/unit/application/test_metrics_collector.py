"""Tests for MetricsCollector thresholds, alerts and aggregation."""

import pytest

from dcaflow.application.metrics import MetricsCollector
from dcaflow.domain.events import EventBus, EventFilter, EventType
from dcaflow.domain.models.metrics import (
    AgentMetrics,
    AlertSeverity,
    MetricThreshold,
    PerformanceMetrics,
    SystemHealthMetrics,
    SystemMetrics,
    ThresholdOperator,
)

from conftest import FakeClock


@pytest.fixture
def bus(clock: FakeClock) -> EventBus:
    return EventBus(clock=clock)


def _sample(error_rate: float = 0.0, execution_time: float = 100.0, **kwargs) -> AgentMetrics:
    return AgentMetrics(
        agent_id=kwargs.pop("agent_id", "planner-1"),
        agent_type=kwargs.pop("agent_type", "planner"),
        performance=PerformanceMetrics(error_rate=error_rate, execution_time=execution_time),
        **kwargs,
    )


class TestThresholds:
    """Tests for threshold evaluation."""

    async def test_violation_raises_alert_and_warning_event(
        self, bus: EventBus, clock: FakeClock
    ) -> None:
        collector = MetricsCollector(bus, clock=clock)

        alerts = await collector.record(_sample(error_rate=0.5, session_id="s1"))

        assert len(alerts) == 1
        assert alerts[0].threshold.metric_path == "performance.error_rate"
        assert alerts[0].current_value == 0.5
        [warning] = bus.history(EventFilter(types=[EventType.AGENT_WARNING]))
        assert warning.data["alert_id"] == alerts[0].id
        assert warning.data["severity"] == "error"
        assert warning.session_id == "s1"

    async def test_healthy_sample_raises_nothing(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, clock=clock)

        assert await collector.record(_sample()) == []
        assert collector.active_alerts() == []

    async def test_system_thresholds_only_read_system_samples(
        self, bus: EventBus, clock: FakeClock
    ) -> None:
        collector = MetricsCollector(bus, clock=clock)

        alerts = await collector.record_system(
            SystemMetrics(system=SystemHealthMetrics(error_rate=0.2))
        )

        assert [a.threshold.metric_path for a in alerts] == ["system.error_rate"]

    def test_unknown_path_rejected(self, bus: EventBus) -> None:
        collector = MetricsCollector(bus, default_thresholds=False)

        with pytest.raises(ValueError):
            collector.add_threshold(
                MetricThreshold(metric_path="nope.value", operator=ThresholdOperator.GT, value=1)
            )

    async def test_replace_and_remove_threshold(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, default_thresholds=False, clock=clock)
        collector.add_threshold(
            MetricThreshold(
                metric_path="custom.slippage",
                operator=ThresholdOperator.GTE,
                value=0.02,
                severity=AlertSeverity.CRITICAL,
            )
        )

        alerts = await collector.record(_sample(custom={"slippage": 0.03}))
        assert len(alerts) == 1

        assert collector.remove_threshold("custom.slippage")
        assert not collector.remove_threshold("custom.slippage")
        assert await collector.record(_sample(custom={"slippage": 0.03})) == []


class TestAlerts:
    async def test_alert_history_bounded(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, max_alerts=3, clock=clock)

        for _ in range(5):
            await collector.record(_sample(error_rate=0.5))

        assert len(collector.alerts()) == 3

    async def test_acknowledge(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, clock=clock)
        [alert] = await collector.record(_sample(error_rate=0.5))

        assert collector.acknowledge(alert.id)
        assert collector.active_alerts() == []
        assert len(collector.alerts()) == 1
        assert not collector.acknowledge("alert_missing")


class TestQueries:
    """Tests for history queries, aggregation and reports."""

    async def test_agent_history_filters(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, default_thresholds=False, clock=clock)
        await collector.record(_sample(timestamp=clock()))
        clock.advance(minutes=5)
        await collector.record(_sample(timestamp=clock(), agent_id="planner-2"))
        await collector.record(_sample(timestamp=clock(), agent_type="risk_scorer"))

        assert len(collector.agent_metrics(agent_type="planner")) == 2
        assert len(collector.agent_metrics(agent_id="planner-2")) == 1
        assert len(collector.agent_metrics(start=clock())) == 2
        assert collector.agent_types() == ["planner", "risk_scorer"]

    async def test_aggregate(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, default_thresholds=False, clock=clock)
        await collector.record(_sample(execution_time=100.0))
        await collector.record(_sample(execution_time=300.0))

        summary = collector.aggregate("planner")

        assert summary["count"] == 2
        assert summary["performance"]["avg_execution_time"] == pytest.approx(200.0)
        assert collector.aggregate("unknown") == {"agent_type": "unknown", "count": 0}

    async def test_collect_system_metrics_uses_bus_and_provider(
        self, bus: EventBus, clock: FakeClock
    ) -> None:
        collector = MetricsCollector(
            bus,
            default_thresholds=False,
            clock=clock,
            snapshot_provider=lambda: {"system": {"active_executions": 2.0}},
        )
        await bus.emit(EventType.SESSION_CREATED, source="test")
        await bus.agent_warning("test", "careful")
        clock.advance(seconds=10)

        sample = await collector.collect_system_metrics()

        assert sample.events.total_events == 2
        assert sample.events.warning_events == 1
        assert sample.system.active_executions == 2.0
        assert sample.system.uptime == pytest.approx(10.0)
        assert collector.system_metrics() == [sample]

    async def test_counts_error_and_warning_events(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, clock=clock)
        await bus.agent_error("planner", "bad")

        assert collector.event_counts() == {"agent_error": 1, "agent_error:planner": 1}

    async def test_performance_report(self, bus: EventBus, clock: FakeClock) -> None:
        collector = MetricsCollector(bus, clock=clock)
        await collector.record(_sample(error_rate=0.5))

        report = collector.performance_report()

        assert report.startswith("# DCA Orchestration Performance Report")
        assert "### planner" in report
        assert "## Active Alerts (1)" in report
