"""Tests for WorkflowOrchestrator step ordering, failures and results."""

import asyncio

import pytest

from dcaflow.application.artifacts import ArtifactStore
from dcaflow.application.metrics import MetricsCollector
from dcaflow.application.workflow_orchestrator import WorkflowOrchestrator, format_duration
from dcaflow.domain.errors import CollaboratorError, OrchestrationError
from dcaflow.domain.events import EventBus, EventFilter, EventType
from dcaflow.domain.models import (
    ArtifactType,
    OrchestrationRequest,
    PlanPreferences,
    RiskAssessment,
    RiskRequest,
    StepId,
    StepStatus,
)
from dcaflow.domain.providers import FallbackPlanner, HeuristicRiskScorer, Planner

from conftest import FakeClock, FakeMarketData


class FlakyMarketData(FakeMarketData):
    """Fails the first ``failures`` calls."""

    def __init__(self, failures: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures

    async def get_snapshot(self, token: str):
        if len(self.calls) < self.failures:
            self.calls.append(token)
            raise CollaboratorError("temporarily unavailable", collaborator="market_data")
        return await super().get_snapshot(token)


class PlanCheckFailingScorer(HeuristicRiskScorer):
    """Scores normally but fails when asked to validate a plan."""

    async def assess(self, request: RiskRequest) -> RiskAssessment:
        if request.proposed_legs is not None:
            raise RuntimeError("validation backend down")
        return await super().assess(request)


class SlowPlanner(Planner):
    async def plan(self, request):
        await asyncio.sleep(1)


@pytest.fixture
def bus(clock: FakeClock) -> EventBus:
    return EventBus(clock=clock)


@pytest.fixture
def artifacts(clock: FakeClock) -> ArtifactStore:
    return ArtifactStore(clock=clock)


def _orchestrator(bus, artifacts, clock, **overrides) -> WorkflowOrchestrator:
    fields = {
        "bus": bus,
        "artifacts": artifacts,
        "market_data": FakeMarketData(clock=clock),
        "risk_scorer": HeuristicRiskScorer(),
        "planner": FallbackPlanner(),
        "clock": clock,
    }
    fields.update(overrides)
    return WorkflowOrchestrator(**fields)


def _request(**overrides) -> OrchestrationRequest:
    fields = {"token_in": "USDC", "token_out": "ETH", "budget": 100.0}
    fields.update(overrides)
    return OrchestrationRequest(**fields)


def _types(bus: EventBus) -> list[EventType]:
    return [e.type for e in reversed(bus.history())]


class TestHappyPath:
    """Tests for a run where every step completes."""

    async def test_all_steps_complete_in_order(self, bus, artifacts, clock) -> None:
        result = await _orchestrator(bus, artifacts, clock).run(_request())

        assert result.agent_execution_order == [
            "market_analysis",
            "risk_assessment",
            "dca_plan_generation",
            "plan_validation",
            "final_optimization",
        ]
        assert all(s.status == StepStatus.COMPLETED for s in result.steps)
        assert result.validation_results.overall_valid
        assert 0 <= result.quality_score <= 1

    async def test_plan_conserves_budget_and_spacing(self, bus, artifacts, clock) -> None:
        result = await _orchestrator(bus, artifacts, clock).run(_request())

        legs = result.dca_plan
        assert sum(leg.amount for leg in legs) == pytest.approx(100.0, abs=0.01)
        assert legs[0].scheduled_time == clock()
        assert result.interval_minutes == 75
        assert len(legs) == 7

    async def test_market_data_fetched_for_target_token(self, bus, artifacts, clock) -> None:
        market = FakeMarketData(clock=clock)
        await _orchestrator(bus, artifacts, clock, market_data=market).run(_request())

        assert market.calls == ["ETH"]

    async def test_events_emitted(self, bus, artifacts, clock) -> None:
        result = await _orchestrator(bus, artifacts, clock).run(_request())

        assert _types(bus) == [
            EventType.SESSION_CREATED,
            EventType.MARKET_DATA_UPDATED,
            EventType.RISK_ASSESSMENT_CHANGED,
            EventType.DCA_PLAN_CREATED,
        ]
        created = bus.history(EventFilter(types=[EventType.DCA_PLAN_CREATED]))[0]
        assert created.data["plan_artifact_id"] == result.plan_artifact_id

    async def test_existing_session_not_recreated(self, bus, artifacts, clock) -> None:
        result = await _orchestrator(bus, artifacts, clock).run(_request(session_id="s1"))

        assert result.session_id == "s1"
        assert EventType.SESSION_CREATED not in _types(bus)

    async def test_artifacts_linked(self, bus, artifacts, clock) -> None:
        result = await _orchestrator(bus, artifacts, clock).run(_request(session_id="s1"))

        kinds = {a.type for a in artifacts.session_artifacts("s1")}
        assert kinds == {
            ArtifactType.MARKET_ANALYSIS,
            ArtifactType.RISK_ASSESSMENT,
            ArtifactType.DCA_PLAN,
            ArtifactType.OPTIMIZATION_RESULT,
        }
        plan = artifacts.get(result.plan_artifact_id)
        assert plan.data["validation"]["is_valid"] is True
        [child] = artifacts.children(result.plan_artifact_id)
        assert child.type == ArtifactType.OPTIMIZATION_RESULT

    async def test_metrics_recorded(self, bus, artifacts, clock) -> None:
        metrics = MetricsCollector(bus, clock=clock)
        orchestrator = _orchestrator(bus, artifacts, clock, metrics=metrics)

        await orchestrator.run(_request())

        [sample] = metrics.agent_metrics(agent_type="orchestrator")
        assert sample.business.plans_generated == 1.0
        assert orchestrator.stats().completed_orchestrations == 1
        assert orchestrator.stats().success_rate == 1.0


class TestPreferencesAndOptimization:
    async def test_invalid_plan_is_reoptimized(self, bus, artifacts, clock) -> None:
        """A plan that fails validation is regenerated and reported, not rejected."""
        request = _request(preferences=PlanPreferences(max_legs=3, min_interval_mins=90))

        result = await _orchestrator(bus, artifacts, clock).run(request)

        assert len(result.dca_plan) == 3
        assert result.interval_minutes == 90
        assert not result.validation_results.overall_valid
        assert any("Too few legs" in w for w in result.warnings)
        assert EventType.DCA_PLAN_UPDATED in _types(bus)
        assert artifacts.get(result.plan_artifact_id).data["optimized"] is True

    async def test_risk_threshold_warning(self, bus, artifacts, clock) -> None:
        """Risk above the tier warning threshold adds a warning but still plans."""
        market = FakeMarketData(clock=clock, change_percent_24h=-12.0, volume_24h=500_000)

        result = await _orchestrator(bus, artifacts, clock, market_data=market).run(
            _request(user_risk_level="conservative")
        )

        assert any("conservative" in w for w in result.warnings)
        assert bus.history(EventFilter(types=[EventType.AGENT_WARNING]))


class TestFailures:
    """Tests for critical and non-critical step failures."""

    async def test_critical_failure_aborts(self, bus, artifacts, clock) -> None:
        market = FakeMarketData(clock=clock, fail=True)
        orchestrator = _orchestrator(bus, artifacts, clock, market_data=market)

        with pytest.raises(OrchestrationError) as exc_info:
            await orchestrator.run(_request(session_id="s1"))

        error = exc_info.value
        assert error.step_id == StepId.MARKET_ANALYSIS.value
        assert error.session_id == "s1"
        assert isinstance(error.cause, CollaboratorError)
        assert "(step: market_analysis)" in str(error)
        [agent_error] = bus.history(EventFilter(types=[EventType.AGENT_ERROR]))
        assert agent_error.data["step_id"] == "market_analysis"
        assert EventType.DCA_PLAN_CREATED not in _types(bus)
        assert orchestrator.stats().failed_orchestrations == 1
        assert orchestrator.active_orchestrations() == []

    async def test_non_critical_failure_warns_and_skips_dependents(
        self, bus, artifacts, clock
    ) -> None:
        orchestrator = _orchestrator(bus, artifacts, clock, risk_scorer=PlanCheckFailingScorer())

        result = await orchestrator.run(_request())

        statuses = {s.id: s.status for s in result.steps}
        assert statuses[StepId.PLAN_VALIDATION] == StepStatus.FAILED
        assert statuses[StepId.FINAL_OPTIMIZATION] == StepStatus.SKIPPED
        assert any("Plan Validation failed" in w for w in result.warnings)
        assert result.dca_plan

    async def test_collaborator_retried(self, bus, artifacts, clock) -> None:
        market = FlakyMarketData(2, clock=clock)
        orchestrator = _orchestrator(
            bus, artifacts, clock, market_data=market, collaborator_retries=2
        )

        result = await orchestrator.run(_request())

        assert len(market.calls) == 3
        assert result.market_analysis.snapshot.token == "ETH"

    async def test_collaborator_timeout_is_critical(self, bus, artifacts, clock) -> None:
        orchestrator = _orchestrator(
            bus, artifacts, clock, planner=SlowPlanner(), collaborator_timeout=0.01
        )

        with pytest.raises(OrchestrationError) as exc_info:
            await orchestrator.run(_request())

        assert exc_info.value.step_id == StepId.PLAN_GENERATION.value
        assert "timed out" in str(exc_info.value)


@pytest.mark.parametrize(
    "minutes,text", [(45, "45m"), (60, "1h"), (90, "1h 30m"), (450, "7h 30m")]
)
def test_format_duration(minutes: int, text: str) -> None:
    assert format_duration(minutes) == text
