"""Tests for built-in collaborators and the collaborator registry."""

from datetime import timedelta

import pytest

from dcaflow.domain.errors import CollaboratorError
from dcaflow.domain.models import Leg, PlanRequest, RiskRequest, RiskTolerance
from dcaflow.domain.providers import (
    CollaboratorFactory,
    CollaboratorKind,
    DryRunSubmitter,
    FallbackPlanner,
    HeuristicRiskScorer,
    Planner,
    StaticMarketDataProvider,
    even_split,
)

from conftest import DELEGATE, T0, FakeMarketData, make_execution_request


class TestEvenSplit:
    """Tests for even_split."""

    def test_even_budget(self) -> None:
        legs = even_split(100.0, 4, 60, T0)

        assert [leg.amount for leg in legs] == [25.0, 25.0, 25.0, 25.0]
        assert [leg.index for leg in legs] == [1, 2, 3, 4]
        assert [leg.scheduled_time for leg in legs] == [
            T0 + timedelta(minutes=m) for m in (0, 60, 120, 180)
        ]

    def test_last_leg_absorbs_remainder(self) -> None:
        legs = even_split(100.0, 3, 30, T0)

        assert legs[0].amount == legs[1].amount == pytest.approx(33.333333)
        assert sum(leg.amount for leg in legs) == pytest.approx(100.0)


class TestFallbackPlanner:
    async def test_plan_starts_at_requested_time(self) -> None:
        request = PlanRequest(
            token_in="USDC",
            token_out="ETH",
            budget=120.0,
            legs=6,
            interval_minutes=45,
            start_time=T0,
        )

        proposal = await FallbackPlanner().plan(request)

        assert len(proposal.legs) == 6
        assert proposal.legs[0].scheduled_time == T0
        assert proposal.interval_minutes == 45
        assert proposal.total_amount == pytest.approx(120.0)
        assert "every 45 minutes" in proposal.strategy


class TestHeuristicRiskScorer:
    """Tests for HeuristicRiskScorer."""

    async def test_requires_market_snapshot(self) -> None:
        request = RiskRequest(token_in="USDC", token_out="ETH", budget=100.0)

        with pytest.raises(CollaboratorError):
            await HeuristicRiskScorer().assess(request)

    async def test_proposed_legs_are_validated(self) -> None:
        snapshot = await FakeMarketData().get_snapshot("ETH")
        request = RiskRequest(
            token_in="USDC",
            token_out="ETH",
            budget=100.0,
            user_risk_level=RiskTolerance.MODERATE,
            market=snapshot,
            proposed_legs=even_split(100.0, 2, 60, T0),
        )

        assessment = await HeuristicRiskScorer().assess(request)

        assert assessment.plan_validation is not None
        assert not assessment.plan_validation.is_valid

    async def test_same_input_same_score(self) -> None:
        snapshot = await FakeMarketData().get_snapshot("ETH")
        request = RiskRequest(token_in="USDC", token_out="ETH", budget=100.0, market=snapshot)
        scorer = HeuristicRiskScorer()

        first = await scorer.assess(request)
        second = await scorer.assess(request)

        assert first.risk_score == second.risk_score


class TestDryRunSubmitter:
    async def test_accepts_any_delegate_without_agent_address(self) -> None:
        assert await DryRunSubmitter().validate_permission(make_execution_request())

    async def test_agent_address_must_match_delegate(self) -> None:
        request = make_execution_request()

        assert await DryRunSubmitter(agent_address=DELEGATE).validate_permission(request)
        assert not await DryRunSubmitter(agent_address="0x" + "9" * 40).validate_permission(request)

    async def test_submit_returns_tx_ref(self) -> None:
        request = make_execution_request()

        leg = Leg(**request.legs[0].model_dump())
        result = await DryRunSubmitter().submit(request, leg)

        assert result.success
        assert result.tx_ref.startswith("0x")


class TestCollaboratorFactory:
    """Tests for CollaboratorFactory."""

    def test_builtins_registered(self) -> None:
        assert "static" in CollaboratorFactory.list_collaborators(CollaboratorKind.MARKET_DATA)
        assert "heuristic" in CollaboratorFactory.list_collaborators("risk_scorer")
        assert "fallback" in CollaboratorFactory.list_collaborators("planner")
        assert "dry-run" in CollaboratorFactory.list_collaborators("submitter")

    def test_create_passes_config(self) -> None:
        provider = CollaboratorFactory.create("market_data", "static", {"price": 42.0})

        assert isinstance(provider, StaticMarketDataProvider)
        assert provider.price == 42.0

    def test_unknown_key_raises_key_error(self) -> None:
        with pytest.raises(KeyError, match="Available"):
            CollaboratorFactory.create("planner", "nope")

    def test_register_rejects_wrong_base_class(self) -> None:
        with pytest.raises(TypeError):
            CollaboratorFactory.register("planner", "bogus", StaticMarketDataProvider)

    def test_register_custom_planner(self, monkeypatch: pytest.MonkeyPatch) -> None:
        class CustomPlanner(Planner):
            async def plan(self, request):
                raise NotImplementedError

        registry = {kind: dict(keys) for kind, keys in CollaboratorFactory._registry.items()}
        monkeypatch.setattr(CollaboratorFactory, "_registry", registry)

        CollaboratorFactory.register(CollaboratorKind.PLANNER, "custom", CustomPlanner)

        assert isinstance(CollaboratorFactory.create("planner", "custom"), CustomPlanner)
        assert CollaboratorFactory.get_metadata("planner", "custom")["name"] == "unknown"

    def test_metadata_for_unknown_key_is_none(self) -> None:
        assert CollaboratorFactory.get_metadata("submitter", "nope") is None
        assert CollaboratorFactory.get_metadata("submitter", "dry-run")["name"] == "dry-run"
