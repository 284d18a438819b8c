from abc import ABC, abstractmethod
from typing import Any

from dcaflow.domain.analysis.risk_analysis import assess_risk, validate_plan
from dcaflow.domain.errors import CollaboratorError
from dcaflow.domain.models.risk import RiskAssessment, RiskRequest


class RiskScorer(ABC):
    """Scores the risk of a DCA request, optionally with a proposed plan."""

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "unknown",
            "description": "No description available",
            "requires_config": False,
            "config_keys": [],
        }

    @abstractmethod
    async def assess(self, request: RiskRequest) -> RiskAssessment:
        """Return a risk assessment with ``risk_score`` in [0, 1].

        When ``request.proposed_legs`` is set the assessment also carries a
        ``plan_validation`` for those legs.

        Raises:
            CollaboratorError: If the request cannot be scored
        """
        ...


class HeuristicRiskScorer(RiskScorer):
    """Weighted volatility/liquidity/timing/concentration scoring."""

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "heuristic",
            "description": "Weighted factor scoring against per-tier risk profiles",
            "requires_config": False,
            "config_keys": [],
        }

    async def assess(self, request: RiskRequest) -> RiskAssessment:
        if request.market is None:
            raise CollaboratorError(
                "Market snapshot is required for risk scoring", collaborator="risk_scorer"
            )
        assessment = assess_risk(
            request.market, request.user_risk_level, now=request.market.timestamp
        )
        if request.proposed_legs is not None:
            validation = validate_plan(
                request.proposed_legs,
                request.budget,
                request.user_risk_level,
                assessment.overall_risk,
            )
            assessment = assessment.model_copy(update={"plan_validation": validation})
        return assessment
