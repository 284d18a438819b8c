"""Ongoing risk checks for executions in progress."""

import logging
from dataclasses import dataclass, field

from dcaflow.application.config_models import RiskConfig
from dcaflow.domain.events.bus import EventBus
from dcaflow.domain.events.event_types import EventType
from dcaflow.domain.models.plan import RiskTolerance
from dcaflow.domain.models.risk import (
    MonitorAction,
    MonitorActionKind,
    RiskAssessment,
    RiskLevel,
    RiskMonitorResult,
    RiskRequest,
    Urgency,
)
from dcaflow.domain.providers.market_data_provider import MarketDataProvider
from dcaflow.domain.providers.risk_scorer import RiskScorer

logger = logging.getLogger(__name__)

SOURCE = "risk_monitor"

# Budget used when re-scoring market risk; the score does not depend on it.
MONITOR_BUDGET = 1000.0


def evaluate(
    assessment: RiskAssessment, tier: RiskTolerance, thresholds: RiskConfig
) -> RiskMonitorResult:
    """Turn a fresh assessment into continue/pause/stop/adjust actions for ``tier``."""
    limits = thresholds.for_tier(tier)
    actions: list[MonitorAction] = []
    should_continue = True

    if assessment.risk_score > limits.max_risk_score:
        should_continue = False
        actions.append(
            MonitorAction(
                kind=MonitorActionKind.STOP,
                reason=(
                    f"Risk score ({assessment.risk_score * 100:.1f}%) exceeds maximum "
                    f"threshold for {tier.value} profile"
                ),
                urgency=Urgency.HIGH,
            )
        )
    elif assessment.risk_score > limits.warning_threshold:
        actions.append(
            MonitorAction(
                kind=MonitorActionKind.ADJUST,
                reason="Risk score approaching threshold, consider adjusting strategy",
                urgency=Urgency.MEDIUM,
            )
        )

    if assessment.overall_risk == RiskLevel.EXTREME:
        should_continue = False
        actions.append(
            MonitorAction(
                kind=MonitorActionKind.STOP,
                reason="Extreme market conditions detected, halting execution for safety",
                urgency=Urgency.HIGH,
            )
        )

    if assessment.factors.volatility > 0.8:
        actions.append(
            MonitorAction(
                kind=MonitorActionKind.PAUSE,
                reason="High volatility detected, consider pausing until conditions stabilize",
                urgency=Urgency.MEDIUM,
            )
        )

    if assessment.factors.liquidity > 0.7:
        actions.append(
            MonitorAction(
                kind=MonitorActionKind.ADJUST,
                reason="Low liquidity detected, consider reducing trade sizes",
                urgency=Urgency.MEDIUM,
            )
        )

    if not actions:
        actions.append(
            MonitorAction(
                kind=MonitorActionKind.CONTINUE,
                reason="Risk levels within acceptable parameters",
            )
        )

    return RiskMonitorResult(
        should_continue=should_continue,
        risk_level=assessment.overall_risk,
        risk_score=assessment.risk_score,
        actions=actions,
    )


FAILSAFE_RESULT = RiskMonitorResult(
    should_continue=False,
    risk_level=RiskLevel.EXTREME,
    risk_score=1.0,
    actions=[
        MonitorAction(
            kind=MonitorActionKind.STOP,
            reason="Risk monitoring system error, halting for safety",
            urgency=Urgency.HIGH,
        )
    ],
)


@dataclass
class RiskMonitor:
    bus: EventBus
    market_data: MarketDataProvider
    risk_scorer: RiskScorer
    thresholds: RiskConfig = field(default_factory=RiskConfig)

    async def monitor(
        self,
        session_id: str | None,
        execution_id: str,
        token: str,
        user_risk_level: RiskTolerance,
    ) -> RiskMonitorResult:
        """Re-score market risk for ``token``. Any collaborator failure yields a stop."""
        try:
            snapshot = await self.market_data.get_snapshot(token)
            assessment = await self.risk_scorer.assess(
                RiskRequest(
                    token_in=token,
                    token_out=token,
                    budget=MONITOR_BUDGET,
                    user_risk_level=user_risk_level,
                    market=snapshot,
                )
            )
        except Exception as e:
            logger.error("Risk monitoring failed for %s: %s", execution_id, e)
            return FAILSAFE_RESULT.model_copy(deep=True)

        result = evaluate(assessment, RiskTolerance(user_risk_level), self.thresholds)
        logger.info(
            "Risk check for %s: %s (%.2f), continue=%s",
            execution_id,
            result.risk_level.value,
            result.risk_score,
            result.should_continue,
        )
        await self.bus.emit(
            EventType.RISK_ASSESSMENT_CHANGED,
            source=SOURCE,
            session_id=session_id,
            data={
                "execution_id": execution_id,
                "new_risk": result.risk_level.value,
                "risk_score": result.risk_score,
                "should_continue": result.should_continue,
                "action_count": len(result.actions),
            },
        )
        return result
