"""Heuristic risk scoring and plan validation against per-tier risk profiles."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from dcaflow.domain.analysis.market_analysis import volatility_percent
from dcaflow.domain.constants import BUDGET_TOLERANCE
from dcaflow.domain.models.market import MarketSnapshot
from dcaflow.domain.models.plan import PlannedLeg, RiskTolerance
from dcaflow.domain.models.risk import (
    PlanValidation,
    PositionSizing,
    RiskAssessment,
    RiskFactors,
    RiskLevel,
)


@dataclass(frozen=True)
class RiskProfile:
    max_volatility: float  # percent
    max_leg_percent: float
    min_legs: int
    max_legs: int
    min_interval_minutes: int
    max_interval_minutes: int


RISK_PROFILES: dict[RiskTolerance, RiskProfile] = {
    RiskTolerance.CONSERVATIVE: RiskProfile(10, 8, 8, 20, 60, 240),
    RiskTolerance.MODERATE: RiskProfile(20, 15, 6, 15, 30, 180),
    RiskTolerance.AGGRESSIVE: RiskProfile(40, 25, 4, 12, 15, 120),
}

_FACTOR_WEIGHTS = {
    "volatility": 0.4,
    "liquidity": 0.3,
    "timing": 0.2,
    "concentration": 0.1,
}

# Single-pair plans carry a fixed concentration risk.
CONCENTRATION_RISK = 0.2


def risk_factors(
    snapshot: MarketSnapshot, profile: RiskProfile, *, now: datetime | None = None
) -> RiskFactors:
    volatility = min(volatility_percent(snapshot) / profile.max_volatility, 1.0)

    if snapshot.volume_24h < 1_000_000:
        liquidity = 0.8
    elif snapshot.volume_24h < 10_000_000:
        liquidity = 0.4
    else:
        liquidity = 0.1

    hour = (now or datetime.now(timezone.utc)).hour
    off_hours = 0.3 if 2 <= hour <= 6 else 0.1
    timing = min(abs(snapshot.change_percent_24h) / 100 + off_hours, 1.0)

    return RiskFactors(
        volatility=volatility,
        liquidity=liquidity,
        timing=timing,
        concentration=CONCENTRATION_RISK,
    )


def risk_score(factors: RiskFactors) -> float:
    score = sum(getattr(factors, name) * weight for name, weight in _FACTOR_WEIGHTS.items())
    return min(max(score, 0.0), 1.0)


def classify(score: float) -> RiskLevel:
    if score < 0.3:
        return RiskLevel.LOW
    if score < 0.6:
        return RiskLevel.MEDIUM
    if score < 0.85:
        return RiskLevel.HIGH
    return RiskLevel.EXTREME


def position_sizing(score: float, profile: RiskProfile) -> PositionSizing:
    """Shrink leg size by up to 30% as risk rises, never above the tier cap."""
    adjustment = 1 - score * 0.3
    return PositionSizing(
        max_leg_percent=min(profile.max_leg_percent * adjustment, profile.max_leg_percent),
        adjustment_factor=adjustment,
    )


def _recommendations(
    factors: RiskFactors, profile: RiskProfile, snapshot: MarketSnapshot
) -> list[str]:
    out: list[str] = []
    if factors.volatility > 0.7:
        out.append(
            f"High volatility detected ({factors.volatility * 100:.1f}%). Consider "
            f"increasing number of legs to {profile.max_legs} for better averaging."
        )
    if factors.liquidity > 0.5:
        out.append(
            "Low liquidity detected. Consider smaller position sizes and longer "
            "intervals between trades."
        )
    if factors.timing > 0.6:
        out.append(
            "Suboptimal timing conditions. Consider delaying execution or using "
            "longer intervals."
        )
    if snapshot.change_percent_24h > 10:
        out.append(
            "Strong upward movement detected. Consider adjusting entry strategy to "
            "avoid FOMO buying."
        )
    elif snapshot.change_percent_24h < -10:
        out.append(
            "Strong downward movement detected. This may present a good DCA opportunity."
        )
    if not out:
        out.append("Market conditions are favorable for standard DCA execution.")
    return out


def _warnings(
    factors: RiskFactors, level: RiskLevel, snapshot: MarketSnapshot
) -> list[str]:
    out: list[str] = []
    if level == RiskLevel.EXTREME:
        out.append(
            "EXTREME RISK: Consider postponing DCA execution until market conditions "
            "stabilize."
        )
    if factors.volatility > 0.8:
        out.append(
            f"VOLATILITY WARNING: Current volatility ({factors.volatility * 100:.1f}%) "
            "exceeds safe thresholds."
        )
    if factors.liquidity > 0.7:
        out.append(
            "LIQUIDITY WARNING: Low trading volume may result in poor execution prices."
        )
    if abs(snapshot.change_percent_24h) > 20:
        out.append(
            f"PRICE MOVEMENT WARNING: Extreme 24h price change "
            f"({snapshot.change_percent_24h:.1f}%) detected."
        )
    return out


def assess_risk(
    snapshot: MarketSnapshot,
    tolerance: RiskTolerance,
    *,
    now: datetime | None = None,
) -> RiskAssessment:
    profile = RISK_PROFILES[tolerance]
    factors = risk_factors(snapshot, profile, now=now)
    score = risk_score(factors)
    level = classify(score)
    return RiskAssessment(
        overall_risk=level,
        risk_score=score,
        factors=factors,
        position_sizing=position_sizing(score, profile),
        recommendations=_recommendations(factors, profile, snapshot),
        warnings=_warnings(factors, level, snapshot),
    )


def validate_plan(
    legs: Sequence[PlannedLeg],
    budget: float,
    tolerance: RiskTolerance,
    overall_risk: RiskLevel,
) -> PlanValidation:
    """Check a leg schedule against the tier's risk profile."""
    profile = RISK_PROFILES[tolerance]
    issues: list[str] = []
    adjustments: list[str] = []

    if not legs:
        return PlanValidation(is_valid=False, issues=["Plan empty or invalid"])

    total = sum(leg.amount for leg in legs)
    if abs(total - budget) > BUDGET_TOLERANCE:
        issues.append(f"Total plan amount (${total:.2f}) doesn't match budget (${budget:.2f})")

    count = len(legs)
    if count < profile.min_legs:
        issues.append(
            f"Too few legs ({count}), minimum for {tolerance.value} is {profile.min_legs}"
        )
        adjustments.append(f"Increase to at least {profile.min_legs} legs")
    elif count > profile.max_legs:
        issues.append(
            f"Too many legs ({count}), maximum for {tolerance.value} is {profile.max_legs}"
        )
        adjustments.append(f"Reduce to maximum {profile.max_legs} legs")

    max_leg = budget * profile.max_leg_percent / 100
    for position, leg in enumerate(legs, start=1):
        if leg.amount > max_leg + BUDGET_TOLERANCE:
            issues.append(
                f"Leg {position} amount (${leg.amount:.2f}) exceeds "
                f"{profile.max_leg_percent:g}% limit (${max_leg:.2f})"
            )
            adjustments.append(f"Reduce leg {position} to maximum ${max_leg:.2f}")

    for position in range(1, count):
        gap = (
            legs[position].scheduled_time - legs[position - 1].scheduled_time
        ).total_seconds() / 60
        if gap < profile.min_interval_minutes:
            issues.append(
                f"Interval between legs {position} and {position + 1} ({gap:g}min) is too short"
            )
            adjustments.append(
                f"Increase intervals to at least {profile.min_interval_minutes} minutes"
            )
        elif gap > profile.max_interval_minutes:
            issues.append(
                f"Interval between legs {position} and {position + 1} ({gap:g}min) is too long"
            )
            adjustments.append(
                f"Reduce intervals to maximum {profile.max_interval_minutes} minutes"
            )

    if overall_risk in (RiskLevel.HIGH, RiskLevel.EXTREME):
        adjustments.append("Consider increasing number of legs due to high market risk")
        adjustments.append(
            "Consider reducing individual leg sizes for better risk distribution"
        )

    return PlanValidation(is_valid=not issues, issues=issues, adjustments=adjustments)
