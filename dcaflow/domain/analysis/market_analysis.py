"""Market analysis derived from a single price snapshot."""

from datetime import datetime

from dcaflow.domain.models.market import (
    DcaRecommendation,
    MarketAnalysis,
    MarketSnapshot,
    Trend,
    VolatilityCategory,
)
from dcaflow.domain.models.plan import RiskTolerance

_BASE_INTERVALS = {
    RiskTolerance.CONSERVATIVE: 120,
    RiskTolerance.MODERATE: 60,
    RiskTolerance.AGGRESSIVE: 30,
}

_BASE_LEGS = {
    RiskTolerance.CONSERVATIVE: 12,
    RiskTolerance.MODERATE: 8,
    RiskTolerance.AGGRESSIVE: 6,
}

_INTERVAL_MULTIPLIER = {
    VolatilityCategory.HIGH: 0.5,
    VolatilityCategory.MEDIUM: 0.75,
    VolatilityCategory.LOW: 1.25,
}

_LEG_MULTIPLIER = {
    VolatilityCategory.HIGH: 1.5,
    VolatilityCategory.MEDIUM: 1.2,
    VolatilityCategory.LOW: 0.8,
}

# Confidence assigned to analyses built from live provider data.
MARKET_CONFIDENCE = 0.85


def volatility_percent(snapshot: MarketSnapshot) -> float:
    return abs(snapshot.change_percent_24h)


def volatility_category(percent: float) -> VolatilityCategory:
    if percent < 5:
        return VolatilityCategory.LOW
    if percent < 15:
        return VolatilityCategory.MEDIUM
    return VolatilityCategory.HIGH


def trend_of(snapshot: MarketSnapshot) -> tuple[Trend, float]:
    """Return the trend direction and its strength in [0, 1]."""
    change = snapshot.change_percent_24h
    if change > 2:
        direction = Trend.BULLISH
    elif change < -2:
        direction = Trend.BEARISH
    else:
        direction = Trend.SIDEWAYS
    return direction, min(abs(change) / 10, 1.0)


def trading_conditions_score(
    snapshot: MarketSnapshot, *, now: datetime | None = None
) -> float:
    """Average of volatility, volume, trend and timing scores."""
    category = volatility_category(volatility_percent(snapshot))
    volatility_score = {
        VolatilityCategory.MEDIUM: 1.0,
        VolatilityCategory.LOW: 0.8,
        VolatilityCategory.HIGH: 0.6,
    }[category]

    if snapshot.volume_24h > 10_000_000:
        volume_score = 1.0
    elif snapshot.volume_24h > 1_000_000:
        volume_score = 0.7
    else:
        volume_score = 0.4

    direction, strength = trend_of(snapshot)
    if direction == Trend.SIDEWAYS:
        trend_score = 1.0
    elif strength < 0.5:
        trend_score = 0.8
    else:
        trend_score = 0.6

    hour = (now or snapshot.timestamp).hour
    timing_score = 0.9 if 9 <= hour <= 16 else 0.7

    return (volatility_score + volume_score + trend_score + timing_score) / 4


def dca_recommendations(category: VolatilityCategory) -> dict[str, DcaRecommendation]:
    return {
        tier.value: DcaRecommendation(
            interval_minutes=round(_BASE_INTERVALS[tier] * _INTERVAL_MULTIPLIER[category]),
            legs=round(_BASE_LEGS[tier] * _LEG_MULTIPLIER[category]),
        )
        for tier in RiskTolerance
    }


def analyze_market(
    token_in: str,
    token_out: str,
    snapshot: MarketSnapshot,
    *,
    now: datetime | None = None,
) -> MarketAnalysis:
    percent = volatility_percent(snapshot)
    category = volatility_category(percent)
    direction, strength = trend_of(snapshot)

    risk_factors: list[str] = []
    opportunities: list[str] = []

    if category == VolatilityCategory.HIGH:
        risk_factors.append("High price volatility may result in poor execution timing")
        opportunities.append("High volatility creates better dollar-cost averaging opportunities")

    if snapshot.volume_24h < 1_000_000:
        risk_factors.append("Low trading volume may impact execution quality")
    else:
        opportunities.append("Good liquidity supports efficient trade execution")

    if direction == Trend.BEARISH and strength > 0.6:
        risk_factors.append("Strong bearish trend may continue short-term")
        opportunities.append(
            "Bearish conditions may present good entry opportunities for long-term DCA"
        )
    elif direction == Trend.BULLISH and strength > 0.6:
        risk_factors.append("Strong bullish trend may lead to buying at peaks")
        opportunities.append("Bullish momentum supports DCA strategy")

    if abs(snapshot.change_percent_24h) > 15:
        risk_factors.append("Extreme price movement in last 24h indicates high volatility")

    return MarketAnalysis(
        token_in=token_in,
        token_out=token_out,
        snapshot=snapshot,
        volatility=percent,
        volatility_category=category,
        trend=direction,
        trend_strength=strength,
        trading_score=trading_conditions_score(snapshot, now=now),
        confidence=MARKET_CONFIDENCE,
        recommendations=dca_recommendations(category),
        opportunities=opportunities,
        risk_factors=risk_factors,
    )
