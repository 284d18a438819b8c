"""Tests for market analysis derived from a snapshot."""

import pytest

from dcaflow.domain.analysis import analyze_market, trading_conditions_score, volatility_category
from dcaflow.domain.models import MarketSnapshot, Trend, VolatilityCategory

from conftest import T0


def _snapshot(change: float = 1.0, volume: float = 25_000_000.0, hour: int = 12) -> MarketSnapshot:
    return MarketSnapshot(
        token="ETH",
        price=2500.0,
        volume_24h=volume,
        change_percent_24h=change,
        timestamp=T0.replace(hour=hour),
    )


@pytest.mark.parametrize(
    "percent,category",
    [
        (0.0, VolatilityCategory.LOW),
        (4.99, VolatilityCategory.LOW),
        (5.0, VolatilityCategory.MEDIUM),
        (14.9, VolatilityCategory.MEDIUM),
        (15.0, VolatilityCategory.HIGH),
    ],
)
def test_volatility_category(percent: float, category: VolatilityCategory) -> None:
    assert volatility_category(percent) == category


def test_trend_and_strength() -> None:
    analysis = analyze_market("USDC", "ETH", _snapshot(change=-8.0))

    assert analysis.trend == Trend.BEARISH
    assert analysis.trend_strength == pytest.approx(0.8)
    assert "Strong bearish trend may continue short-term" in analysis.risk_factors


def test_sideways_market_trading_score() -> None:
    """Low volatility, deep volume, flat trend, market hours."""
    score = trading_conditions_score(_snapshot(change=1.0))

    assert score == pytest.approx((0.8 + 1.0 + 1.0 + 0.9) / 4)


def test_recommendations_scale_with_volatility() -> None:
    """High volatility shortens intervals and adds legs for every tier."""
    calm = analyze_market("USDC", "ETH", _snapshot(change=1.0)).recommendations
    wild = analyze_market("USDC", "ETH", _snapshot(change=20.0)).recommendations

    assert calm["moderate"].interval_minutes == 75
    assert calm["moderate"].legs == 6
    assert wild["moderate"].interval_minutes == 30
    assert wild["moderate"].legs == 12
    assert set(calm) == {"conservative", "moderate", "aggressive"}


def test_low_volume_flagged() -> None:
    analysis = analyze_market("USDC", "ETH", _snapshot(volume=10_000))

    assert "Low trading volume may impact execution quality" in analysis.risk_factors
    assert analysis.confidence == pytest.approx(0.85)
