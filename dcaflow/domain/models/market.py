"""Market data and analysis models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class MarketSnapshot(BaseModel):
    """Point-in-time price data for one token, as returned by a provider."""

    token: str
    price: float = Field(ge=0)
    volume_24h: float = Field(default=0.0, ge=0)
    change_24h: float = 0.0
    change_percent_24h: float = 0.0
    high_24h: float | None = None
    low_24h: float | None = None
    timestamp: datetime


class VolatilityCategory(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Trend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    SIDEWAYS = "sideways"


class DcaRecommendation(BaseModel):
    interval_minutes: int
    legs: int


class MarketAnalysis(BaseModel):
    token_in: str
    token_out: str
    snapshot: MarketSnapshot
    volatility: float
    volatility_category: VolatilityCategory
    trend: Trend
    trend_strength: float = Field(ge=0, le=1)
    trading_score: float = Field(ge=0, le=1)
    confidence: float = Field(default=0.7, ge=0, le=1)
    recommendations: dict[str, DcaRecommendation] = Field(default_factory=dict)
    opportunities: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
