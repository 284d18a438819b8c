"""Pure market and risk computations used by the built-in collaborators."""

from .market_analysis import analyze_market, trading_conditions_score, volatility_category
from .risk_analysis import RISK_PROFILES, RiskProfile, assess_risk, classify, validate_plan

__all__ = [
    "analyze_market",
    "trading_conditions_score",
    "volatility_category",
    "RISK_PROFILES",
    "RiskProfile",
    "assess_risk",
    "classify",
    "validate_plan",
]
