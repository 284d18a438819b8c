"""Risk scoring and monitoring models."""

from enum import Enum

from pydantic import BaseModel, Field

from dcaflow.domain.models.market import MarketSnapshot
from dcaflow.domain.models.plan import PlannedLeg, RiskTolerance


class RiskLevel(str, Enum):
    """Classification of a risk score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class RiskFactors(BaseModel):
    volatility: float = Field(ge=0, le=1)
    liquidity: float = Field(ge=0, le=1)
    timing: float = Field(ge=0, le=1)
    concentration: float = Field(ge=0, le=1)


class PositionSizing(BaseModel):
    max_leg_percent: float
    adjustment_factor: float


class RiskRequest(BaseModel):
    token_in: str
    token_out: str
    budget: float = Field(gt=0)
    user_risk_level: RiskTolerance = RiskTolerance.MODERATE
    market: MarketSnapshot | None = None
    proposed_legs: list[PlannedLeg] | None = None
    interval_minutes: int | None = None


class PlanValidation(BaseModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    adjustments: list[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    overall_risk: RiskLevel
    risk_score: float = Field(ge=0, le=1)
    factors: RiskFactors
    position_sizing: PositionSizing | None = None
    plan_validation: PlanValidation | None = None
    recommendations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.8, ge=0, le=1)


class MonitorActionKind(str, Enum):
    CONTINUE = "continue"
    PAUSE = "pause"
    STOP = "stop"
    ADJUST = "adjust"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MonitorAction(BaseModel):
    kind: MonitorActionKind
    reason: str
    urgency: Urgency = Urgency.LOW


class RiskMonitorResult(BaseModel):
    should_continue: bool
    risk_level: RiskLevel
    risk_score: float
    actions: list[MonitorAction] = Field(default_factory=list)
