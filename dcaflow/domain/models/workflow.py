"""Orchestration request, workflow step, and result models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from dcaflow.domain.models.market import MarketAnalysis
from dcaflow.domain.models.plan import PlannedLeg, RiskTolerance
from dcaflow.domain.models.risk import PlanValidation, RiskAssessment


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepId(str, Enum):
    MARKET_ANALYSIS = "market_analysis"
    RISK_ASSESSMENT = "risk_assessment"
    PLAN_GENERATION = "dca_plan_generation"
    PLAN_VALIDATION = "plan_validation"
    FINAL_OPTIMIZATION = "final_optimization"


class WorkflowStep(BaseModel):
    """One node of the orchestration DAG. Mutated only by the owning run."""

    id: StepId
    name: str
    collaborator: str
    status: StepStatus = StepStatus.PENDING
    dependencies: list[StepId] = Field(default_factory=list)
    critical: bool = False
    start_time: datetime | None = None
    end_time: datetime | None = None
    result: Any = None
    error: str | None = None


class PlanPreferences(BaseModel):
    max_legs: int | None = Field(default=None, ge=1)
    min_interval_mins: int | None = Field(default=None, ge=1)
    max_interval_mins: int | None = Field(default=None, ge=1)
    avoid_events: bool = False
    user_timezone: str = "UTC"

    @model_validator(mode="after")
    def _interval_bounds(self) -> "PlanPreferences":
        if (
            self.min_interval_mins is not None
            and self.max_interval_mins is not None
            and self.min_interval_mins > self.max_interval_mins
        ):
            raise ValueError("min_interval_mins must not exceed max_interval_mins")
        return self


class OrchestrationRequest(BaseModel):
    token_in: str
    token_out: str
    budget: float = Field(gt=0)
    user_risk_level: RiskTolerance = RiskTolerance.MODERATE
    session_id: str | None = None
    user_id: str | None = None
    preferences: PlanPreferences = Field(default_factory=PlanPreferences)

    @field_validator("token_in", "token_out")
    @classmethod
    def _token_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("token must be non-empty")
        return v.strip()


class ValidationResults(BaseModel):
    market_validation: bool
    risk_validation: bool
    plan_validation: bool
    plan_check: PlanValidation | None = None
    overall_valid: bool


class OrchestrationResult(BaseModel):
    orchestration_id: str
    session_id: str
    market_analysis: MarketAnalysis
    risk_assessment: RiskAssessment
    dca_plan: list[PlannedLeg]
    strategy: str = ""
    interval_minutes: int | None = None
    validation_results: ValidationResults
    recommendations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    quality_score: float = Field(ge=0, le=1)
    confidence_level: float = Field(ge=0, le=1)
    agent_execution_order: list[str] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(default_factory=list)
    plan_artifact_id: str | None = None
    started_at: datetime
    completed_at: datetime

    @property
    def duration_ms(self) -> float:
        return (self.completed_at - self.started_at).total_seconds() * 1000
