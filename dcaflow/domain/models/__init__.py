"""Domain models for the DCA orchestration engine."""

from .artifact import Artifact, ArtifactMetadata, ArtifactQuery, ArtifactType, TimeRange
from .plan import (
    PlannedLeg,
    PlanProposal,
    PlanRequest,
    RiskTolerance,
    check_budget_conservation,
    check_leg_order,
    validate_legs,
)
from .market import DcaRecommendation, MarketAnalysis, MarketSnapshot, Trend, VolatilityCategory
from .risk import (
    MonitorAction,
    MonitorActionKind,
    PlanValidation,
    PositionSizing,
    RiskAssessment,
    RiskFactors,
    RiskLevel,
    RiskMonitorResult,
    RiskRequest,
    Urgency,
)
from .workflow import (
    OrchestrationRequest,
    OrchestrationResult,
    PlanPreferences,
    StepId,
    StepStatus,
    ValidationResults,
    WorkflowStep,
)
from .execution import (
    ExecutionRequest,
    ExecutionStatus,
    Leg,
    LegStatus,
    ScheduledExecution,
    SubmissionResult,
    TickResult,
)
from .session import SessionExport, SessionState, StateSnapshot

__all__ = [
    "Artifact",
    "ArtifactMetadata",
    "ArtifactQuery",
    "ArtifactType",
    "TimeRange",
    "PlannedLeg",
    "PlanProposal",
    "PlanRequest",
    "RiskTolerance",
    "check_budget_conservation",
    "check_leg_order",
    "validate_legs",
    "DcaRecommendation",
    "MarketAnalysis",
    "MarketSnapshot",
    "Trend",
    "VolatilityCategory",
    "MonitorAction",
    "MonitorActionKind",
    "PlanValidation",
    "PositionSizing",
    "RiskAssessment",
    "RiskFactors",
    "RiskLevel",
    "RiskMonitorResult",
    "RiskRequest",
    "Urgency",
    "OrchestrationRequest",
    "OrchestrationResult",
    "PlanPreferences",
    "StepId",
    "StepStatus",
    "ValidationResults",
    "WorkflowStep",
    "ExecutionRequest",
    "ExecutionStatus",
    "Leg",
    "LegStatus",
    "ScheduledExecution",
    "SubmissionResult",
    "TickResult",
    "SessionExport",
    "SessionState",
    "StateSnapshot",
]
