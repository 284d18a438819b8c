from typing import Any, Literal
from pydantic import BaseModel, Field


class BaseOutput(BaseModel):
    schema_version: int = 1
    command: Literal["orchestrate", "run", "stats", "collaborators"]
    exit_code: int
    error: str | None = None


class LegSummary(BaseModel):
    """One planned or executed leg."""
    index: int
    amount: float
    scheduled_time: str
    status: str | None = None
    tx_ref: str | None = None


class OrchestrateOutput(BaseOutput):
    command: Literal["orchestrate"] = "orchestrate"
    # Unknown when the request fails validation; omitted via exclude_none.
    orchestration_id: str | None = None
    session_id: str | None = None
    strategy: str | None = None
    interval_minutes: int | None = None
    legs: list[LegSummary] = Field(default_factory=list)
    overall_risk: str | None = None
    risk_score: float | None = None
    overall_valid: bool | None = None
    quality_score: float | None = None
    confidence_level: float | None = None
    recommendations: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    plan_artifact_id: str | None = None
    failed_step: str | None = None


class RunOutput(BaseOutput):
    command: Literal["run"] = "run"
    session_id: str | None = None
    execution_id: str | None = None
    status: str | None = None
    completed_legs: int = 0
    total_legs: int = 0
    legs: list[LegSummary] = Field(default_factory=list)
    execution_error: str | None = None


class StatsOutput(BaseOutput):
    command: Literal["stats"] = "stats"
    events: dict[str, Any] = Field(default_factory=dict)
    artifacts: dict[str, Any] = Field(default_factory=dict)
    callbacks: dict[str, Any] = Field(default_factory=dict)
    orchestrations: dict[str, Any] = Field(default_factory=dict)
    executions: dict[str, Any] = Field(default_factory=dict)


class CollaboratorSummary(BaseModel):
    """A registered collaborator implementation."""
    kind: str
    key: str
    name: str | None = None
    description: str | None = None


class CollaboratorsOutput(BaseOutput):
    command: Literal["collaborators"] = "collaborators"
    collaborators: list[CollaboratorSummary] = Field(default_factory=list)
