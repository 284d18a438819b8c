"""Artifact models: versioned records of workflow output."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ArtifactType(str, Enum):
    DCA_PLAN = "dca_plan"
    RISK_ASSESSMENT = "risk_assessment"
    MARKET_ANALYSIS = "market_analysis"
    EXECUTION_REPORT = "execution_report"
    OPTIMIZATION_RESULT = "optimization_result"
    SESSION_SUMMARY = "session_summary"
    USER_PREFERENCES = "user_preferences"
    DELEGATION_DATA = "delegation_data"


class ArtifactMetadata(BaseModel):
    source: str
    agent_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    parent_id: str | None = None
    child_ids: list[str] = Field(default_factory=list)

    @field_validator("source")
    @classmethod
    def _source_non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("source must be non-empty")
        return v


class Artifact(BaseModel):
    """A stored artifact. ``version`` starts at 1 and increments on every update."""

    id: str
    type: ArtifactType
    session_id: str
    created_at: datetime
    updated_at: datetime
    version: int = 1
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: ArtifactMetadata
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(timezone.utc))


class TimeRange(BaseModel):
    start: datetime
    end: datetime


class ArtifactQuery(BaseModel):
    session_id: str | None = None
    type: ArtifactType | None = None
    tags: list[str] | None = None
    source: str | None = None
    time_range: TimeRange | None = None
    include_expired: bool = False
    limit: int | None = Field(default=None, ge=1)
