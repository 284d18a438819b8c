"""Scheduled execution models."""

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from dcaflow.domain.models.plan import PlannedLeg

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class ExecutionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class LegStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class Leg(PlannedLeg):
    status: LegStatus = LegStatus.PENDING
    tx_ref: str | None = None
    error: str | None = None
    executed_at: datetime | None = None


class ExecutionRequest(BaseModel):
    """A plan accepted for execution under a delegated permission."""

    delegation_id: str
    delegator: str
    delegate: str
    router: str
    token_in: str
    token_out: str
    budget: float | None = Field(default=None, gt=0)
    legs: list[PlannedLeg]
    permission_context: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None
    plan_artifact_id: str | None = None

    @field_validator("delegation_id")
    @classmethod
    def _id_non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("delegation_id must be non-empty")
        return v

    @field_validator("delegator", "delegate", "router")
    @classmethod
    def _valid_address(cls, v: str) -> str:
        if not _ADDRESS_RE.match(v):
            raise ValueError(f"invalid address: {v!r}")
        return v


class ScheduledExecution(BaseModel):
    """Lifecycle record for one accepted plan. ``id`` is the delegation id."""

    id: str
    request: ExecutionRequest
    legs: list[Leg]
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    created_at: datetime
    updated_at: datetime
    completed_leg_count: int = 0
    total_leg_count: int
    next_due_at: datetime | None = None
    error: str | None = None

    @property
    def session_id(self) -> str | None:
        return self.request.session_id

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class SubmissionResult(BaseModel):
    success: bool
    tx_ref: str | None = None
    error: str | None = None


class TickResult(BaseModel):
    executed_leg_count: int = 0
    active_execution_count: int = 0
