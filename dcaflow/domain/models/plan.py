"""Plan models and the invariants every leg schedule must satisfy."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, Field, field_validator

from dcaflow.domain.constants import BUDGET_TOLERANCE
from dcaflow.domain.errors import ValidationError


class RiskTolerance(str, Enum):
    """User-selected risk tier."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class PlannedLeg(BaseModel):
    """One leg of a proposed schedule. ``index`` is 1-based."""

    index: int = Field(ge=1)
    amount: float = Field(gt=0)
    scheduled_time: datetime

    @field_validator("scheduled_time")
    @classmethod
    def _aware_time(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)


class PlanRequest(BaseModel):
    """Input for a ``Planner``."""

    token_in: str
    token_out: str
    budget: float = Field(gt=0)
    legs: int = Field(ge=1)
    interval_minutes: int = Field(ge=1)
    user_risk_level: RiskTolerance = RiskTolerance.MODERATE
    start_time: datetime | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class PlanProposal(BaseModel):
    legs: list[PlannedLeg]
    strategy: str = ""
    interval_minutes: int | None = None

    @property
    def total_amount(self) -> float:
        return sum(leg.amount for leg in self.legs)


def check_budget_conservation(legs: Sequence[PlannedLeg], budget: float) -> None:
    """Raise ValidationError unless the leg amounts sum to ``budget``."""
    total = sum(leg.amount for leg in legs)
    if abs(total - budget) > BUDGET_TOLERANCE:
        raise ValidationError(
            f"Leg amounts sum to {total:.6f}, expected budget {budget:.6f}"
        )


def check_leg_order(legs: Sequence[PlannedLeg]) -> None:
    """Raise ValidationError if legs are empty, duplicated, or out of time order."""
    if not legs:
        raise ValidationError("Plan has no legs")
    ordered = sorted(legs, key=lambda leg: leg.index)
    indices = [leg.index for leg in ordered]
    if len(set(indices)) != len(indices):
        raise ValidationError(f"Duplicate leg indices: {indices}")
    for earlier, later in zip(ordered, ordered[1:]):
        if later.scheduled_time < earlier.scheduled_time:
            raise ValidationError(
                f"Leg {later.index} is scheduled before leg {earlier.index}"
            )


def validate_legs(legs: Sequence[PlannedLeg], budget: float | None = None) -> None:
    check_leg_order(legs)
    if budget is not None:
        check_budget_conservation(legs, budget)
