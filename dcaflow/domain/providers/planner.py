from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any

from dcaflow.domain.constants import AMOUNT_DECIMALS
from dcaflow.domain.models.plan import PlannedLeg, PlanProposal, PlanRequest


class Planner(ABC):
    """Turns a structured request into a concrete leg schedule."""

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "unknown",
            "description": "No description available",
            "requires_config": False,
            "config_keys": [],
        }

    @abstractmethod
    async def plan(self, request: PlanRequest) -> PlanProposal:
        """Return legs of ``{index, amount, scheduled_time}`` for the request.

        Raises:
            CollaboratorError: If no plan can be produced
        """
        ...


def even_split(
    budget: float, legs: int, interval_minutes: int, start: datetime
) -> list[PlannedLeg]:
    """Split ``budget`` evenly; the last leg absorbs the rounding remainder."""
    amount = round(budget / legs, AMOUNT_DECIMALS)
    out: list[PlannedLeg] = []
    for i in range(legs):
        if i == legs - 1:
            leg_amount = round(budget - amount * (legs - 1), AMOUNT_DECIMALS)
        else:
            leg_amount = amount
        out.append(
            PlannedLeg(
                index=i + 1,
                amount=leg_amount,
                scheduled_time=start + timedelta(minutes=interval_minutes * i),
            )
        )
    return out


class FallbackPlanner(Planner):
    """Deterministic even split at exact intervals starting now."""

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "fallback",
            "description": "Even split at fixed intervals (no planning model)",
            "requires_config": False,
            "config_keys": [],
        }

    async def plan(self, request: PlanRequest) -> PlanProposal:
        start = request.start_time or datetime.now(timezone.utc)
        legs = even_split(request.budget, request.legs, request.interval_minutes, start)
        strategy = (
            f"Execute {request.legs} legs of ~{legs[0].amount:g} {request.token_in} "
            f"every {request.interval_minutes} minutes into {request.token_out}"
        )
        return PlanProposal(
            legs=legs, strategy=strategy, interval_minutes=request.interval_minutes
        )
