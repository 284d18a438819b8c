import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Any

from dcaflow.domain.models.execution import ExecutionRequest, Leg, SubmissionResult

logger = logging.getLogger(__name__)


class Submitter(ABC):
    """Delegated-permission check and transaction submission for legs."""

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "unknown",
            "description": "No description available",
            "requires_config": False,
            "config_keys": [],
        }

    @abstractmethod
    async def validate_permission(self, request: ExecutionRequest) -> bool:
        """Return True if the delegation allows the scheduler to act on the plan."""
        ...

    @abstractmethod
    async def submit(self, request: ExecutionRequest, leg: Leg) -> SubmissionResult:
        """Submit one leg. Failures are reported in the result, not raised."""
        ...


class DryRunSubmitter(Submitter):
    """Accepts every leg without touching a chain.

    When ``agent_address`` is set, only delegations naming it as delegate are
    accepted.
    """

    def __init__(self, agent_address: str | None = None) -> None:
        self.agent_address = agent_address

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "dry-run",
            "description": "Simulated submission with synthetic transaction refs",
            "requires_config": False,
            "config_keys": ["agent_address"],
        }

    async def validate_permission(self, request: ExecutionRequest) -> bool:
        if self.agent_address is None:
            return True
        return request.delegate.lower() == self.agent_address.lower()

    async def submit(self, request: ExecutionRequest, leg: Leg) -> SubmissionResult:
        digest = hashlib.sha256(
            f"{request.delegation_id}:{leg.index}:{leg.amount}".encode()
        ).hexdigest()
        logger.info(
            "Dry-run leg %d of %s: %s %s -> %s",
            leg.index,
            request.delegation_id,
            leg.amount,
            request.token_in,
            request.token_out,
        )
        return SubmissionResult(success=True, tx_ref=f"0x{digest}")
