import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from dcaflow.domain.errors import CollaboratorError
from dcaflow.domain.models import (
    ExecutionRequest,
    Leg,
    MarketSnapshot,
    PlannedLeg,
    SubmissionResult,
)
from dcaflow.domain.providers import MarketDataProvider, Submitter

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

DELEGATOR = "0x" + "1" * 40
DELEGATE = "0x" + "2" * 40
ROUTER = "0x" + "3" * 40


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMarketData(MarketDataProvider):
    """Returns a fixed snapshot; can be told to fail."""

    def __init__(
        self,
        *,
        price: float = 100.0,
        volume_24h: float = 25_000_000.0,
        change_percent_24h: float = 1.0,
        fail: bool = False,
        clock: FakeClock | None = None,
    ) -> None:
        self.price = price
        self.volume_24h = volume_24h
        self.change_percent_24h = change_percent_24h
        self.fail = fail
        self.clock = clock or FakeClock()
        self.calls: list[str] = []

    async def get_snapshot(self, token: str) -> MarketSnapshot:
        self.calls.append(token)
        if self.fail:
            raise CollaboratorError("market feed unavailable", collaborator="market_data")
        return MarketSnapshot(
            token=token,
            price=self.price,
            volume_24h=self.volume_24h,
            change_24h=self.price * self.change_percent_24h / 100,
            change_percent_24h=self.change_percent_24h,
            high_24h=self.price * 1.02,
            low_24h=self.price * 0.98,
            timestamp=self.clock(),
        )


class FakeSubmitter(Submitter):
    """Records submissions. Legs listed in ``fail_legs`` fail."""

    def __init__(
        self,
        *,
        fail_legs: set[int] | None = None,
        permitted: bool = True,
        delay: float = 0.0,
    ) -> None:
        self.fail_legs = fail_legs or set()
        self.permitted = permitted
        self.delay = delay
        self.submitted: list[tuple[str, int]] = []
        self.permission_checks = 0

    async def validate_permission(self, request: ExecutionRequest) -> bool:
        self.permission_checks += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.permitted

    async def submit(self, request: ExecutionRequest, leg: Leg) -> SubmissionResult:
        self.submitted.append((request.delegation_id, leg.index))
        if self.delay:
            await asyncio.sleep(self.delay)
        if leg.index in self.fail_legs:
            return SubmissionResult(success=False, error="router reverted")
        return SubmissionResult(success=True, tx_ref=f"0xtx{leg.index}")


def make_legs(
    amounts: list[float], *, start: datetime = T0, interval_minutes: int = 60
) -> list[PlannedLeg]:
    return [
        PlannedLeg(
            index=i + 1,
            amount=amount,
            scheduled_time=start + timedelta(minutes=interval_minutes * i),
        )
        for i, amount in enumerate(amounts)
    ]


def make_execution_request(
    legs: list[PlannedLeg] | None = None, **overrides: Any
) -> ExecutionRequest:
    fields: dict[str, Any] = {
        "delegation_id": "deleg_1",
        "delegator": DELEGATOR,
        "delegate": DELEGATE,
        "router": ROUTER,
        "token_in": "USDC",
        "token_out": "ETH",
        "budget": 100.0,
        "legs": legs if legs is not None else make_legs([25.0, 25.0, 25.0, 25.0]),
        "session_id": "session_1",
    }
    fields.update(overrides)
    return ExecutionRequest(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def market_data(clock: FakeClock) -> FakeMarketData:
    return FakeMarketData(clock=clock)


@pytest.fixture
def submitter() -> FakeSubmitter:
    return FakeSubmitter()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent tests from picking up developer machine DCAFLOW_* settings.

    If a test needs an env var, it should set it explicitly via monkeypatch.
    """
    import os

    for name in list(os.environ):
        if name.startswith("DCAFLOW_"):
            monkeypatch.delenv(name, raising=False)
