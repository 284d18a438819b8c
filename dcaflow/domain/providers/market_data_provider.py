from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from dcaflow.domain.models.market import MarketSnapshot


class MarketDataProvider(ABC):
    """Source of current price and volume data for a token."""

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "unknown",
            "description": "No description available",
            "requires_config": False,
            "config_keys": [],
        }

    @abstractmethod
    async def get_snapshot(self, token: str) -> MarketSnapshot:
        """Return the latest snapshot for ``token``.

        Raises:
            CollaboratorError: If market data cannot be fetched
        """
        ...


class StaticMarketDataProvider(MarketDataProvider):
    """Returns the same configured figures for every token.

    Used where no live market feed is configured, and in tests.
    """

    def __init__(
        self,
        price: float = 1.0,
        volume_24h: float = 25_000_000.0,
        change_percent_24h: float = 1.5,
        high_24h: float | None = None,
        low_24h: float | None = None,
    ) -> None:
        self.price = price
        self.volume_24h = volume_24h
        self.change_percent_24h = change_percent_24h
        self.high_24h = high_24h
        self.low_24h = low_24h

    @classmethod
    def get_metadata(cls) -> dict[str, Any]:
        return {
            "name": "static",
            "description": "Fixed market figures (no live feed)",
            "requires_config": False,
            "config_keys": ["price", "volume_24h", "change_percent_24h", "high_24h", "low_24h"],
        }

    async def get_snapshot(self, token: str) -> MarketSnapshot:
        return MarketSnapshot(
            token=token,
            price=self.price,
            volume_24h=self.volume_24h,
            change_24h=self.price * self.change_percent_24h / 100,
            change_percent_24h=self.change_percent_24h,
            high_24h=self.high_24h,
            low_24h=self.low_24h,
            timestamp=datetime.now(timezone.utc),
        )
