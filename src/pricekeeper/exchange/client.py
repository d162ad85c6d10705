"""Abstract market data client interface.

Defines the contract for the upstream price/history source. Pipeline code
depends only on this interface, keeping exchange-specific details isolated
in the concrete implementation. No caching happens at this layer.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime

from pricekeeper.models import DailyCandle, PricePoint


class MarketDataClient(ABC):
    """Abstract base class for market data sources.

    Every method is bounded by a timeout and raises
    TransientUpstreamFailure when the source is unreachable.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load market metadata."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...

    @abstractmethod
    async def fetch_historical_series(self, since: date, until: date) -> list[DailyCandle]:
        """Fetch daily OHLCV rows for [since, until] in a single request.

        The source may cap the window length (``max_window_days``); rows
        beyond the cap are simply not returned. Chunking is the caller's job.
        """
        ...

    @abstractmethod
    async def fetch_intraday_points(self, since: datetime) -> list[PricePoint]:
        """Fetch high-frequency price observations from ``since`` to now."""
        ...

    @abstractmethod
    async def fetch_latest_quote(self) -> PricePoint:
        """Fetch the most recent price observation."""
        ...

    @property
    @abstractmethod
    def max_window_days(self) -> int:
        """Longest daily window one fetch_historical_series call can return."""
        ...
