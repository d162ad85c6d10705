"""Shared test fixtures for the price data pipeline."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from pricekeeper.config import (
    AppSettings,
    ExchangeRateSettings,
    HistoricalDataSettings,
    MarketDataSettings,
    PortfolioSettings,
    PriceSettings,
    SchedulerSettings,
)
from pricekeeper.data.database import PriceDatabase
from pricekeeper.data.store import PriceStore
from pricekeeper.exchange.client import MarketDataClient
from pricekeeper.exchange.rate_source import ExchangeRateSource
from pricekeeper.models import DailyCandle

FIXED_NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for TTL and date-range tests."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_candle(day: date, close: str = "100", volume: str = "1") -> DailyCandle:
    price = Decimal(close)
    return DailyCandle(
        date=day,
        open=price,
        high=price + 5,
        low=price - 5,
        close=price,
        volume=Decimal(volume),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_settings(tmp_path) -> AppSettings:
    """Return AppSettings with test defaults (temp database, no delays)."""
    return AppSettings(
        log_level="DEBUG",
        market=MarketDataSettings(exchange_id="bybit", symbol="BTC/USDT"),
        historical=HistoricalDataSettings(
            db_path=str(tmp_path / "prices.db"),
            period="3M",
            max_retries=2,
            retry_base_delay=0,
            fetch_batch_delay=0,
        ),
        price=PriceSettings(cache_ttl_seconds=30, fallback_price=Decimal("105000")),
        fx=ExchangeRateSettings(ttl_hours=4, tracked_currencies=["USD", "EUR", "PLN", "GBP"]),
        scheduler=SchedulerSettings(connect_max_attempts=3, connect_base_delay=0, connect_max_delay=0),
        portfolio=PortfolioSettings(
            holdings=Decimal("0.5"),
            total_invested=Decimal("20000"),
            main_currency="USD",
            secondary_currency="EUR",
        ),
    )


@pytest.fixture
async def database(tmp_path):
    """A real, connected SQLite database in a temp directory."""
    db = PriceDatabase(str(tmp_path / "prices.db"))
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def store(database) -> PriceStore:
    return PriceStore(database)


@pytest.fixture
def mock_client() -> AsyncMock:
    """MarketDataClient double returning nothing by default."""
    client = AsyncMock(spec=MarketDataClient)
    client.max_window_days = 1000
    client.fetch_historical_series.return_value = []
    client.fetch_intraday_points.return_value = []
    return client


@pytest.fixture
def mock_rate_source() -> AsyncMock:
    source = AsyncMock(spec=ExchangeRateSource)
    source.fetch_rates.return_value = {}
    return source
