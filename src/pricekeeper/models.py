"""Shared data models for the price data pipeline.

CRITICAL: All monetary values use Decimal. Never use float for prices, volumes, or rates.
Instants are timezone-aware UTC datetimes; calendar days are dates.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_epoch_ms(instant: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return int(instant.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class PriceSource(str, Enum):
    """Where a served price came from, most to least authoritative."""

    UPSTREAM = "upstream"
    CACHE = "cache"
    DATABASE = "database"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PricePoint:
    """A single timestamped price observation (a tick).

    Collapses to one logical observation per exact timestamp in storage.
    """

    timestamp: datetime
    price: Decimal
    volume: Decimal = Decimal("0")


@dataclass(frozen=True)
class DailyCandle:
    """One OHLCV row per calendar day, unique on date."""

    date: date
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")

    def is_valid(self) -> bool:
        """Non-negative prices and low <= min(open, close) <= max(open, close) <= high."""
        if min(self.open, self.high, self.low, self.close) < 0:
            return False
        return self.low <= min(self.open, self.close) and max(self.open, self.close) <= self.high


@dataclass(frozen=True)
class HourlyCandle:
    """Derived candle for one hour-aligned bucket. Never persisted."""

    hour_start: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    tick_count: int


@dataclass(frozen=True)
class ExchangeRate:
    """Rate for an ordered currency pair: 1 base = rate quote."""

    base: str
    quote: str
    rate: Decimal
    fetched_at: datetime


@dataclass
class PriceQuote:
    """Current price read model served to consumers."""

    price: Decimal
    timestamp: datetime
    source: PriceSource
    change_24h: Decimal = Decimal("0")
    change_percent_24h: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": str(self.price),
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "change_24h": str(self.change_24h),
            "change_percent_24h": str(self.change_percent_24h),
        }


@dataclass
class PortfolioSummary:
    """Portfolio valuation computed from configured holdings and a price."""

    holdings: Decimal
    price_usd: Decimal
    main_currency: str
    secondary_currency: str
    value_main: Decimal
    value_secondary: Decimal
    total_invested_main: Decimal
    unrealized_pnl_main: Decimal
    unrealized_pnl_percent: Decimal
    change_24h_main: Decimal
    change_24h_percent: Decimal
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass.

    records_added == 0 with success=True means nothing was missing or
    upstream had nothing new; success=False means fetches failed.
    """

    records_added: int
    gaps_before: int
    gaps_after: int
    failed_chunks: list[tuple[date, date]] = field(default_factory=list)
    success: bool = True
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "records_added": self.records_added,
            "gaps_before": self.gaps_before,
            "gaps_after": self.gaps_after,
            "failed_chunks": [
                {"since": a.isoformat(), "until": b.isoformat()}
                for a, b in self.failed_chunks
            ],
            "success": self.success,
            "message": self.message,
        }


@dataclass
class DataStatus:
    """Read-only completeness report over the expected daily range."""

    record_count: int
    earliest: date | None
    latest: date | None
    last_update: datetime | None
    range_from: date
    range_to: date
    completeness: Decimal
    missing_dates: list[date]

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_count": self.record_count,
            "earliest": self.earliest.isoformat() if self.earliest else None,
            "latest": self.latest.isoformat() if self.latest else None,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "range": {"from": self.range_from.isoformat(), "to": self.range_to.isoformat()},
            "completeness": str(self.completeness),
            "missing_dates": [d.isoformat() for d in self.missing_dates],
        }


@dataclass
class OperationResult:
    """Structured outcome returned to the API layer instead of raising."""

    success: bool
    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}
