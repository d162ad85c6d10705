"""Market data client implementation via ccxt async.

Wraps a ccxt.async_support exchange with proper initialization, market
loading, bounded timeouts, and async cleanup. Every ccxt network error or
timeout surfaces as TransientUpstreamFailure.
"""

import asyncio
from collections.abc import Awaitable
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import TypeVar

import ccxt.async_support as ccxt_async

from pricekeeper.config import MarketDataSettings
from pricekeeper.exceptions import TransientUpstreamFailure
from pricekeeper.exchange.client import MarketDataClient
from pricekeeper.logging import get_logger
from pricekeeper.models import DailyCandle, PricePoint, from_epoch_ms, to_epoch_ms, utc_now

logger = get_logger(__name__)

T = TypeVar("T")


def _to_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


class CcxtMarketDataClient(MarketDataClient):
    """Concrete market data client for a single symbol on any ccxt exchange."""

    def __init__(self, settings: MarketDataSettings, exchange: ccxt_async.Exchange | None = None) -> None:
        self._settings = settings
        self._symbol = settings.symbol
        self._timeout = settings.request_timeout_seconds

        if exchange is None:
            exchange_cls = getattr(ccxt_async, settings.exchange_id)
            config: dict = {
                "enableRateLimit": True,
                "timeout": int(self._timeout * 1000),
            }
            api_key = settings.api_key.get_secret_value()
            if api_key:
                config["apiKey"] = api_key
                config["secret"] = settings.api_secret.get_secret_value()
            exchange = exchange_cls(config)

        self._exchange = exchange
        self._markets: dict = {}

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    @property
    def max_window_days(self) -> int:
        return self._settings.max_candles_per_request

    async def connect(self) -> None:
        """Initialize connection by loading markets."""
        logger.info("connecting_to_exchange", exchange=self._settings.exchange_id)
        self._markets = await self._call(self._exchange.load_markets(), "load_markets")
        logger.info(
            "exchange_connected",
            exchange=self._settings.exchange_id,
            market_count=len(self._markets),
            symbol=self._symbol,
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("exchange_connection_closed", exchange=self._settings.exchange_id)

    async def fetch_historical_series(self, since: date, until: date) -> list[DailyCandle]:
        """Fetch daily candles for [since, until], capped at max_window_days rows.

        Rows with a missing OHLC component are skipped. Result is sorted by
        date ascending and de-duplicated by date (last row wins).
        """
        days = (until - since).days + 1
        if days <= 0:
            return []
        limit = min(days, self.max_window_days)
        since_ms = to_epoch_ms(datetime.combine(since, time.min, tzinfo=timezone.utc))

        rows = await self._call(
            self._exchange.fetch_ohlcv(self._symbol, timeframe="1d", since=since_ms, limit=limit),
            "fetch_ohlcv_daily",
        )

        by_date: dict[date, DailyCandle] = {}
        for row in sorted(rows or [], key=lambda r: r[0]):
            ts, o, h, low, c = row[0], row[1], row[2], row[3], row[4]
            if None in (o, h, low, c):
                continue
            day = from_epoch_ms(ts).date()
            if day < since or day > until:
                continue
            by_date[day] = DailyCandle(
                date=day,
                open=_to_decimal(o),
                high=_to_decimal(h),
                low=_to_decimal(low),
                close=_to_decimal(c),
                volume=_to_decimal(row[5]) or Decimal("0"),
            )

        logger.debug(
            "fetched_daily_series",
            since=since.isoformat(),
            until=until.isoformat(),
            rows=len(by_date),
        )
        return [by_date[d] for d in sorted(by_date)]

    async def fetch_intraday_points(self, since: datetime) -> list[PricePoint]:
        """Fetch hourly closes from ``since`` as price points."""
        since_ms = to_epoch_ms(since)
        hours = max(1, int((to_epoch_ms(utc_now()) - since_ms) / 3_600_000) + 1)
        rows = await self._call(
            self._exchange.fetch_ohlcv(
                self._symbol, timeframe="1h", since=since_ms, limit=min(hours, 1000)
            ),
            "fetch_ohlcv_hourly",
        )

        points = []
        for row in rows or []:
            close = row[4]
            if close is None or close <= 0:
                continue
            points.append(
                PricePoint(
                    timestamp=from_epoch_ms(row[0]),
                    price=_to_decimal(close),
                    volume=_to_decimal(row[5]) or Decimal("0"),
                )
            )
        return points

    async def fetch_latest_quote(self) -> PricePoint:
        """Fetch the last traded price from the ticker."""
        ticker = await self._call(self._exchange.fetch_ticker(self._symbol), "fetch_ticker")
        last = ticker.get("last")
        if last is None:
            raise TransientUpstreamFailure(f"No last price in ticker for {self._symbol}")

        ts = ticker.get("timestamp")
        timestamp = from_epoch_ms(ts) if ts else utc_now()
        volume = _to_decimal(ticker.get("baseVolume")) or Decimal("0")
        return PricePoint(timestamp=timestamp, price=_to_decimal(last), volume=volume)

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        """Await a ccxt call under the configured timeout.

        Timeouts and ccxt network/exchange errors become TransientUpstreamFailure.
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.warning("upstream_timeout", operation=operation, timeout=self._timeout)
            raise TransientUpstreamFailure(f"{operation} timed out after {self._timeout}s") from e
        except ccxt_async.BaseError as e:
            logger.warning("upstream_error", operation=operation, error=str(e))
            raise TransientUpstreamFailure(f"{operation} failed: {e}") from e

