"""Current-price read model with a short-TTL cache and explicit fallbacks.

get_current_price() never raises. It serves, in order: the fresh cached
quote, a new upstream quote, the persisted current_price row, the last
cached quote (stale), and finally the configured fallback constant tagged
``source=fallback`` so callers can tell degraded data from authoritative.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

import aiosqlite

from pricekeeper.config import PriceSettings
from pricekeeper.data.store import PriceStore
from pricekeeper.exceptions import ValidationError
from pricekeeper.exchange.client import MarketDataClient
from pricekeeper.logging import get_logger
from pricekeeper.market_data.aggregator import aggregate
from pricekeeper.market_data.cache import FallbackChain, TimeBoundedCache
from pricekeeper.models import DailyCandle, HourlyCandle, PriceQuote, PriceSource, utc_now

if TYPE_CHECKING:
    from pricekeeper.market_data.portfolio import PortfolioValuer

logger = get_logger(__name__)

_CURRENT = "current"
_CENT = Decimal("0.01")


class PriceService:
    """Maintains the latest-price read model and 24h change.

    Args:
        client: Upstream market data client.
        store: Price persistence.
        settings: Cache TTL, fallback constant and intraday retention.
        portfolio: Optional valuation hook run after a manual refresh.
        clock: Current-time provider (injectable for tests).
    """

    def __init__(
        self,
        client: MarketDataClient,
        store: PriceStore,
        settings: PriceSettings,
        portfolio: PortfolioValuer | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings
        self._portfolio = portfolio
        self._clock = clock
        self._cache: TimeBoundedCache[str, PriceQuote] = TimeBoundedCache(
            ttl_seconds=settings.cache_ttl_seconds, clock=clock
        )

    async def get_current_price(self) -> PriceQuote:
        """Latest price with 24h change. Never raises."""
        fresh = await self._cache.get_fresh(_CURRENT)
        if fresh is not None:
            return fresh

        chain: FallbackChain[PriceQuote] = FallbackChain(
            "current_price",
            [
                (PriceSource.UPSTREAM.value, lambda: self._cache.get_or_refresh(_CURRENT, self._fetch_and_store)),
                (PriceSource.DATABASE.value, self._store.get_current_price),
                (PriceSource.CACHE.value, self._stale_cached),
                (PriceSource.FALLBACK.value, self._fallback_quote),
            ],
        )
        resolved = await chain.resolve()
        quote = resolved.value
        if resolved.source != PriceSource.UPSTREAM.value:
            quote = dataclasses.replace(quote, source=PriceSource(resolved.source))
            logger.warning("price_served_degraded", source=resolved.source, price=str(quote.price))
        return quote

    async def refresh(self) -> PriceQuote:
        """Fetch a new quote bypassing the cache.

        Raises TransientUpstreamFailure when the source is unavailable.
        """
        quote = await self._fetch_and_store()
        await self._cache.put(_CURRENT, quote)
        return quote

    async def refresh_intraday(self) -> PriceQuote:
        """Fetch recent intraday ticks, prune old ones, then refresh the current price."""
        since = self._clock() - timedelta(hours=self._settings.intraday_retention_hours)
        points = await self._client.fetch_intraday_points(since)
        stored = await self._store.upsert_price_points(points)
        pruned = await self._store.delete_price_points_before(since)
        logger.info("intraday_points_updated", stored=stored, pruned=pruned)
        return await self.refresh()

    async def manual_refresh(self) -> PriceQuote:
        """Refresh, then recompute the portfolio summary synchronously."""
        quote = await self.refresh()
        if self._portfolio is not None:
            await self._portfolio.calculate_and_store_portfolio_summary(quote.price)
        return quote

    async def get_hourly_candles(self, hours: int = 24) -> list[HourlyCandle]:
        """Hourly candles over the last ``hours`` hours, aggregated on read."""
        if hours <= 0:
            raise ValidationError(f"hours must be positive, got {hours}")
        since = self._clock() - timedelta(hours=hours)
        points = await self._store.get_price_points(since=since)
        return aggregate(points, window_start=since)

    async def get_todays_ohlc(self) -> DailyCandle | None:
        return await self._store.get_daily_candle(self._clock().date())

    async def clear_cache(self) -> None:
        await self._cache.clear()

    # ──────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────

    async def _fetch_and_store(self) -> PriceQuote:
        point = await self._client.fetch_latest_quote()
        change, change_pct = await self._change_24h(point.price)

        quote = PriceQuote(
            price=point.price,
            timestamp=point.timestamp,
            source=PriceSource.UPSTREAM,
            change_24h=change,
            change_percent_24h=change_pct,
        )

        await self._store.upsert_price_points([point])
        await self._store.save_current_price(quote)
        try:
            await self._store.apply_live_price_to_daily_candle(
                point.timestamp.date(), point.price
            )
        except aiosqlite.Error as e:
            logger.warning("todays_candle_update_failed", error=str(e))

        logger.info(
            "current_price_updated",
            price=str(quote.price),
            change_percent_24h=str(change_pct),
        )
        return quote

    async def _change_24h(self, price: Decimal) -> tuple[Decimal, Decimal]:
        """Change against yesterday's daily close; zeros when unknown."""
        yesterday = self._clock().date() - timedelta(days=1)
        previous = await self._store.get_close_for_date(yesterday)
        if previous is None or previous <= 0:
            return Decimal("0"), Decimal("0")
        change = price - previous
        return change, (change / previous * 100).quantize(_CENT)

    async def _stale_cached(self) -> PriceQuote | None:
        return await self._cache.get_any(_CURRENT)

    async def _fallback_quote(self) -> PriceQuote:
        return PriceQuote(
            price=self._settings.fallback_price,
            timestamp=self._clock(),
            source=PriceSource.FALLBACK,
        )
