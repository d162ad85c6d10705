"""Exchange rate cache with bounded staleness and a fixed fallback table.

Resolution order for get(base, quote), first hit wins:
  1. fresh cache entry (within ttl_hours)
  2. upstream rate source (one bounded-timeout attempt, shared by concurrent misses)
  3. last known direct rate (stale cache entry)
  4. inverse of a cached quote->base rate
  5. cross rate through the pivot currency (USD)
  6. hardcoded fallback table (unknown pairs resolve to 1 with a warning)
"""

from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal

from pricekeeper.config import ExchangeRateSettings
from pricekeeper.exceptions import TransientUpstreamFailure, ValidationError
from pricekeeper.exchange.rate_source import ExchangeRateSource
from pricekeeper.logging import get_logger
from pricekeeper.market_data.cache import FallbackChain, TimeBoundedCache
from pricekeeper.models import ExchangeRate, utc_now

logger = get_logger(__name__)

ONE = Decimal("1")

# Last-resort rates, used only when upstream and cache both miss
FALLBACK_RATES: dict[tuple[str, str], Decimal] = {
    ("EUR", "USD"): Decimal("1.05"),
    ("PLN", "USD"): Decimal("0.25"),
    ("GBP", "USD"): Decimal("1.27"),
}

# Seeded on a failed prime so USD <-> EUR conversions always resolve
PRIME_SEED_RATES: dict[tuple[str, str], Decimal] = {
    ("USD", "EUR"): Decimal("0.92"),
    ("EUR", "USD"): Decimal("1.09"),
}

# Main currencies always refreshed alongside the pivot
MAIN_CURRENCIES = ("USD", "EUR")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def fallback_rate(base: str, quote: str) -> Decimal:
    """Rate from the hardcoded table, inverting when only the reverse is known."""
    if base == quote:
        return ONE
    direct = FALLBACK_RATES.get((base, quote))
    if direct is not None:
        return direct
    reverse = FALLBACK_RATES.get((quote, base))
    if reverse is not None:
        return ONE / reverse
    logger.warning("no_fallback_rate", base=base, quote=quote, using="1")
    return ONE


def _normalize_currency(code: str) -> str:
    if not isinstance(code, str) or not code.strip().isalpha():
        raise ValidationError(f"Invalid currency code {code!r}")
    return code.strip().upper()


class ExchangeRateCache:
    """Time-bounded cache over a currency-pair rate lookup.

    One logical row per ordered pair; a refresh supersedes the old row.

    Args:
        source: Upstream rate source.
        settings: TTL, tracked currencies and pivot currency.
        clock: Current-time provider (injectable for tests).
    """

    def __init__(
        self,
        source: ExchangeRateSource,
        settings: ExchangeRateSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._settings = settings
        self._pivot = settings.pivot_currency.upper()
        self._tracked = {c.upper() for c in settings.tracked_currencies}
        self._cache: TimeBoundedCache[tuple[str, str], Decimal] = TimeBoundedCache(
            ttl_seconds=settings.ttl_hours * 3600, clock=clock
        )

    async def get(self, base: str, quote: str) -> Decimal:
        """Return the rate for 1 ``base`` in ``quote``. Never raises for upstream outages."""
        base = _normalize_currency(base)
        quote = _normalize_currency(quote)
        if base == quote:
            return ONE

        key = (base, quote)
        fresh = await self._cache.get_fresh(key)
        if fresh is not None:
            return fresh

        chain: FallbackChain[Decimal] = FallbackChain(
            f"fx:{base}/{quote}",
            [
                ("upstream", lambda: self._cache.get_or_refresh(key, lambda: self._fetch_pair(base, quote))),
                ("stale", lambda: self._cached_any(base, quote)),
                ("inverse", lambda: self._from_inverse(base, quote)),
                ("cross", lambda: self._via_pivot(base, quote)),
                ("fallback", lambda: self._fallback(base, quote)),
            ],
        )
        resolved = await chain.resolve()
        if resolved.source != "upstream":
            logger.info("rate_served_degraded", base=base, quote=quote, source=resolved.source)
        return resolved.value

    async def get_all(self) -> list[ExchangeRate]:
        """Every cached pair with its rate and fetch time, ordered by base then quote."""
        entries = await self._cache.items()
        return [
            ExchangeRate(base=b, quote=q, rate=entry.value, fetched_at=entry.fetched_at)
            for (b, q), entry in sorted(entries.items())
        ]

    async def clear(self) -> None:
        """Evict all entries, forcing the next get to refetch."""
        await self._cache.clear()
        logger.info("exchange_rate_cache_cleared")

    async def refresh_all(self) -> int:
        """Refresh every tracked currency against the pivot and main currencies.

        Returns the number of pairs stored. Raises TransientUpstreamFailure
        only when every base currency failed.
        """
        bases = sorted({self._pivot, *MAIN_CURRENCIES})
        stored = 0
        failures: list[str] = []

        for base in bases:
            try:
                rates = await self._source.fetch_rates(base)
            except TransientUpstreamFailure as e:
                failures.append(base)
                logger.warning("rate_refresh_failed", base=base, error=str(e))
                continue

            pairs = {
                (base, quote): rate
                for quote, rate in rates.items()
                if quote != base and quote in self._tracked
            }
            await self._cache.put_many(pairs)
            stored += len(pairs)

        if failures and len(failures) == len(bases):
            raise TransientUpstreamFailure(f"rate refresh failed for all bases: {failures}")

        logger.info("exchange_rates_refreshed", pairs=stored, failed_bases=failures)
        return stored

    async def prime(self) -> None:
        """Initial load. On upstream failure, seed USD<->EUR as stale entries.

        Seeds are stamped at the epoch so they never count as fresh: the next
        get() still tries upstream and only serves the seed if that fails.
        """
        try:
            await self.refresh_all()
        except TransientUpstreamFailure as e:
            logger.warning("exchange_rate_prime_degraded", error=str(e))
            await self._cache.put_many(dict(PRIME_SEED_RATES), fetched_at=_EPOCH)

    # ──────────────────────────────────────────────
    # Resolution steps
    # ──────────────────────────────────────────────

    async def _fetch_pair(self, base: str, quote: str) -> Decimal:
        """Fetch all rates for ``base``; cache every tracked pair, return the requested one."""
        rates = await self._source.fetch_rates(base)
        extra = {
            (base, q): r
            for q, r in rates.items()
            if q != base and q != quote and q in self._tracked
        }
        if extra:
            await self._cache.put_many(extra)
        rate = rates.get(quote)
        if rate is None:
            raise LookupError(f"rate source has no {base}/{quote}")
        return rate

    async def _cached_any(self, base: str, quote: str) -> Decimal | None:
        return await self._cache.get_any((base, quote))

    async def _from_inverse(self, base: str, quote: str) -> Decimal | None:
        reverse = await self._cached_any(quote, base)
        if reverse is None or reverse <= 0:
            return None
        return ONE / reverse

    async def _via_pivot(self, base: str, quote: str) -> Decimal | None:
        pivot = self._pivot
        if pivot in (base, quote):
            return None
        to_pivot = await self._cached_any(base, pivot) or await self._from_inverse(base, pivot)
        if to_pivot is None:
            return None
        from_pivot = await self._cached_any(pivot, quote) or await self._from_inverse(pivot, quote)
        if from_pivot is None:
            return None
        return to_pivot * from_pivot

    async def _fallback(self, base: str, quote: str) -> Decimal:
        return fallback_rate(base, quote)
