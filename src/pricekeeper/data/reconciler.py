"""Daily history reconciliation: gap detection and chunked backfill.

Compares the expected daily range (derived from the configured lookback
period) with the dates already persisted, and fetches only what is missing.

Fetch pipeline notes:
- The source caps the length of one historical window
  (MarketDataClient.max_window_days), so long gaps are split into chunks
  that overlap by ``chunk_overlap_days``.
- Overlapping chunks are merged by date with the LATER chunk winning, which
  matches the store's last-write-wins upsert.
- A chunk that still fails after retries is logged and recorded on the
  result; other chunks proceed. An entirely unreachable source yields
  records_added=0 and success=False, never an exception.
"""

import asyncio
import time
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal

from pricekeeper.config import HistoricalDataSettings, period_to_days
from pricekeeper.data.store import PriceStore
from pricekeeper.exceptions import TransientUpstreamFailure, ValidationError
from pricekeeper.exchange.client import MarketDataClient
from pricekeeper.logging import get_logger
from pricekeeper.models import DailyCandle, DataStatus, ReconcileResult, utc_now

logger = get_logger(__name__)

DateRange = tuple[date, date]


# ──────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────


def _check_range(since: date, until: date) -> None:
    if since > until:
        raise ValidationError(
            f"Invalid date range: {since.isoformat()} is after {until.isoformat()}"
        )


def iter_days(since: date, until: date) -> Iterable[date]:
    """Every calendar day in [since, until]."""
    _check_range(since, until)
    day = since
    while day <= until:
        yield day
        day += timedelta(days=1)


def compute_gap_set(since: date, until: date, present: Iterable[date]) -> list[date]:
    """Dates in [since, until] that are not in ``present``, ascending."""
    have = set(present)
    return [d for d in iter_days(since, until) if d not in have]


def group_into_ranges(dates: Iterable[date]) -> list[DateRange]:
    """Collapse dates into contiguous inclusive (start, end) runs."""
    ranges: list[DateRange] = []
    for day in sorted(set(dates)):
        if ranges and day == ranges[-1][1] + timedelta(days=1):
            ranges[-1] = (ranges[-1][0], day)
        else:
            ranges.append((day, day))
    return ranges


def plan_chunks(ranges: Iterable[DateRange], max_days: int, overlap_days: int = 0) -> list[DateRange]:
    """Split ranges into request windows of at most ``max_days`` days.

    Consecutive windows of one range overlap by ``overlap_days`` days so a
    boundary day missed by one response is covered by the next.
    """
    if max_days <= 0:
        raise ValidationError(f"max_days must be positive, got {max_days}")
    if overlap_days < 0 or overlap_days >= max_days:
        raise ValidationError(
            f"overlap_days must be in [0, {max_days - 1}], got {overlap_days}"
        )

    chunks: list[DateRange] = []
    for start, end in ranges:
        _check_range(start, end)
        chunk_start = start
        while True:
            chunk_end = min(chunk_start + timedelta(days=max_days - 1), end)
            chunks.append((chunk_start, chunk_end))
            if chunk_end >= end:
                break
            chunk_start = chunk_end - timedelta(days=overlap_days - 1)
    return chunks


def merge_chunks(chunks: Iterable[Iterable[DailyCandle]]) -> list[DailyCandle]:
    """De-duplicate candles by date across chunks; a later chunk wins."""
    merged: dict[date, DailyCandle] = {}
    for chunk in chunks:
        for candle in chunk:
            merged[candle.date] = candle
    return [merged[d] for d in sorted(merged)]


def lookback_range(lookback_days: int, today: date) -> DateRange:
    """Inclusive range of the last ``lookback_days`` calendar days ending today."""
    if lookback_days <= 0:
        raise ValidationError(f"lookback must be positive, got {lookback_days} days")
    return today - timedelta(days=lookback_days - 1), today


class HistoricalReconciler:
    """Detects missing daily candles and backfills them from the market data source.

    Args:
        client: Upstream market data client.
        store: Price persistence.
        settings: Period, retry budget, retention and reporting limits.
        overlap_days: Overlap between consecutive request chunks.
        clock: Current-time provider (injectable for tests).

    Usage:
        reconciler = HistoricalReconciler(client, store, settings.historical)
        result = await reconciler.run()
        status = await reconciler.get_status()
    """

    def __init__(
        self,
        client: MarketDataClient,
        store: PriceStore,
        settings: HistoricalDataSettings,
        overlap_days: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings
        self._overlap_days = overlap_days
        self._clock = clock
        self._run_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    def target_range(self, period: str | None = None) -> DateRange:
        """Expected daily range for ``period`` (defaults to the configured one)."""
        days = period_to_days(period or self._settings.period)
        return lookback_range(days, self._clock().date())

    async def compute_gaps(self, since: date, until: date) -> list[date]:
        """Gap set for [since, until] against persisted candles."""
        _check_range(since, until)
        present = await self._store.get_candle_dates(since, until)
        return compute_gap_set(since, until, present)

    async def run(self, period: str | None = None) -> ReconcileResult:
        """Reconcile the configured lookback period. See reconcile_range."""
        since, until = self.target_range(period)
        return await self.reconcile_range(since, until)

    async def reconcile_range(self, since: date, until: date) -> ReconcileResult:
        """Fill every missing day in [since, until].

        Concurrent calls are serialized; the second caller sees the first
        caller's rows as present and fetches nothing it does not need.
        """
        _check_range(since, until)
        async with self._run_lock:
            start_time = time.monotonic()
            gaps = await self.compute_gaps(since, until)

            if not gaps:
                logger.info(
                    "history_complete",
                    since=since.isoformat(),
                    until=until.isoformat(),
                )
                return ReconcileResult(
                    records_added=0,
                    gaps_before=0,
                    gaps_after=0,
                    message="No missing dates",
                )

            chunks = plan_chunks(
                group_into_ranges(gaps),
                self._client.max_window_days,
                self._overlap_days,
            )
            logger.info(
                "reconcile_started",
                since=since.isoformat(),
                until=until.isoformat(),
                gaps=len(gaps),
                chunks=len(chunks),
            )

            fetched, failed = await self._fetch_chunks(chunks)
            in_range = [c for c in merge_chunks(fetched) if since <= c.date <= until]
            added = await self._store.upsert_daily_candles(self._valid_only(in_range))
            gaps_after = len(await self.compute_gaps(since, until))

            result = ReconcileResult(
                records_added=added,
                gaps_before=len(gaps),
                gaps_after=gaps_after,
                failed_chunks=failed,
                success=len(failed) < len(chunks),
            )
            result.message = self._describe(result, len(chunks))

            logger.info(
                "reconcile_complete",
                records_added=added,
                gaps_before=len(gaps),
                gaps_after=gaps_after,
                failed_chunks=len(failed),
                total_duration_seconds=round(time.monotonic() - start_time, 1),
            )
            return result

    async def backfill_period(self, period: str) -> ReconcileResult:
        """Re-fetch a whole period explicitly, overwriting stored rows.

        Used for the "fetch history" action: unlike run(), every day in the
        period is requested, not just the gaps. For long periods (ALL) the
        chunks overlap and later chunks win on conflicting dates.
        """
        since, until = self.target_range(period)
        async with self._run_lock:
            gaps_before = len(await self.compute_gaps(since, until))
            chunks = plan_chunks(
                [(since, until)], self._client.max_window_days, self._overlap_days
            )
            logger.info("backfill_started", period=period, chunks=len(chunks))

            fetched, failed = await self._fetch_chunks(chunks)
            merged = [c for c in merge_chunks(fetched) if since <= c.date <= until]
            added = await self._store.upsert_daily_candles(self._valid_only(merged))
            gaps_after = len(await self.compute_gaps(since, until))

            result = ReconcileResult(
                records_added=added,
                gaps_before=gaps_before,
                gaps_after=gaps_after,
                failed_chunks=failed,
                success=len(failed) < len(chunks),
            )
            result.message = (
                f"Backfilled {period}: {len(merged)} rows fetched, {added} new"
                if result.success
                else f"Backfill of {period} failed: upstream unavailable"
            )
            logger.info(
                "backfill_complete",
                period=period,
                rows_fetched=len(merged),
                records_added=added,
                failed_chunks=len(failed),
            )
            return result

    async def get_status(
        self,
        since: date | None = None,
        until: date | None = None,
    ) -> DataStatus:
        """Read-only completeness report. Never writes.

        record_count, earliest and latest describe everything stored;
        completeness is the percentage of days in the expected range that have a
        candle, and missing_dates lists the first few gaps in that range.
        """
        if since is None or until is None:
            default_since, default_until = self.target_range()
            since = since or default_since
            until = until or default_until
        _check_range(since, until)

        overall = await self._store.get_daily_stats()
        present = await self._store.get_candle_dates(since, until)
        gaps = compute_gap_set(since, until, present)
        total_days = (until - since).days + 1

        completeness = (Decimal(len(present)) * 100 / Decimal(total_days)).quantize(Decimal("0.01"))
        return DataStatus(
            record_count=overall["record_count"],
            earliest=overall["earliest"],
            latest=overall["latest"],
            last_update=overall["last_update"],
            range_from=since,
            range_to=until,
            completeness=completeness,
            missing_dates=gaps[: self._settings.max_reported_gaps],
        )

    async def is_fresh(self) -> bool:
        """Whether the newest candle is within freshness_max_age_days of today."""
        stats = await self._store.get_daily_stats()
        latest = stats["latest"]
        if latest is None:
            return False
        age = (self._clock().date() - latest).days
        return age <= self._settings.freshness_max_age_days

    async def cleanup_old_data(self) -> int:
        """Delete candles older than retention_days. 0 disables cleanup."""
        retention = self._settings.retention_days
        if retention <= 0:
            return 0
        cutoff = self._clock().date() - timedelta(days=retention)
        deleted = await self._store.delete_daily_candles_before(cutoff)
        if deleted:
            logger.info("old_candles_deleted", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted

    # ──────────────────────────────────────────────
    # Chunked fetch with retry
    # ──────────────────────────────────────────────

    async def _fetch_chunks(
        self, chunks: list[DateRange]
    ) -> tuple[list[list[DailyCandle]], list[DateRange]]:
        """Fetch each chunk; isolate failures. Returns (rows per chunk, failed chunks)."""
        fetched: list[list[DailyCandle]] = []
        failed: list[DateRange] = []

        for i, (chunk_since, chunk_until) in enumerate(chunks, 1):
            try:
                rows = await self._fetch_with_retry(chunk_since, chunk_until)
            except TransientUpstreamFailure as e:
                failed.append((chunk_since, chunk_until))
                logger.warning(
                    "chunk_fetch_failed",
                    since=chunk_since.isoformat(),
                    until=chunk_until.isoformat(),
                    error=str(e),
                )
                continue

            fetched.append(rows)
            logger.debug(
                "chunk_fetched",
                progress=f"{i}/{len(chunks)}",
                since=chunk_since.isoformat(),
                until=chunk_until.isoformat(),
                rows=len(rows),
            )

            # Rate limit safety delay between chunk requests
            if i < len(chunks):
                await asyncio.sleep(self._settings.fetch_batch_delay)

        return fetched, failed

    async def _fetch_with_retry(self, since: date, until: date) -> list[DailyCandle]:
        """Fetch one window with exponential backoff.

        Retries up to max_retries times with delays base, 2*base, 4*base...
        Re-raises TransientUpstreamFailure on final failure.
        """
        max_retries = max(1, self._settings.max_retries)
        base_delay = self._settings.retry_base_delay

        for attempt in range(max_retries):
            try:
                return await self._client.fetch_historical_series(since, until)
            except TransientUpstreamFailure as e:
                if attempt == max_retries - 1:
                    logger.error(
                        "fetch_failed_permanently",
                        since=since.isoformat(),
                        until=until.isoformat(),
                        error=str(e),
                        attempts=max_retries,
                    )
                    raise

                delay = base_delay * (2**attempt)
                logger.warning(
                    "fetch_retry",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        return []  # Unreachable, but satisfies type checker

    @staticmethod
    def _valid_only(candles: list[DailyCandle]) -> list[DailyCandle]:
        valid = [c for c in candles if c.is_valid()]
        dropped = len(candles) - len(valid)
        if dropped:
            logger.warning("invalid_candles_dropped", count=dropped)
        return valid

    @staticmethod
    def _describe(result: ReconcileResult, chunk_count: int) -> str:
        if not result.success:
            return f"Upstream unavailable: 0 of {chunk_count} chunks fetched"
        if result.failed_chunks:
            return (
                f"Partial backfill: {result.records_added} added, "
                f"{len(result.failed_chunks)} of {chunk_count} chunks failed"
            )
        return f"Backfill complete: {result.records_added} added"
