"""Typed SQLite read/write abstraction for price data.

Provides PriceStore with typed methods for upserting and querying price
points, daily candles, the current price read model, and the portfolio
summary. All SQL is isolated behind this interface.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import asyncio
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal

from pricekeeper.data.database import PriceDatabase
from pricekeeper.logging import get_logger
from pricekeeper.models import (
    DailyCandle,
    PortfolioSummary,
    PricePoint,
    PriceQuote,
    PriceSource,
    from_epoch_ms,
    to_epoch_ms,
    utc_now,
)

logger = get_logger(__name__)

_CANDLE_COLUMNS = "date, open, high, low, close, volume"


def _row_to_candle(row: tuple) -> DailyCandle:
    return DailyCandle(
        date=date.fromisoformat(row[0]),
        open=Decimal(row[1]),
        high=Decimal(row[2]),
        low=Decimal(row[3]),
        close=Decimal(row[4]),
        volume=Decimal(row[5]),
    )


class PriceStore:
    """Async SQLite store for price points and daily candles.

    Wraps PriceDatabase with typed read/write methods. Every write is an
    upsert keyed by the table's unique key, so concurrent writers (a manual
    trigger racing a scheduled job) can never create duplicate rows. Writes
    are additionally serialized so a multi-row upsert and its commit are not
    interleaved with another writer's.

    Usage:
        async with PriceDatabase("data/prices.db") as database:
            store = PriceStore(database)
            added = await store.upsert_daily_candles(candles)
    """

    def __init__(self, database: PriceDatabase) -> None:
        self._database = database
        self._write_lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Price points (ticks)
    # ──────────────────────────────────────────────

    async def upsert_price_points(self, points: Iterable[PricePoint]) -> int:
        """Upsert ticks keyed by exact timestamp. Later writes replace earlier ones.

        Returns the number of rows written.
        """
        data = [
            (to_epoch_ms(p.timestamp), str(p.price), str(p.volume))
            for p in points
        ]
        if not data:
            return 0

        async with self._write_lock:
            await self._database.db.executemany(
                "INSERT INTO price_points (timestamp_ms, price, volume) VALUES (?, ?, ?) "
                "ON CONFLICT(timestamp_ms) DO UPDATE SET "
                "price = excluded.price, volume = excluded.volume",
                data,
            )
            await self._database.db.commit()

        logger.debug("upserted_price_points", count=len(data))
        return len(data)

    async def get_price_points(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[PricePoint]:
        """Query ticks within an optional [since, until] window, oldest first."""
        conditions: list[str] = []
        params: list = []

        if since is not None:
            conditions.append("timestamp_ms >= ?")
            params.append(to_epoch_ms(since))
        if until is not None:
            conditions.append("timestamp_ms <= ?")
            params.append(to_epoch_ms(until))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = await self._database.db.execute(
            f"SELECT timestamp_ms, price, volume FROM price_points {where} "
            f"ORDER BY timestamp_ms ASC",
            params,
        )
        rows = await cursor.fetchall()
        return [
            PricePoint(
                timestamp=from_epoch_ms(row[0]),
                price=Decimal(row[1]),
                volume=Decimal(row[2]),
            )
            for row in rows
        ]

    async def get_latest_price_point(self) -> PricePoint | None:
        cursor = await self._database.db.execute(
            "SELECT timestamp_ms, price, volume FROM price_points "
            "ORDER BY timestamp_ms DESC LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return PricePoint(
            timestamp=from_epoch_ms(row[0]),
            price=Decimal(row[1]),
            volume=Decimal(row[2]),
        )

    async def delete_price_points_before(self, instant: datetime) -> int:
        """Prune ticks older than the given instant. Returns rows deleted."""
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "DELETE FROM price_points WHERE timestamp_ms < ?",
                (to_epoch_ms(instant),),
            )
            await self._database.db.commit()
        return cursor.rowcount

    # ──────────────────────────────────────────────
    # Daily candles
    # ──────────────────────────────────────────────

    async def upsert_daily_candles(self, candles: Iterable[DailyCandle]) -> int:
        """Upsert daily candles keyed by date.

        Within one call, a later candle for the same date wins. Returns the
        number of dates that did not exist before the call.
        """
        by_date: dict[date, DailyCandle] = {}
        for candle in candles:
            by_date[candle.date] = candle
        if not by_date:
            return 0

        now_ms = to_epoch_ms(utc_now())
        data = [
            (
                c.date.isoformat(),
                str(c.open),
                str(c.high),
                str(c.low),
                str(c.close),
                str(c.volume),
                now_ms,
            )
            for c in sorted(by_date.values(), key=lambda c: c.date)
        ]

        db = self._database.db
        async with self._write_lock:
            before = await self._count_candles()
            await db.executemany(
                "INSERT INTO daily_candles "
                "(date, open, high, low, close, volume, updated_at_ms) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(date) DO UPDATE SET "
                "open = excluded.open, high = excluded.high, low = excluded.low, "
                "close = excluded.close, volume = excluded.volume, "
                "updated_at_ms = excluded.updated_at_ms",
                data,
            )
            await db.commit()
            after = await self._count_candles()

        inserted = after - before
        logger.debug(
            "upserted_daily_candles",
            total=len(data),
            inserted=inserted,
        )
        return inserted

    async def apply_live_price_to_daily_candle(self, day: date, price: Decimal) -> DailyCandle:
        """Fold a live price into the candle for ``day``.

        Existing candle keeps its open, widens high/low and takes the price as
        close. A missing candle is created flat at the price.
        """
        db = self._database.db
        async with self._write_lock:
            cursor = await db.execute(
                f"SELECT {_CANDLE_COLUMNS} FROM daily_candles WHERE date = ?",
                (day.isoformat(),),
            )
            row = await cursor.fetchone()
            if row is None:
                candle = DailyCandle(
                    date=day, open=price, high=price, low=price, close=price
                )
            else:
                existing = _row_to_candle(row)
                candle = DailyCandle(
                    date=day,
                    open=existing.open,
                    high=max(existing.high, price),
                    low=min(existing.low, price),
                    close=price,
                    volume=existing.volume,
                )
            await db.execute(
                "INSERT OR REPLACE INTO daily_candles "
                "(date, open, high, low, close, volume, updated_at_ms) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    day.isoformat(),
                    str(candle.open),
                    str(candle.high),
                    str(candle.low),
                    str(candle.close),
                    str(candle.volume),
                    to_epoch_ms(utc_now()),
                ),
            )
            await db.commit()
        return candle

    async def get_daily_candles(
        self,
        since: date | None = None,
        until: date | None = None,
    ) -> list[DailyCandle]:
        """Query daily candles within an optional inclusive range, oldest first."""
        conditions: list[str] = []
        params: list = []

        if since is not None:
            conditions.append("date >= ?")
            params.append(since.isoformat())
        if until is not None:
            conditions.append("date <= ?")
            params.append(until.isoformat())

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = await self._database.db.execute(
            f"SELECT {_CANDLE_COLUMNS} FROM daily_candles {where} ORDER BY date ASC",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_candle(row) for row in rows]

    async def get_daily_candle(self, day: date) -> DailyCandle | None:
        cursor = await self._database.db.execute(
            f"SELECT {_CANDLE_COLUMNS} FROM daily_candles WHERE date = ?",
            (day.isoformat(),),
        )
        row = await cursor.fetchone()
        return _row_to_candle(row) if row is not None else None

    async def get_candle_dates(self, since: date, until: date) -> set[date]:
        """Set of dates with a persisted candle in [since, until]."""
        cursor = await self._database.db.execute(
            "SELECT date FROM daily_candles WHERE date >= ? AND date <= ?",
            (since.isoformat(), until.isoformat()),
        )
        rows = await cursor.fetchall()
        return {date.fromisoformat(row[0]) for row in rows}

    async def get_close_for_date(self, day: date) -> Decimal | None:
        cursor = await self._database.db.execute(
            "SELECT close FROM daily_candles WHERE date = ?",
            (day.isoformat(),),
        )
        row = await cursor.fetchone()
        return Decimal(row[0]) if row is not None else None

    async def get_daily_stats(self, since: date | None = None, until: date | None = None) -> dict:
        """Count, earliest/latest date and last write time over daily candles.

        Returns dict with record_count, earliest, latest, last_update
        (None values when the range is empty).
        """
        conditions: list[str] = []
        params: list = []
        if since is not None:
            conditions.append("date >= ?")
            params.append(since.isoformat())
        if until is not None:
            conditions.append("date <= ?")
            params.append(until.isoformat())
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        cursor = await self._database.db.execute(
            f"SELECT COUNT(*), MIN(date), MAX(date), MAX(updated_at_ms) "
            f"FROM daily_candles {where}",
            params,
        )
        row = await cursor.fetchone()
        return {
            "record_count": row[0],
            "earliest": date.fromisoformat(row[1]) if row[1] else None,
            "latest": date.fromisoformat(row[2]) if row[2] else None,
            "last_update": from_epoch_ms(row[3]) if row[3] is not None else None,
        }

    async def delete_daily_candles_before(self, day: date) -> int:
        """Delete candles strictly older than ``day``. Returns rows deleted."""
        async with self._write_lock:
            cursor = await self._database.db.execute(
                "DELETE FROM daily_candles WHERE date < ?",
                (day.isoformat(),),
            )
            await self._database.db.commit()
        return cursor.rowcount

    async def _count_candles(self) -> int:
        cursor = await self._database.db.execute("SELECT COUNT(*) FROM daily_candles")
        return (await cursor.fetchone())[0]

    # ──────────────────────────────────────────────
    # Current price / portfolio read models
    # ──────────────────────────────────────────────

    async def save_current_price(self, quote: PriceQuote) -> None:
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT OR REPLACE INTO current_price "
                "(id, price, change_24h, change_percent_24h, timestamp_ms, source) "
                "VALUES (1, ?, ?, ?, ?, ?)",
                (
                    str(quote.price),
                    str(quote.change_24h),
                    str(quote.change_percent_24h),
                    to_epoch_ms(quote.timestamp),
                    quote.source.value,
                ),
            )
            await self._database.db.commit()

    async def get_current_price(self) -> PriceQuote | None:
        cursor = await self._database.db.execute(
            "SELECT price, change_24h, change_percent_24h, timestamp_ms, source "
            "FROM current_price WHERE id = 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return PriceQuote(
            price=Decimal(row[0]),
            change_24h=Decimal(row[1]),
            change_percent_24h=Decimal(row[2]),
            timestamp=from_epoch_ms(row[3]),
            source=PriceSource(row[4]),
        )

    async def save_portfolio_summary(self, summary: PortfolioSummary) -> None:
        async with self._write_lock:
            await self._database.db.execute(
                "INSERT OR REPLACE INTO portfolio_summary "
                "(id, holdings, price_usd, main_currency, secondary_currency, "
                "value_main, value_secondary, total_invested_main, "
                "unrealized_pnl_main, unrealized_pnl_percent, "
                "change_24h_main, change_24h_percent, updated_at_ms) "
                "VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    str(summary.holdings),
                    str(summary.price_usd),
                    summary.main_currency,
                    summary.secondary_currency,
                    str(summary.value_main),
                    str(summary.value_secondary),
                    str(summary.total_invested_main),
                    str(summary.unrealized_pnl_main),
                    str(summary.unrealized_pnl_percent),
                    str(summary.change_24h_main),
                    str(summary.change_24h_percent),
                    to_epoch_ms(summary.updated_at),
                ),
            )
            await self._database.db.commit()

    async def get_portfolio_summary(self) -> PortfolioSummary | None:
        cursor = await self._database.db.execute(
            "SELECT holdings, price_usd, main_currency, secondary_currency, "
            "value_main, value_secondary, total_invested_main, "
            "unrealized_pnl_main, unrealized_pnl_percent, "
            "change_24h_main, change_24h_percent, updated_at_ms "
            "FROM portfolio_summary WHERE id = 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return PortfolioSummary(
            holdings=Decimal(row[0]),
            price_usd=Decimal(row[1]),
            main_currency=row[2],
            secondary_currency=row[3],
            value_main=Decimal(row[4]),
            value_secondary=Decimal(row[5]),
            total_invested_main=Decimal(row[6]),
            unrealized_pnl_main=Decimal(row[7]),
            unrealized_pnl_percent=Decimal(row[8]),
            change_24h_main=Decimal(row[9]),
            change_24h_percent=Decimal(row[10]),
            updated_at=from_epoch_ms(row[11]),
        )
