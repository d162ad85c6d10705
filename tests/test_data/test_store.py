"""Tests for PriceDatabase and PriceStore against a real temporary SQLite file."""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from conftest import FIXED_NOW, make_candle
from pricekeeper.data.database import PriceDatabase
from pricekeeper.models import PortfolioSummary, PricePoint, PriceQuote, PriceSource


class TestDatabase:
    @pytest.mark.asyncio
    async def test_connect_is_idempotent_and_ping_works(self, tmp_path):
        db = PriceDatabase(str(tmp_path / "nested" / "prices.db"))
        await db.connect()
        await db.connect()
        await db.ping()
        assert db.is_connected
        await db.close()
        assert not db.is_connected

    def test_db_property_requires_connection(self, tmp_path):
        db = PriceDatabase(str(tmp_path / "prices.db"))
        with pytest.raises(RuntimeError):
            _ = db.db


class TestDailyCandles:
    @pytest.mark.asyncio
    async def test_upsert_counts_only_new_dates(self, store):
        first = [make_candle(date(2024, 1, 1)), make_candle(date(2024, 1, 2))]
        assert await store.upsert_daily_candles(first) == 2

        second = [make_candle(date(2024, 1, 2), close="120"), make_candle(date(2024, 1, 3))]
        assert await store.upsert_daily_candles(second) == 1

        candles = await store.get_daily_candles()
        assert [c.date for c in candles] == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]
        assert candles[1].close == Decimal("120")

    @pytest.mark.asyncio
    async def test_later_duplicate_in_one_call_wins(self, store):
        day = date(2024, 1, 1)
        await store.upsert_daily_candles([make_candle(day, close="100"), make_candle(day, close="101")])
        assert (await store.get_daily_candle(day)).close == Decimal("101")

    @pytest.mark.asyncio
    async def test_concurrent_upserts_never_duplicate(self, store):
        days = [date(2024, 1, 1) + timedelta(days=i) for i in range(10)]
        batch = [make_candle(d) for d in days]

        added = await asyncio.gather(
            store.upsert_daily_candles(batch),
            store.upsert_daily_candles(batch),
        )

        assert sum(added) == 10
        assert len(await store.get_daily_candles()) == 10

    @pytest.mark.asyncio
    async def test_candle_dates_and_stats(self, store):
        await store.upsert_daily_candles(
            [make_candle(date(2024, 1, 1)), make_candle(date(2024, 1, 3))]
        )

        assert await store.get_candle_dates(date(2024, 1, 1), date(2024, 1, 2)) == {date(2024, 1, 1)}
        stats = await store.get_daily_stats()
        assert stats["record_count"] == 2
        assert stats["earliest"] == date(2024, 1, 1)
        assert stats["latest"] == date(2024, 1, 3)
        assert stats["last_update"] is not None

    @pytest.mark.asyncio
    async def test_empty_stats(self, store):
        stats = await store.get_daily_stats()
        assert stats == {"record_count": 0, "earliest": None, "latest": None, "last_update": None}

    @pytest.mark.asyncio
    async def test_live_price_widens_existing_candle(self, store):
        day = date(2024, 1, 3)
        await store.upsert_daily_candles([make_candle(day, close="100")])

        candle = await store.apply_live_price_to_daily_candle(day, Decimal("120"))

        assert candle.open == Decimal("100")
        assert candle.high == Decimal("120")
        assert candle.low == Decimal("95")
        assert candle.close == Decimal("120")

    @pytest.mark.asyncio
    async def test_live_price_creates_flat_candle(self, store):
        candle = await store.apply_live_price_to_daily_candle(date(2024, 1, 3), Decimal("50"))
        assert candle.open == candle.high == candle.low == candle.close == Decimal("50")

    @pytest.mark.asyncio
    async def test_delete_before(self, store):
        await store.upsert_daily_candles(
            [make_candle(date(2024, 1, 1)), make_candle(date(2024, 1, 5))]
        )
        assert await store.delete_daily_candles_before(date(2024, 1, 3)) == 1
        assert await store.get_close_for_date(date(2024, 1, 1)) is None
        assert await store.get_close_for_date(date(2024, 1, 5)) == Decimal("100")


class TestPricePoints:
    @pytest.mark.asyncio
    async def test_upsert_keyed_by_timestamp(self, store):
        await store.upsert_price_points([PricePoint(timestamp=FIXED_NOW, price=Decimal("1"))])
        await store.upsert_price_points([PricePoint(timestamp=FIXED_NOW, price=Decimal("2"))])

        points = await store.get_price_points()
        assert len(points) == 1
        assert (await store.get_latest_price_point()).price == Decimal("2")

    @pytest.mark.asyncio
    async def test_window_and_prune(self, store):
        points = [
            PricePoint(timestamp=FIXED_NOW - timedelta(hours=h), price=Decimal(h))
            for h in range(5)
        ]
        await store.upsert_price_points(points)

        window = await store.get_price_points(since=FIXED_NOW - timedelta(hours=2))
        assert [p.price for p in window] == [Decimal(2), Decimal(1), Decimal(0)]

        assert await store.delete_price_points_before(FIXED_NOW - timedelta(hours=1)) == 3
        assert len(await store.get_price_points()) == 2


class TestReadModels:
    @pytest.mark.asyncio
    async def test_current_price_round_trip(self, store):
        assert await store.get_current_price() is None
        quote = PriceQuote(
            price=Decimal("42000.5"),
            timestamp=FIXED_NOW,
            source=PriceSource.UPSTREAM,
            change_24h=Decimal("-10"),
            change_percent_24h=Decimal("-0.02"),
        )
        await store.save_current_price(quote)
        assert await store.get_current_price() == quote

    @pytest.mark.asyncio
    async def test_portfolio_summary_single_row(self, store):
        def summary(value: str) -> PortfolioSummary:
            return PortfolioSummary(
                holdings=Decimal("1"),
                price_usd=Decimal(value),
                main_currency="USD",
                secondary_currency="EUR",
                value_main=Decimal(value),
                value_secondary=Decimal(value),
                total_invested_main=Decimal("0"),
                unrealized_pnl_main=Decimal("0"),
                unrealized_pnl_percent=Decimal("0"),
                change_24h_main=Decimal("0"),
                change_24h_percent=Decimal("0"),
                updated_at=FIXED_NOW,
            )

        await store.save_portfolio_summary(summary("1"))
        await store.save_portfolio_summary(summary("2"))

        stored = await store.get_portfolio_summary()
        assert stored.value_main == Decimal("2")
        assert stored.updated_at == FIXED_NOW
