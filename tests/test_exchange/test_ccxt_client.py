"""Tests for CcxtMarketDataClient and HttpExchangeRateSource.

All tests use mocked ccxt exchange objects to avoid real API calls.
"""

import asyncio
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from ccxt.base.errors import NetworkError

from pricekeeper.config import ExchangeRateSettings, MarketDataSettings
from pricekeeper.exceptions import TransientUpstreamFailure
from pricekeeper.exchange.ccxt_client import CcxtMarketDataClient
from pricekeeper.exchange.rate_source import HttpExchangeRateSource
from pricekeeper.market_data.exchange_rates import ExchangeRateCache

DAY_MS = 86_400_000
JAN_1_MS = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def market_settings() -> MarketDataSettings:
    return MarketDataSettings(
        exchange_id="bybit",
        symbol="BTC/USDT",
        request_timeout_seconds=0.05,
        max_candles_per_request=1000,
    )


@pytest.fixture
def mock_exchange() -> MagicMock:
    exchange = MagicMock()
    exchange.load_markets = AsyncMock(return_value={"BTC/USDT": {}})
    exchange.fetch_ohlcv = AsyncMock(return_value=[])
    exchange.fetch_ticker = AsyncMock(return_value={})
    exchange.close = AsyncMock()
    return exchange


@pytest.fixture
def client(market_settings, mock_exchange) -> CcxtMarketDataClient:
    return CcxtMarketDataClient(market_settings, exchange=mock_exchange)


# ---------------------------------------------------------------------------
# CcxtMarketDataClient
# ---------------------------------------------------------------------------


class TestHistoricalSeries:
    @pytest.mark.asyncio
    async def test_parses_filters_and_dedupes(self, client, mock_exchange):
        mock_exchange.fetch_ohlcv.return_value = [
            [JAN_1_MS + DAY_MS, 101, 110, 95, 105, 7],
            [JAN_1_MS, 100, 105, 90, 101, 5],
            [JAN_1_MS + DAY_MS, 102, 111, 96, 106, 8],  # duplicate date, later row wins
            [JAN_1_MS + 2 * DAY_MS, None, 1, 1, 1, 1],  # incomplete row skipped
            [JAN_1_MS + 5 * DAY_MS, 1, 1, 1, 1, 1],  # outside requested range
        ]

        candles = await client.fetch_historical_series(date(2024, 1, 1), date(2024, 1, 3))

        assert [c.date for c in candles] == [date(2024, 1, 1), date(2024, 1, 2)]
        assert candles[0].close == Decimal("101")
        assert candles[1].close == Decimal("106")
        assert candles[1].volume == Decimal("8")
        mock_exchange.fetch_ohlcv.assert_awaited_once_with(
            "BTC/USDT", timeframe="1d", since=JAN_1_MS, limit=3
        )

    @pytest.mark.asyncio
    async def test_limit_capped_by_window(self, market_settings, mock_exchange):
        market_settings.max_candles_per_request = 2
        client = CcxtMarketDataClient(market_settings, exchange=mock_exchange)

        await client.fetch_historical_series(date(2024, 1, 1), date(2024, 1, 10))

        assert mock_exchange.fetch_ohlcv.await_args.kwargs["limit"] == 2

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, client, mock_exchange):
        mock_exchange.fetch_ohlcv.side_effect = NetworkError("connection reset")
        with pytest.raises(TransientUpstreamFailure):
            await client.fetch_historical_series(date(2024, 1, 1), date(2024, 1, 3))

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self, client, mock_exchange):
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        mock_exchange.fetch_ohlcv.side_effect = hang
        with pytest.raises(TransientUpstreamFailure):
            await client.fetch_historical_series(date(2024, 1, 1), date(2024, 1, 3))


class TestQuotes:
    @pytest.mark.asyncio
    async def test_latest_quote(self, client, mock_exchange):
        mock_exchange.fetch_ticker.return_value = {
            "last": 42000.5,
            "timestamp": JAN_1_MS,
            "baseVolume": 12.5,
        }

        point = await client.fetch_latest_quote()

        assert point.price == Decimal("42000.5")
        assert point.volume == Decimal("12.5")
        assert point.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_ticker_without_last_price(self, client, mock_exchange):
        mock_exchange.fetch_ticker.return_value = {"last": None}
        with pytest.raises(TransientUpstreamFailure):
            await client.fetch_latest_quote()

    @pytest.mark.asyncio
    async def test_intraday_points_skip_empty_closes(self, client, mock_exchange):
        mock_exchange.fetch_ohlcv.return_value = [
            [JAN_1_MS, 1, 1, 1, 100, 2],
            [JAN_1_MS + 3_600_000, 1, 1, 1, None, 2],
        ]

        points = await client.fetch_intraday_points(datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert len(points) == 1
        assert points[0].price == Decimal("100")
        assert mock_exchange.fetch_ohlcv.await_args.kwargs["timeframe"] == "1h"

    @pytest.mark.asyncio
    async def test_connect_and_close(self, client, mock_exchange):
        await client.connect()
        await client.close()
        mock_exchange.load_markets.assert_awaited_once()
        mock_exchange.close.assert_awaited_once()


# ---------------------------------------------------------------------------
# HttpExchangeRateSource
# ---------------------------------------------------------------------------


class _FakeResponse:
    def __init__(self, payload: object = None, body: bytes | None = None) -> None:
        self._body = body if body is not None else json.dumps(payload).encode()

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class TestHttpExchangeRateSource:
    @pytest.mark.asyncio
    async def test_parses_rates(self):
        source = HttpExchangeRateSource(ExchangeRateSettings(api_base_url="https://rates.test/latest/"))
        payload = {"base": "USD", "rates": {"EUR": 0.92, "pln": 4.01, "BAD": "x", "ZERO": 0}}

        with patch("urllib.request.urlopen", return_value=_FakeResponse(payload)) as urlopen:
            rates = await source.fetch_rates("usd")

        assert rates == {"EUR": Decimal("0.92"), "PLN": Decimal("4.01")}
        request = urlopen.call_args.args[0]
        assert request.full_url == "https://rates.test/latest/USD"

    @pytest.mark.asyncio
    async def test_unreachable_is_transient(self):
        source = HttpExchangeRateSource(ExchangeRateSettings())

        with patch("urllib.request.urlopen", side_effect=OSError("no route")):
            with pytest.raises(TransientUpstreamFailure):
                await source.fetch_rates("USD")

    @pytest.mark.asyncio
    async def test_unexpected_payload_is_transient(self):
        source = HttpExchangeRateSource(ExchangeRateSettings())

        with patch("urllib.request.urlopen", return_value=_FakeResponse({"result": "error"})):
            with pytest.raises(TransientUpstreamFailure):
                await source.fetch_rates("USD")

    @pytest.mark.asyncio
    async def test_non_object_payload_is_transient(self):
        source = HttpExchangeRateSource(ExchangeRateSettings())

        with patch("urllib.request.urlopen", return_value=_FakeResponse(["unexpected"])):
            with pytest.raises(TransientUpstreamFailure):
                await source.fetch_rates("USD")

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_transient(self):
        source = HttpExchangeRateSource(ExchangeRateSettings())

        with patch("urllib.request.urlopen", return_value=_FakeResponse(body=b"\xff\xfe{")):
            with pytest.raises(TransientUpstreamFailure):
                await source.fetch_rates("USD")

    @pytest.mark.asyncio
    async def test_non_finite_rates_are_skipped(self):
        source = HttpExchangeRateSource(ExchangeRateSettings())
        body = b'{"rates": {"EUR": NaN, "GBP": Infinity, "PLN": 4.01}}'

        with patch("urllib.request.urlopen", return_value=_FakeResponse(body=body)):
            rates = await source.fetch_rates("USD")

        assert rates == {"PLN": Decimal("4.01")}

    @pytest.mark.asyncio
    async def test_malformed_payload_lets_prime_seed_fallback_rates(self):
        settings = ExchangeRateSettings()
        cache = ExchangeRateCache(HttpExchangeRateSource(settings), settings)

        with patch("urllib.request.urlopen", return_value=_FakeResponse(["unexpected"])):
            await cache.prime()
            assert await cache.get("USD", "EUR") == Decimal("0.92")
