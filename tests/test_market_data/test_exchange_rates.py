"""Tests for ExchangeRateCache resolution order and refresh behavior."""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import FakeClock
from pricekeeper.config import ExchangeRateSettings
from pricekeeper.exceptions import TransientUpstreamFailure, ValidationError
from pricekeeper.market_data.exchange_rates import ExchangeRateCache, fallback_rate

USD_RATES = {"USD": Decimal("1"), "EUR": Decimal("0.8"), "PLN": Decimal("4"), "JPY": Decimal("150")}


@pytest.fixture
def fx_settings() -> ExchangeRateSettings:
    return ExchangeRateSettings(ttl_hours=4, tracked_currencies=["USD", "EUR", "PLN", "GBP"])


@pytest.fixture
def rates(mock_rate_source, fx_settings, clock) -> ExchangeRateCache:
    return ExchangeRateCache(mock_rate_source, fx_settings, clock=clock)


def _only_usd(base: str) -> dict[str, Decimal]:
    if base == "USD":
        return dict(USD_RATES)
    raise TransientUpstreamFailure(f"no rates for {base}")


class TestGet:
    @pytest.mark.asyncio
    async def test_same_currency_is_one_without_fetch(self, rates, mock_rate_source):
        assert await rates.get("USD", "USD") == Decimal("1")
        assert await rates.get("eur", "EUR") == Decimal("1")
        mock_rate_source.fetch_rates.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetches_once_then_serves_fresh(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.return_value = dict(USD_RATES)

        assert await rates.get("USD", "EUR") == Decimal("0.8")
        assert await rates.get("USD", "PLN") == Decimal("4")
        mock_rate_source.fetch_rates.assert_called_once_with("USD")

    @pytest.mark.asyncio
    async def test_untracked_quotes_not_cached(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.return_value = dict(USD_RATES)
        await rates.get("USD", "EUR")

        pairs = {(r.base, r.quote) for r in await rates.get_all()}
        assert pairs == {("USD", "EUR"), ("USD", "PLN")}

    @pytest.mark.asyncio
    async def test_refetches_after_ttl(self, rates, mock_rate_source, clock):
        mock_rate_source.fetch_rates.return_value = dict(USD_RATES)
        await rates.get("USD", "EUR")
        clock.now += timedelta(hours=5)
        mock_rate_source.fetch_rates.return_value = {**USD_RATES, "EUR": Decimal("0.9")}

        assert await rates.get("USD", "EUR") == Decimal("0.9")
        assert mock_rate_source.fetch_rates.call_count == 2

    @pytest.mark.asyncio
    async def test_serves_stale_when_upstream_fails(self, rates, mock_rate_source, clock):
        mock_rate_source.fetch_rates.return_value = dict(USD_RATES)
        await rates.get("USD", "EUR")
        clock.now += timedelta(hours=5)
        mock_rate_source.fetch_rates.side_effect = TransientUpstreamFailure("down")

        assert await rates.get("USD", "EUR") == Decimal("0.8")

    @pytest.mark.asyncio
    async def test_inverse_of_cached_pair(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.side_effect = _only_usd
        await rates.get("USD", "EUR")

        assert await rates.get("EUR", "USD") == Decimal("1.25")

    @pytest.mark.asyncio
    async def test_cross_rate_via_pivot(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.side_effect = _only_usd
        await rates.refresh_all()

        # PLN -> USD is 1/4, USD -> EUR is 0.8
        assert await rates.get("PLN", "EUR") == Decimal("0.2")

    @pytest.mark.asyncio
    async def test_fallback_table_when_nothing_known(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.side_effect = TransientUpstreamFailure("down")

        assert await rates.get("EUR", "USD") == Decimal("1.05")
        assert await rates.get("GBP", "USD") == Decimal("1.27")

    @pytest.mark.asyncio
    async def test_unknown_pair_falls_back_to_one(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.side_effect = TransientUpstreamFailure("down")
        assert await rates.get("CHF", "SEK") == Decimal("1")

    @pytest.mark.asyncio
    async def test_invalid_currency_code(self, rates):
        with pytest.raises(ValidationError):
            await rates.get("US1", "EUR")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_clear_forces_refetch(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.return_value = dict(USD_RATES)
        await rates.get("USD", "EUR")
        await rates.clear()

        assert await rates.get_all() == []
        await rates.get("USD", "EUR")
        assert mock_rate_source.fetch_rates.call_count == 2

    @pytest.mark.asyncio
    async def test_refresh_all_tolerates_partial_failure(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.side_effect = _only_usd
        stored = await rates.refresh_all()
        assert stored == 2  # USD/EUR and USD/PLN

    @pytest.mark.asyncio
    async def test_refresh_all_raises_when_every_base_fails(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.side_effect = TransientUpstreamFailure("down")
        with pytest.raises(TransientUpstreamFailure):
            await rates.refresh_all()

    @pytest.mark.asyncio
    async def test_prime_seeds_stale_rates_on_failure(self, rates, mock_rate_source):
        mock_rate_source.fetch_rates.side_effect = TransientUpstreamFailure("down")
        await rates.prime()

        # Seeds are never fresh, so upstream is tried again before serving them
        assert await rates.get("USD", "EUR") == Decimal("0.92")
        assert await rates.get("EUR", "USD") == Decimal("1.09")
        assert mock_rate_source.fetch_rates.call_count > 3


def test_fallback_rate_inverts_reverse_entry():
    assert fallback_rate("USD", "PLN") == Decimal("4")
