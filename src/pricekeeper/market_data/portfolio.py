"""Portfolio valuation from configured holdings.

Recomputes value, unrealized P&L and 24h change in the main and secondary
currencies for a given asset price (quoted in USD), then stores the summary.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

from pricekeeper.config import PortfolioSettings
from pricekeeper.data.store import PriceStore
from pricekeeper.logging import get_logger
from pricekeeper.market_data.exchange_rates import ExchangeRateCache
from pricekeeper.models import PortfolioSummary, utc_now

logger = get_logger(__name__)

_CENT = Decimal("0.01")
_ZERO = Decimal("0")


class PortfolioValuer:
    """Side-effecting portfolio summary recomputation."""

    def __init__(
        self,
        store: PriceStore,
        rates: ExchangeRateCache,
        settings: PortfolioSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._rates = rates
        self._settings = settings
        self._clock = clock

    async def calculate_and_store_portfolio_summary(self, price: Decimal) -> PortfolioSummary:
        """Value the holdings at ``price`` (USD) and persist the summary."""
        main = self._settings.main_currency.upper()
        secondary = self._settings.secondary_currency.upper()
        holdings = self._settings.holdings
        invested = self._settings.total_invested

        usd_to_main = await self._rates.get("USD", main)
        usd_to_secondary = await self._rates.get("USD", secondary)

        value_usd = holdings * price
        value_main = value_usd * usd_to_main
        pnl_main = value_main - invested
        pnl_pct = (pnl_main / invested * 100) if invested > 0 else _ZERO

        change_main = _ZERO
        change_pct = _ZERO
        yesterday = self._clock().date() - timedelta(days=1)
        previous = await self._store.get_close_for_date(yesterday)
        if previous is not None and previous > 0:
            change_main = holdings * (price - previous) * usd_to_main
            change_pct = (price - previous) / previous * 100

        summary = PortfolioSummary(
            holdings=holdings,
            price_usd=price,
            main_currency=main,
            secondary_currency=secondary,
            value_main=value_main.quantize(_CENT),
            value_secondary=(value_usd * usd_to_secondary).quantize(_CENT),
            total_invested_main=invested,
            unrealized_pnl_main=pnl_main.quantize(_CENT),
            unrealized_pnl_percent=pnl_pct.quantize(_CENT),
            change_24h_main=change_main.quantize(_CENT),
            change_24h_percent=change_pct.quantize(_CENT),
        )
        await self._store.save_portfolio_summary(summary)

        logger.info(
            "portfolio_summary_updated",
            value=str(summary.value_main),
            currency=main,
            change_24h_percent=str(summary.change_24h_percent),
        )
        return summary
