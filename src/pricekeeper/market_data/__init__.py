"""Market data layer -- current price, hourly aggregation, exchange rates and portfolio valuation."""

from pricekeeper.market_data.aggregator import aggregate, truncate_to_hour
from pricekeeper.market_data.cache import FallbackChain, TimeBoundedCache
from pricekeeper.market_data.exchange_rates import ExchangeRateCache
from pricekeeper.market_data.portfolio import PortfolioValuer
from pricekeeper.market_data.price_service import PriceService

__all__ = [
    "ExchangeRateCache",
    "FallbackChain",
    "PortfolioValuer",
    "PriceService",
    "TimeBoundedCache",
    "aggregate",
    "truncate_to_hour",
]
