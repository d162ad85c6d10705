"""Upstream sources -- market data via ccxt and exchange rates via HTTP."""

from pricekeeper.exchange.ccxt_client import CcxtMarketDataClient
from pricekeeper.exchange.client import MarketDataClient
from pricekeeper.exchange.rate_source import ExchangeRateSource, HttpExchangeRateSource

__all__ = [
    "CcxtMarketDataClient",
    "ExchangeRateSource",
    "HttpExchangeRateSource",
    "MarketDataClient",
]
