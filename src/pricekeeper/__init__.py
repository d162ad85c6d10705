"""Single-asset price data pipeline: history reconciliation, live price and FX caching."""

__version__ = "0.1.0"
