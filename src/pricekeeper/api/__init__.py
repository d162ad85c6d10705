"""HTTP trigger surface over the price data pipeline."""

from pricekeeper.api.app import create_app

__all__ = ["create_app"]
