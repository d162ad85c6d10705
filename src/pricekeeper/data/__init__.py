"""Price persistence layer.

Provides SQLite connection management, the typed read/write store, and the
gap-detecting reconciliation pipeline for daily candle history.
"""

from pricekeeper.data.database import PriceDatabase
from pricekeeper.data.reconciler import HistoricalReconciler
from pricekeeper.data.store import PriceStore

__all__ = ["HistoricalReconciler", "PriceDatabase", "PriceStore"]
