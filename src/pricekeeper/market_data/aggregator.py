"""Hourly OHLC aggregation of price ticks.

Pure functions with no hidden state: the same input always yields the same
candles, regardless of input order. Invoked on read, never on write.
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal

from pricekeeper.exceptions import ValidationError
from pricekeeper.models import HourlyCandle, PricePoint


def truncate_to_hour(instant: datetime) -> datetime:
    """Start of the UTC hour containing ``instant``."""
    if instant.tzinfo is None:
        raise ValidationError("naive datetime passed to truncate_to_hour; use UTC-aware instants")
    return instant.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def aggregate(
    points: Iterable[PricePoint],
    window_start: datetime | None = None,
) -> list[HourlyCandle]:
    """Compress ticks into hourly candles sorted by hour start.

    Each tick is bucketed into the hour containing its timestamp. Per bucket:
    open is the earliest tick's price, close the latest's, high/low the
    extrema, volume the sum and tick_count the number of ticks. Ticks before
    ``window_start`` are ignored. Duplicate timestamps collapse to one tick,
    keeping the highest price so the outcome does not depend on input order.
    """
    cutoff = window_start.astimezone(timezone.utc) if window_start is not None else None

    by_timestamp: dict[datetime, PricePoint] = {}
    for point in points:
        if point.price < 0:
            raise ValidationError(f"negative price {point.price} at {point.timestamp.isoformat()}")
        if cutoff is not None and point.timestamp < cutoff:
            continue
        existing = by_timestamp.get(point.timestamp)
        if existing is None or (point.price, point.volume) > (existing.price, existing.volume):
            by_timestamp[point.timestamp] = point

    buckets: dict[datetime, list[PricePoint]] = {}
    for ts in sorted(by_timestamp):
        buckets.setdefault(truncate_to_hour(ts), []).append(by_timestamp[ts])

    candles = []
    for hour_start in sorted(buckets):
        ticks = buckets[hour_start]
        prices = [t.price for t in ticks]
        candles.append(
            HourlyCandle(
                hour_start=hour_start,
                open=ticks[0].price,
                high=max(prices),
                low=min(prices),
                close=ticks[-1].price,
                volume=sum((t.volume for t in ticks), Decimal("0")),
                tick_count=len(ticks),
            )
        )
    return candles
