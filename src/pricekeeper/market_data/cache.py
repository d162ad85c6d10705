"""Time-bounded in-memory cache and ordered fallback chain.

TimeBoundedCache is the single staleness abstraction shared by the exchange
rate cache and the price service: key -> (value, fetched_at), with a TTL and
an asyncio.Lock so readers never observe a half-swapped entry. Concurrent
misses on the same key share one refresh call.

FallbackChain models "try primary, then cache, then hardcoded default" as an
explicit ordered list of tagged sources instead of nested try/except blocks.
"""

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

from pricekeeper.logging import get_logger
from pricekeeper.models import utc_now

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A cached value and when it was fetched."""

    value: V
    fetched_at: datetime


class TimeBoundedCache(Generic[K, V]):
    """Async-safe key/value cache whose entries go stale after ``ttl_seconds``.

    Stale entries are kept (get_entry still returns them) so callers can fall
    back to the last known value when a refresh fails.

    Args:
        ttl_seconds: Age after which an entry is no longer fresh.
        clock: Returns the current aware datetime. Injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[K, CacheEntry[V]] = {}
        self._lock = asyncio.Lock()
        self._refresh_locks: dict[K, asyncio.Lock] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def is_fresh(self, entry: CacheEntry[V]) -> bool:
        age = (self._clock() - entry.fetched_at).total_seconds()
        return age < self._ttl

    async def get_entry(self, key: K) -> CacheEntry[V] | None:
        """Return the entry for ``key`` regardless of age, or None."""
        async with self._lock:
            return self._entries.get(key)

    async def get_any(self, key: K) -> V | None:
        """Return the last known value for ``key``, stale or not."""
        entry = await self.get_entry(key)
        return entry.value if entry is not None else None

    async def get_fresh(self, key: K) -> V | None:
        """Return the value for ``key`` only if it is within the TTL."""
        entry = await self.get_entry(key)
        if entry is None or not self.is_fresh(entry):
            return None
        return entry.value

    async def put(self, key: K, value: V, fetched_at: datetime | None = None) -> CacheEntry[V]:
        """Swap in a new value for ``key``, superseding any previous entry."""
        entry = CacheEntry(value=value, fetched_at=fetched_at or self._clock())
        async with self._lock:
            self._entries[key] = entry
        return entry

    async def put_many(self, values: dict[K, V], fetched_at: datetime | None = None) -> None:
        """Swap in several values atomically with respect to readers."""
        stamp = fetched_at or self._clock()
        async with self._lock:
            for key, value in values.items():
                self._entries[key] = CacheEntry(value=value, fetched_at=stamp)

    async def get_or_refresh(self, key: K, refresh: Callable[[], Awaitable[V]]) -> V:
        """Return a fresh value, calling ``refresh`` at most once per concurrent miss.

        Errors from ``refresh`` propagate; the previous entry is left intact.
        """
        value = await self.get_fresh(key)
        if value is not None:
            return value

        async with self._lock:
            key_lock = self._refresh_locks.setdefault(key, asyncio.Lock())

        async with key_lock:
            # Another waiter may have refreshed while we queued
            value = await self.get_fresh(key)
            if value is not None:
                return value
            value = await refresh()
            await self.put(key, value)
            return value

    async def items(self) -> dict[K, CacheEntry[V]]:
        """Snapshot of every entry, fresh or stale."""
        async with self._lock:
            return dict(self._entries)

    async def invalidate(self, key: K) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        """Evict all entries so the next lookup refetches."""
        async with self._lock:
            self._entries.clear()


@dataclass(frozen=True)
class Sourced(Generic[V]):
    """A resolved value tagged with the source that produced it."""

    value: V
    source: str


class FallbackChain(Generic[V]):
    """Ordered list of (tag, async fetch) steps tried until one yields a value.

    A step "misses" by returning None or raising; misses are logged and the
    next step is tried. If every step misses, LookupError is raised, so the
    last step of a chain that must never fail should be a constant.
    """

    def __init__(
        self,
        name: str,
        steps: list[tuple[str, Callable[[], Awaitable[V | None]]]],
    ) -> None:
        if not steps:
            raise ValueError("FallbackChain needs at least one step")
        self._name = name
        self._steps = steps

    async def resolve(self) -> Sourced[V]:
        last_error: Exception | None = None
        for tag, step in self._steps:
            try:
                value = await step()
            except Exception as e:
                last_error = e
                logger.warning(
                    "fallback_step_failed",
                    chain=self._name,
                    source=tag,
                    error=str(e),
                )
                continue
            if value is not None:
                return Sourced(value=value, source=tag)
            logger.debug("fallback_step_empty", chain=self._name, source=tag)

        raise LookupError(f"{self._name}: no source produced a value") from last_error
