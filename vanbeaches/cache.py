"""
In-memory TTL cache with LRU eviction and request coalescing.

Generic cache -- not beach-specific. Stores any value by string key with a
per-entry TTL. Concurrent misses for the same key share one fetch.
A last-known-good copy of every stored value is kept for stale fallback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FetchTimeoutError(TimeoutError):
    """Raised to every waiter when a coalesced fetch exceeds its timeout."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Fetch for {key!r} timed out after {timeout:g}s")
        self.key = key
        self.timeout = timeout


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with its expiry and last access time (monotonic seconds)."""

    value: T
    expires_at: float
    last_accessed: float


@dataclass
class StaleValue(Generic[T]):
    """Last-known-good value served when the upstream is unavailable."""

    value: T
    stored_at: float  # time.monotonic() when stored

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since this value was stored."""
        if now is None:
            now = time.monotonic()
        return now - self.stored_at


@dataclass(frozen=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    hit_rate: float
    in_flight: int


class CacheManager:
    """
    TTL cache with single-flight fetches.

    - get(): returns the value if present and not expired; counts hits/misses.
    - set(): stores a value; evicts the least-recently-accessed entry when full.
    - get_or_fetch(): get, or join/start the one in-flight fetch for the key.
    - get_stale(): last-known-good value within stale_max_age, ignoring TTL.

    All bookkeeping runs synchronously between awaits, so a miss check and
    the in-flight registration can never interleave with another caller.
    """

    def __init__(
        self,
        max_size: int = 1000,
        stale_max_age: float = 86400.0,
        fetch_timeout: Optional[float] = 30.0,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._stale_max_age = stale_max_age
        self._fetch_timeout = fetch_timeout
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._last_good: dict[str, StaleValue[Any]] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._clock = time.monotonic  # overridable for testing

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._clock() < entry.expires_at

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss. Expired entries are dropped."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        now = self._clock()
        if now >= entry.expires_at:
            del self._entries[key]
            self._misses += 1
            return None
        entry.last_accessed = now
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        """Store a value that expires ttl seconds from now."""
        if key not in self._entries and len(self._entries) >= self._max_size:
            self._evict_lru()
        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value, expires_at=now + ttl, last_accessed=now
        )
        self._last_good[key] = StaleValue(value=value, stored_at=now)
        if len(self._last_good) > self._max_size:
            self._prune_last_good(now)

    async def get_or_fetch(
        self, key: str, fetch_fn: Callable[[], Awaitable[T]], ttl: float
    ) -> T:
        """
        Return the cached value for key, fetching it on a miss.

        N concurrent callers for the same missing key share a single call of
        fetch_fn. Failures are propagated to every waiter and never cached.

        Raises:
            FetchTimeoutError: fetch_fn did not settle within fetch_timeout.
            Exception: whatever fetch_fn raised.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        task = self._in_flight.get(key)
        if task is not None:
            logger.debug("Coalescing fetch for %s", key)
        else:
            task = asyncio.ensure_future(self._fetch_and_store(key, fetch_fn, ttl))
            task.add_done_callback(_consume_exception)
            self._in_flight[key] = task

        # One cancelled waiter must not cancel the fetch the others share.
        return await asyncio.shield(task)

    async def _fetch_and_store(
        self, key: str, fetch_fn: Callable[[], Awaitable[T]], ttl: float
    ) -> T:
        try:
            if self._fetch_timeout is None:
                value = await fetch_fn()
            else:
                try:
                    value = await asyncio.wait_for(fetch_fn(), self._fetch_timeout)
                except asyncio.TimeoutError as exc:
                    logger.warning(
                        "Fetch for %s timed out after %ss", key, self._fetch_timeout
                    )
                    raise FetchTimeoutError(key, self._fetch_timeout) from exc
            self.set(key, value, ttl)
            return value
        finally:
            self._in_flight.pop(key, None)

    def get_stale(self, key: str) -> Optional[StaleValue[Any]]:
        """Return the last-known-good value if stored within stale_max_age."""
        stale = self._last_good.get(key)
        if stale is None:
            return None
        if stale.age(self._clock()) > self._stale_max_age:
            del self._last_good[key]
            return None
        return stale

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def clear(self, key: str) -> None:
        """Invalidate a single key."""
        self._entries.pop(key, None)
        self._last_good.pop(key, None)

    def clear_all(self) -> None:
        """Remove all entries. In-flight fetches are left to complete."""
        self._entries.clear()
        self._last_good.clear()

    def get_stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            size=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total if total > 0 else 0.0,
            in_flight=len(self._in_flight),
        )

    def _evict_lru(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries, key=lambda k: self._entries[k].last_accessed)
        del self._entries[oldest]
        self._last_good.pop(oldest, None)
        logger.debug("Evicted least-recently-used key %s", oldest)

    def _prune_last_good(self, now: float) -> None:
        # Drop copies past stale_max_age, then the oldest copies whose entry
        # has already expired, until at most max_size remain.
        for key in [
            k for k, v in self._last_good.items() if v.age(now) > self._stale_max_age
        ]:
            del self._last_good[key]
        excess = len(self._last_good) - self._max_size
        if excess <= 0:
            return
        orphans = sorted(
            (k for k in self._last_good if k not in self._entries),
            key=lambda k: self._last_good[k].stored_at,
        )
        for key in orphans[:excess]:
            del self._last_good[key]


def _consume_exception(task: asyncio.Task) -> None:
    # Waiters may all be gone; mark the exception retrieved either way.
    if not task.cancelled():
        task.exception()
