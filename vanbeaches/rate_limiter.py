"""
Fixed-window token bucket per named upstream resource.

Callers that find no token are queued and served FIFO when tokens come back,
either from the window refill timer or from an explicit release().
The limiter never rejects a caller; it only delays.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    """Budget for one upstream resource: max_requests per window seconds."""

    max_requests: int = Field(default=10, ge=1)
    window: float = Field(default=1.0, gt=0)


DEFAULT_CONFIG = RateLimitConfig()


@dataclass
class BucketState:
    config: RateLimitConfig
    tokens: int
    last_refill: float
    waiters: deque[asyncio.Future] = field(default_factory=deque)
    refill_timer: Optional[asyncio.TimerHandle] = None


class RateLimiter:
    """
    Token buckets keyed by resource name.

    Unconfigured resources get a permissive default budget instead of an error.

    Usage:
        async with limiter.slot("iwls"):
            await call_upstream()
    """

    def __init__(self, configs: Optional[dict[str, RateLimitConfig]] = None) -> None:
        self._configs: dict[str, RateLimitConfig] = dict(configs or {})
        self._buckets: dict[str, BucketState] = {}
        self._clock = time.monotonic  # overridable for testing

    def configure(self, name: str, config: RateLimitConfig) -> None:
        """Set the budget for a resource. Resets its bucket to full."""
        self._configs[name] = config
        bucket = self._buckets.get(name)
        if bucket is not None:
            bucket.config = config
            bucket.tokens = config.max_requests
            bucket.last_refill = self._clock()
            self._drain(name)

    def config_for(self, name: str) -> RateLimitConfig:
        return self._configs.get(name, DEFAULT_CONFIG)

    async def acquire_slot(self, name: str) -> None:
        """Wait until a token for name is granted."""
        bucket = self._bucket(name)
        self._refill(bucket)
        self._drain(name)

        if not bucket.waiters and bucket.tokens > 0:
            bucket.tokens -= 1
            return

        waiter = asyncio.get_running_loop().create_future()
        bucket.waiters.append(waiter)
        logger.debug("Queued for %s slot (%d waiting)", name, len(bucket.waiters))
        self._arm_refill_timer(name, bucket)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Granted just before the cancel landed: hand the token back.
                self.release(name)
            else:
                try:
                    bucket.waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self, name: str) -> None:
        """Return a token for name and serve queued callers."""
        bucket = self._bucket(name)
        bucket.tokens = min(bucket.tokens + 1, bucket.config.max_requests)
        self._drain(name)

    @asynccontextmanager
    async def slot(self, name: str) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block; always released once."""
        await self.acquire_slot(name)
        try:
            yield
        finally:
            self.release(name)

    def available(self, name: str) -> int:
        bucket = self._bucket(name)
        self._refill(bucket)
        return bucket.tokens

    def queued(self, name: str) -> int:
        bucket = self._buckets.get(name)
        return len(bucket.waiters) if bucket is not None else 0

    def _bucket(self, name: str) -> BucketState:
        bucket = self._buckets.get(name)
        if bucket is None:
            config = self.config_for(name)
            bucket = BucketState(
                config=config, tokens=config.max_requests, last_refill=self._clock()
            )
            self._buckets[name] = bucket
        return bucket

    def _refill(self, bucket: BucketState) -> None:
        now = self._clock()
        if now - bucket.last_refill >= bucket.config.window:
            bucket.tokens = bucket.config.max_requests
            bucket.last_refill = now

    def _drain(self, name: str) -> None:
        bucket = self._buckets.get(name)
        if bucket is None:
            return
        self._refill(bucket)
        while bucket.tokens > 0 and bucket.waiters:
            waiter = bucket.waiters.popleft()
            if waiter.done():
                continue
            bucket.tokens -= 1
            waiter.set_result(None)

    def _arm_refill_timer(self, name: str, bucket: BucketState) -> None:
        if bucket.refill_timer is not None and not bucket.refill_timer.cancelled():
            return
        loop = asyncio.get_running_loop()
        bucket.refill_timer = loop.call_later(
            bucket.config.window, self._on_refill_timer, name
        )

    def _on_refill_timer(self, name: str) -> None:
        bucket = self._buckets.get(name)
        if bucket is None:
            return
        bucket.refill_timer = None
        self._drain(name)
        if bucket.waiters:
            self._arm_refill_timer(name, bucket)

    def close(self) -> None:
        """Cancel pending refill timers."""
        for bucket in self._buckets.values():
            if bucket.refill_timer is not None:
                bucket.refill_timer.cancel()
                bucket.refill_timer = None
