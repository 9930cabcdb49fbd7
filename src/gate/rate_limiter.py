"""Per-key fixed-window rate limiters.

A key's window opens with its first request and lasts ``window_seconds``;
the ``limit``-th request inside a window is admitted and the next one is
rejected until the window resets. Increments for the same key are
serialized (per-key lock in process, MULTI block in Redis).
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from redis.exceptions import RedisError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds

    def retry_after(self, now: float | None = None) -> int:
        """Whole seconds until the window resets (at least 1)."""
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))


@runtime_checkable
class RateLimiter(Protocol):
    async def hit(self, key_id: str, limit: int) -> RateLimitResult: ...

    async def reset(self, key_id: str) -> None: ...


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """Process-local limiter; correct for a single gateway instance."""

    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.time) -> None:
        self._window = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key_id: str) -> asyncio.Lock:
        lock = self._locks.get(key_id)
        if lock is None:
            lock = self._locks[key_id] = asyncio.Lock()
        return lock

    async def hit(self, key_id: str, limit: int) -> RateLimitResult:
        async with self._lock_for(key_id):
            now = self._clock()
            window = self._windows.get(key_id)

            if window is None or now >= window.reset_at:
                window = self._windows[key_id] = _Window(count=1, reset_at=now + self._window)
                return RateLimitResult(True, limit, max(0, limit - 1), window.reset_at)

            if window.count >= limit:
                return RateLimitResult(False, limit, 0, window.reset_at)

            window.count += 1
            return RateLimitResult(True, limit, max(0, limit - window.count), window.reset_at)

    async def reset(self, key_id: str) -> None:
        self._windows.pop(key_id, None)

    def cleanup(self) -> int:
        """Drop expired windows. Returns number removed."""
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for key_id in expired:
            del self._windows[key_id]
            lock = self._locks.get(key_id)
            if lock is not None and not lock.locked():
                del self._locks[key_id]
        return len(expired)


class RedisRateLimiter:
    """Limiter shared by all gateway instances.

    Key pattern: {prefix}:rl:{key_id} (counter, TTL = window)
    Fails open when Redis is unreachable.
    """

    def __init__(self, redis: Redis, window_seconds: int = 60, prefix: str = "speechgw") -> None:  # type: ignore[type-arg]
        self._redis = redis
        self._window = window_seconds
        self._prefix = prefix

    def _key(self, key_id: str) -> str:
        return f"{self._prefix}:rl:{key_id}"

    async def hit(self, key_id: str, limit: int) -> RateLimitResult:
        key = self._key(key_id)
        now = time.time()
        try:
            pipe = self._redis.pipeline(transaction=True)
            # SET NX opens the window with its TTL; INCR counts inside it
            pipe.set(key, 0, ex=self._window, nx=True)
            pipe.incr(key)
            pipe.ttl(key)
            _, count, ttl = await pipe.execute()
        except RedisError:
            logger.warning("Rate limit check failed, allowing request", exc_info=True)
            return RateLimitResult(True, limit, limit, now + self._window)

        reset_at = now + (ttl if ttl and ttl > 0 else self._window)
        if count > limit:
            return RateLimitResult(False, limit, 0, reset_at)
        return RateLimitResult(True, limit, max(0, limit - count), reset_at)

    async def reset(self, key_id: str) -> None:
        await self._redis.delete(self._key(key_id))
