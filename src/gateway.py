"""Gateway container: every long-lived component, explicitly owned.

Built from a Settings instance; nothing here is a module-level singleton.
Construction performs no I/O (Redis and SQLAlchemy clients connect
lazily); ``start`` and ``close`` bracket the lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.engines.registry import EngineRegistry
from src.gate.admission import AdmissionGate
from src.gate.rate_limiter import InMemoryRateLimiter, RateLimiter, RedisRateLimiter
from src.keys.repository import InMemoryKeyRepository, KeyRepository, PostgresKeyRepository, RedisKeyRepository
from src.routing.router import RequestRouter
from src.usage.recorder import BufferedUsageRecorder, InMemoryUsageStore, RedisUsageStore, UsageStore

if TYPE_CHECKING:
    from src.config import Settings
    from src.engines.registry import AdapterFactory

logger = logging.getLogger(__name__)


class Gateway:
    """Owns the key repository, limiter, gate, registry, recorder and router."""

    def __init__(
        self,
        settings: Settings,
        *,
        redis: Redis | None = None,  # type: ignore[type-arg]
        db_engine: AsyncEngine | None = None,
        factories: Mapping[str, AdapterFactory] | None = None,
    ) -> None:
        self.settings = settings
        self._owns_redis = redis is None and settings.uses_redis
        self._owns_db = db_engine is None and settings.key_store.backend == "postgres"

        self.redis = redis
        if self._owns_redis:
            self.redis = Redis.from_url(settings.redis.url, decode_responses=True)
        self.db_engine = db_engine
        if self._owns_db:
            self.db_engine = create_async_engine(settings.database.url, pool_size=5, max_overflow=5)

        self.keys = self._build_key_repository()
        self.limiter = self._build_rate_limiter()
        self.gate = AdmissionGate(settings.auth, self.keys, self.limiter)
        self.registry = EngineRegistry(
            settings.engines,
            default_credentials=settings.credentials.as_env(),
            factories=factories,
        )
        self.recorder = BufferedUsageRecorder(
            self._build_usage_store(),
            flush_interval=settings.usage.flush_interval,
            batch_size=settings.usage.batch_size,
            max_pending=settings.usage.max_pending,
        )
        self.router = RequestRouter(self.registry, self.recorder, settings.engines)
        self._retention_task: asyncio.Task[None] | None = None

    # --- Construction ---

    def _build_key_repository(self) -> KeyRepository:
        backend = self.settings.key_store.backend
        if backend == "redis":
            return RedisKeyRepository(self._require_redis(), prefix=self.settings.redis.key_prefix)
        if backend == "postgres":
            return PostgresKeyRepository(self._require_db_engine())
        return InMemoryKeyRepository()

    def _build_rate_limiter(self) -> RateLimiter:
        window = self.settings.rate_limit.window_seconds
        if self.settings.rate_limit.backend == "redis":
            return RedisRateLimiter(self._require_redis(), window_seconds=window, prefix=self.settings.redis.key_prefix)
        return InMemoryRateLimiter(window_seconds=window)

    def _build_usage_store(self) -> UsageStore:
        if self.settings.usage.backend == "redis":
            return RedisUsageStore(self._require_redis(), prefix=self.settings.redis.key_prefix)
        return InMemoryUsageStore(max_records=self.settings.usage.max_records)

    def _require_redis(self) -> Redis:  # type: ignore[type-arg]
        if self.redis is None:
            msg = "A Redis-backed store is configured but no Redis client is available"
            raise RuntimeError(msg)
        return self.redis

    def _require_db_engine(self) -> AsyncEngine:
        if self.db_engine is None:
            msg = "The postgres key store is configured but no database engine is available"
            raise RuntimeError(msg)
        return self.db_engine

    # --- Lifecycle ---

    async def start(self) -> None:
        """Check backing stores and start background work."""
        if self.redis is not None:
            try:
                await self.redis.ping()
                logger.info("Redis connected: %s", self.settings.redis.url.split("@")[-1])
            except Exception:
                logger.warning("Redis unavailable at startup; Redis-backed stores will report errors")
        if self.db_engine is not None:
            logger.info("Database engine created: %s", self.settings.database.url.split("@")[-1])

        await self.recorder.start()
        self._retention_task = asyncio.create_task(self._periodic_retention(), name="usage-retention")
        logger.info(
            "Gateway started: keys=%s usage=%s rate_limit=%s default_engine=%s auth_required=%s",
            self.settings.key_store.backend,
            self.settings.usage.backend,
            self.settings.rate_limit.backend,
            self.settings.engines.default_engine,
            self.gate.auth_required,
        )

    async def close(self) -> None:
        """Stop background work, flush usage and release every client."""
        if self._retention_task is not None:
            self._retention_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retention_task
            self._retention_task = None

        await self.gate.drain()
        await self.recorder.close()
        disposed = await self.registry.dispose()
        logger.info("Engine adapters disposed: %d", disposed)

        if self._owns_redis and self.redis is not None:
            await self.redis.aclose()
            logger.info("Redis connection closed")
        if self._owns_db and self.db_engine is not None:
            await self.db_engine.dispose()
            logger.info("Database engine disposed")

    async def prune_usage(self, retention_days: int | None = None) -> int:
        """Delete usage records older than the retention window."""
        days = retention_days if retention_days is not None else self.settings.usage.retention_days
        cutoff = datetime.now(UTC) - timedelta(days=days)
        return await self.recorder.clear_old_records(cutoff)

    async def _periodic_retention(self) -> None:
        """Prune old usage records and idle rate-limit windows periodically."""
        interval = self.settings.usage.prune_interval_minutes * 60
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await self.prune_usage()
                if isinstance(self.limiter, InMemoryRateLimiter):
                    self.limiter.cleanup()
                logger.debug("Retention pass removed %d usage records", removed)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic usage retention failed")
