"""Usage recording: storage backends and the recorder front-ends.

``UsageRecorder`` writes straight through to its store. The
``BufferedUsageRecorder`` used by the server keeps ``append_usage`` off the
request path: records are queued in memory and flushed by a background task
every ``flush_interval`` seconds (or as soon as ``batch_size`` records are
pending). A crash loses at most the records appended since the last flush.
Reads flush first, so callers always observe their own writes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from redis.exceptions import RedisError

from src.errors import RepositoryUnavailable
from src.monitoring.metrics import usage_buffer_pending, usage_records_dropped_total
from src.usage.models import UsageRecord, UsageStats

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


def _epoch(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.timestamp()


def _in_range(record: UsageRecord, since: datetime | None, until: datetime | None) -> bool:
    ts = _epoch(record.timestamp)
    if since is not None and ts < _epoch(since):
        return False
    if until is not None and ts > _epoch(until):
        return False
    return True


@runtime_checkable
class UsageStore(Protocol):
    """Storage boundary for usage records."""

    async def append(self, records: list[UsageRecord]) -> None: ...

    async def query(self, since: datetime | None = None, until: datetime | None = None) -> list[UsageRecord]: ...

    async def remove_older_than(self, older_than: datetime) -> int: ...


class InMemoryUsageStore:
    """Process-local store bounded to ``max_records`` (oldest dropped first)."""

    def __init__(self, max_records: int = 100_000) -> None:
        self._records: list[UsageRecord] = []
        self._max_records = max_records

    async def append(self, records: list[UsageRecord]) -> None:
        self._records.extend(records)
        overflow = len(self._records) - self._max_records
        if overflow > 0:
            self._records.sort(key=lambda r: _epoch(r.timestamp))
            del self._records[:overflow]

    async def query(self, since: datetime | None = None, until: datetime | None = None) -> list[UsageRecord]:
        records = [r for r in self._records if _in_range(r, since, until)]
        return sorted(records, key=lambda r: _epoch(r.timestamp))

    async def remove_older_than(self, older_than: datetime) -> int:
        cutoff = _epoch(older_than)
        before = len(self._records)
        self._records = [r for r in self._records if _epoch(r.timestamp) >= cutoff]
        return before - len(self._records)


class RedisUsageStore:
    """Redis sorted set of JSON records scored by epoch seconds.

    Key pattern: {prefix}:usage
    """

    def __init__(self, redis: Redis, prefix: str = "speechgw") -> None:  # type: ignore[type-arg]
        self._redis = redis
        self._key = f"{prefix}:usage"

    async def append(self, records: list[UsageRecord]) -> None:
        if not records:
            return
        # Members carry a nonce so identical records stay distinct
        members = {
            json.dumps({**r.to_dict(), "nonce": uuid.uuid4().hex}): _epoch(r.timestamp)
            for r in records
        }
        try:
            await self._redis.zadd(self._key, members)
        except RedisError as exc:
            raise RepositoryUnavailable(f"Usage store unreachable: {exc}") from exc

    async def query(self, since: datetime | None = None, until: datetime | None = None) -> list[UsageRecord]:
        low = _epoch(since) if since is not None else "-inf"
        high = _epoch(until) if until is not None else "+inf"
        try:
            raw = await self._redis.zrangebyscore(self._key, low, high)
        except RedisError as exc:
            raise RepositoryUnavailable(f"Usage store unreachable: {exc}") from exc
        return [UsageRecord.from_dict(json.loads(item)) for item in raw]

    async def remove_older_than(self, older_than: datetime) -> int:
        try:
            # "(" makes the upper bound exclusive: strictly older records only
            return int(await self._redis.zremrangebyscore(self._key, "-inf", f"({_epoch(older_than)}"))
        except RedisError as exc:
            raise RepositoryUnavailable(f"Usage store unreachable: {exc}") from exc


class UsageRecorder:
    """Append-only metering over a ``UsageStore``. Aggregates are computed per call."""

    def __init__(self, store: UsageStore) -> None:
        self._store = store

    async def start(self) -> None:
        """No background work for the write-through recorder."""

    async def close(self) -> None:
        """No background work for the write-through recorder."""

    async def append_usage(self, record: UsageRecord) -> None:
        await self._store.append([record])

    async def get_usage(self, since: datetime | None = None, until: datetime | None = None) -> list[UsageRecord]:
        """Records with since <= timestamp <= until."""
        return await self._store.query(since, until)

    async def clear_old_records(self, older_than: datetime) -> int:
        """Remove records with timestamp < older_than. Returns count removed."""
        removed = await self._store.remove_older_than(older_than)
        logger.info("Pruned %d usage records older than %s", removed, older_than.isoformat())
        return removed

    async def get_stats(self, since: datetime | None = None) -> UsageStats:
        return UsageStats.from_records(await self.get_usage(since))


class BufferedUsageRecorder(UsageRecorder):
    """Recorder whose appends never wait on the store."""

    def __init__(
        self,
        store: UsageStore,
        flush_interval: float = 1.0,
        batch_size: int = 100,
        max_pending: int = 10_000,
    ) -> None:
        super().__init__(store)
        self._flush_interval = flush_interval
        self._batch_size = batch_size
        self._max_pending = max_pending
        self._pending: list[UsageRecord] = []
        self._wakeup = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="usage-flush")

    async def close(self) -> None:
        """Stop the flush loop and write out everything still pending."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def append_usage(self, record: UsageRecord) -> None:
        if len(self._pending) >= self._max_pending:
            usage_records_dropped_total.inc()
            logger.warning("Usage buffer full (%d), dropping record", self._max_pending)
            return
        self._pending.append(record)
        usage_buffer_pending.set(len(self._pending))
        if len(self._pending) >= self._batch_size:
            self._wakeup.set()

    async def flush(self) -> int:
        """Write pending records to the store. Returns number written."""
        async with self._flush_lock:
            if not self._pending:
                return 0
            batch = self._pending
            self._pending = []
            try:
                await self._store.append(batch)
            except Exception:
                # Put the batch back ahead of newer records, within the bound
                room = max(0, self._max_pending - len(self._pending))
                kept = batch[-room:] if room else []
                dropped = len(batch) - len(kept)
                self._pending = kept + self._pending
                if dropped:
                    usage_records_dropped_total.inc(dropped)
                logger.warning(
                    "Usage flush failed, %d records re-queued, %d dropped",
                    len(kept),
                    dropped,
                    exc_info=True,
                )
                return 0
            finally:
                usage_buffer_pending.set(len(self._pending))
            return len(batch)

    async def get_usage(self, since: datetime | None = None, until: datetime | None = None) -> list[UsageRecord]:
        await self.flush()
        return await super().get_usage(since, until)

    async def clear_old_records(self, older_than: datetime) -> int:
        await self.flush()
        return await super().clear_old_records(older_than)

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._flush_interval)
            except TimeoutError:
                pass
            self._wakeup.clear()
            await self.flush()
