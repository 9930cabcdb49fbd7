"""API key repositories.

Three interchangeable stores implement ``KeyRepository``:

  InMemoryKeyRepository  process-local, for local mode and tests
  RedisKeyRepository     one hash per key plus a digest index
  PostgresKeyRepository  ``api_keys`` table via SQLAlchemy async engine

Lookups by plaintext hash the presented key first and confirm the match
with ``hmac.compare_digest``. When the backing store cannot be reached
every operation except ``is_available`` raises ``RepositoryUnavailable``,
so callers can tell "no such key" apart from "store down".
"""

from __future__ import annotations

import asyncio
import copy
import hmac
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.errors import RepositoryUnavailable
from src.keys.models import ApiKey, hash_key

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyRepository(Protocol):
    """Persistence contract for API keys."""

    async def find_by_id(self, key_id: str) -> ApiKey | None: ...

    async def find_by_key(self, plaintext: str) -> ApiKey | None: ...

    async def find_all(self) -> list[ApiKey]: ...

    async def find_all_active(self) -> list[ApiKey]: ...

    async def save(self, key: ApiKey) -> None: ...

    async def delete(self, key_id: str) -> bool: ...

    async def exists(self, key_id: str) -> bool: ...

    async def increment_usage(self, key_id: str) -> None: ...

    async def is_available(self) -> bool: ...


def _digest_matches(stored: str, presented: str) -> bool:
    return hmac.compare_digest(stored.encode(), presented.encode())


def _active_now(keys: list[ApiKey]) -> list[ApiKey]:
    now = datetime.now(UTC)
    return [k for k in keys if k.is_usable(now)]


# --- In-memory ---


class InMemoryKeyRepository:
    """Process-local key store.

    Returned records are copies; mutations only persist through ``save``.
    """

    def __init__(self) -> None:
        self._keys: dict[str, ApiKey] = {}
        self._lock = asyncio.Lock()

    async def find_by_id(self, key_id: str) -> ApiKey | None:
        key = self._keys.get(key_id)
        return copy.deepcopy(key) if key is not None else None

    async def find_by_key(self, plaintext: str) -> ApiKey | None:
        digest = hash_key(plaintext)
        found: ApiKey | None = None
        # Compare against every record so timing does not depend on position
        for key in self._keys.values():
            if _digest_matches(key.secret_hash, digest):
                found = key
        return copy.deepcopy(found) if found is not None else None

    async def find_all(self) -> list[ApiKey]:
        return [copy.deepcopy(k) for k in self._keys.values()]

    async def find_all_active(self) -> list[ApiKey]:
        return _active_now(await self.find_all())

    async def save(self, key: ApiKey) -> None:
        async with self._lock:
            self._keys[key.id] = copy.deepcopy(key)

    async def delete(self, key_id: str) -> bool:
        async with self._lock:
            return self._keys.pop(key_id, None) is not None

    async def exists(self, key_id: str) -> bool:
        return key_id in self._keys

    async def increment_usage(self, key_id: str) -> None:
        async with self._lock:
            key = self._keys.get(key_id)
            if key is not None:
                key.mark_used()

    async def is_available(self) -> bool:
        return True


# --- Redis ---

_RECORD_FIELD = "record"
_COUNT_FIELD = "request_count"
_LAST_USED_FIELD = "last_used_at"

# KEYS: index set, key hash. ARGV: key id, timestamp.
_INCREMENT_SCRIPT = f"""
if redis.call('SISMEMBER', KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call('HINCRBY', KEYS[2], '{_COUNT_FIELD}', 1)
redis.call('HSET', KEYS[2], '{_LAST_USED_FIELD}', ARGV[2])
return 1
"""


class RedisKeyRepository:
    """Redis-backed key store.

    Key patterns (client must use decode_responses=True):
      {prefix}:apikey:{id}          hash: record JSON + counters
      {prefix}:apikey_hash:{digest} string: key id
      {prefix}:apikeys              set of key ids
    """

    def __init__(self, redis: Redis, prefix: str = "speechgw") -> None:  # type: ignore[type-arg]
        self._redis = redis
        self._prefix = prefix

    def _key(self, key_id: str) -> str:
        return f"{self._prefix}:apikey:{key_id}"

    def _hash_key(self, digest: str) -> str:
        return f"{self._prefix}:apikey_hash:{digest}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:apikeys"

    async def find_by_id(self, key_id: str) -> ApiKey | None:
        try:
            data = await self._redis.hgetall(self._key(key_id))
        except RedisError as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc
        return self._decode(data)

    async def find_by_key(self, plaintext: str) -> ApiKey | None:
        digest = hash_key(plaintext)
        try:
            key_id = await self._redis.get(self._hash_key(digest))
        except RedisError as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc
        if key_id is None:
            return None
        key = await self.find_by_id(key_id)
        if key is None or not _digest_matches(key.secret_hash, digest):
            return None
        return key

    async def find_all(self) -> list[ApiKey]:
        try:
            ids = await self._redis.smembers(self._index_key)
            pipe = self._redis.pipeline()
            for key_id in sorted(ids):
                pipe.hgetall(self._key(key_id))
            rows = await pipe.execute()
        except RedisError as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc
        keys = [self._decode(row) for row in rows]
        return [k for k in keys if k is not None]

    async def find_all_active(self) -> list[ApiKey]:
        return _active_now(await self.find_all())

    async def save(self, key: ApiKey) -> None:
        record = key.to_record()
        try:
            previous = await self._redis.hget(self._key(key.id), _RECORD_FIELD)
            pipe = self._redis.pipeline(transaction=True)
            if previous:
                old_hash = json.loads(previous).get("secret_hash")
                if old_hash and old_hash != key.secret_hash:
                    pipe.delete(self._hash_key(old_hash))
            pipe.hset(
                self._key(key.id),
                mapping={
                    _RECORD_FIELD: json.dumps(record),
                    _COUNT_FIELD: key.request_count,
                    _LAST_USED_FIELD: record["last_used_at"] or "",
                },
            )
            pipe.set(self._hash_key(key.secret_hash), key.id)
            pipe.sadd(self._index_key, key.id)
            await pipe.execute()
        except RedisError as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc

    async def delete(self, key_id: str) -> bool:
        key = await self.find_by_id(key_id)
        if key is None:
            return False
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(self._key(key_id))
            pipe.delete(self._hash_key(key.secret_hash))
            pipe.srem(self._index_key, key_id)
            await pipe.execute()
        except RedisError as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc
        return True

    async def exists(self, key_id: str) -> bool:
        try:
            return bool(await self._redis.sismember(self._index_key, key_id))
        except RedisError as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc

    async def increment_usage(self, key_id: str) -> None:
        """Bump counters atomically; a key deleted concurrently is never recreated."""
        try:
            await self._redis.eval(
                _INCREMENT_SCRIPT,
                2,
                self._index_key,
                self._key(key_id),
                key_id,
                datetime.now(UTC).isoformat(),
            )
        except RedisError as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc

    async def is_available(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            return False

    @staticmethod
    def _decode(data: dict[str, str] | None) -> ApiKey | None:
        if not data or _RECORD_FIELD not in data:
            return None
        record = json.loads(data[_RECORD_FIELD])
        record["request_count"] = int(data.get(_COUNT_FIELD) or 0)
        record["last_used_at"] = data.get(_LAST_USED_FIELD) or None
        return ApiKey.from_record(record)


# --- PostgreSQL ---

_COLUMNS = (
    "id, key_hash, key_suffix, name, is_admin, active, rate_limit, "
    "expires_at, created_at, last_used, request_count, engine_config"
)


class PostgresKeyRepository:
    """PostgreSQL-backed key store (table ``api_keys``, see migrations)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def _fetch(self, query: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), params or {})
                return [dict(row._mapping) for row in result]
        except (SQLAlchemyError, OSError) as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc

    async def _execute(self, query: str, params: dict[str, Any]) -> int:
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), params)
                return result.rowcount
        except (SQLAlchemyError, OSError) as exc:
            raise RepositoryUnavailable(f"Key store unreachable: {exc}") from exc

    async def find_by_id(self, key_id: str) -> ApiKey | None:
        rows = await self._fetch(f"SELECT {_COLUMNS} FROM api_keys WHERE id = :id", {"id": key_id})
        return self._row_to_key(rows[0]) if rows else None

    async def find_by_key(self, plaintext: str) -> ApiKey | None:
        digest = hash_key(plaintext)
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM api_keys WHERE key_hash = :key_hash", {"key_hash": digest}
        )
        if not rows:
            return None
        key = self._row_to_key(rows[0])
        return key if _digest_matches(key.secret_hash, digest) else None

    async def find_all(self) -> list[ApiKey]:
        rows = await self._fetch(f"SELECT {_COLUMNS} FROM api_keys ORDER BY created_at DESC")
        return [self._row_to_key(r) for r in rows]

    async def find_all_active(self) -> list[ApiKey]:
        rows = await self._fetch(
            f"SELECT {_COLUMNS} FROM api_keys "
            "WHERE active = TRUE AND (expires_at IS NULL OR expires_at > NOW()) "
            "ORDER BY created_at DESC"
        )
        return [self._row_to_key(r) for r in rows]

    async def save(self, key: ApiKey) -> None:
        record = key.to_record()
        await self._execute(
            """
            INSERT INTO api_keys (id, key_hash, key_suffix, name, is_admin, active,
                                  rate_limit, expires_at, created_at, last_used,
                                  request_count, engine_config)
            VALUES (:id, :key_hash, :key_suffix, :name, :is_admin, :active,
                    :rate_limit, :expires_at, :created_at, :last_used,
                    :request_count, CAST(:engine_config AS JSONB))
            ON CONFLICT (id) DO UPDATE SET
                key_hash = EXCLUDED.key_hash,
                key_suffix = EXCLUDED.key_suffix,
                name = EXCLUDED.name,
                is_admin = EXCLUDED.is_admin,
                active = EXCLUDED.active,
                rate_limit = EXCLUDED.rate_limit,
                expires_at = EXCLUDED.expires_at,
                last_used = EXCLUDED.last_used,
                request_count = EXCLUDED.request_count,
                engine_config = EXCLUDED.engine_config
            """,
            {
                "id": key.id,
                "key_hash": key.secret_hash,
                "key_suffix": key.key_suffix,
                "name": key.name,
                "is_admin": key.is_admin,
                "active": key.active,
                "rate_limit": key.rate_limit,
                "expires_at": key.expires_at,
                "created_at": key.created_at,
                "last_used": key.last_used_at,
                "request_count": key.request_count,
                "engine_config": (
                    json.dumps(record["engine_config"])
                    if record["engine_config"] is not None
                    else None
                ),
            },
        )

    async def delete(self, key_id: str) -> bool:
        return await self._execute("DELETE FROM api_keys WHERE id = :id", {"id": key_id}) > 0

    async def exists(self, key_id: str) -> bool:
        rows = await self._fetch("SELECT 1 FROM api_keys WHERE id = :id", {"id": key_id})
        return bool(rows)

    async def increment_usage(self, key_id: str) -> None:
        await self._execute(
            "UPDATE api_keys SET request_count = request_count + 1, last_used = NOW() WHERE id = :id",
            {"id": key_id},
        )

    async def is_available(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError):
            return False

    @staticmethod
    def _row_to_key(row: dict[str, Any]) -> ApiKey:
        engine_config = row.get("engine_config")
        if isinstance(engine_config, str):
            engine_config = json.loads(engine_config)
        return ApiKey.from_record(
            {
                "id": row["id"],
                "secret_hash": row["key_hash"],
                "key_suffix": row.get("key_suffix") or "",
                "name": row["name"],
                "is_admin": row.get("is_admin", False),
                "active": row.get("active", True),
                "rate_limit": row.get("rate_limit"),
                "created_at": row.get("created_at"),
                "last_used_at": row.get("last_used"),
                "request_count": row.get("request_count") or 0,
                "expires_at": row.get("expires_at"),
                "engine_config": engine_config,
            }
        )
