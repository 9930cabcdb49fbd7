"""Unit tests for API key repositories."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import SQLAlchemyError

from src.errors import RepositoryUnavailable
from src.keys.models import ApiKey
from src.keys.repository import (
    InMemoryKeyRepository,
    KeyRepository,
    PostgresKeyRepository,
    RedisKeyRepository,
)


class TestInMemoryKeyRepository:
    """CRUD and lookup semantics shared by every backend."""

    @pytest.mark.asyncio
    async def test_find_by_key_matches_plaintext(self) -> None:
        repo = InMemoryKeyRepository()
        key, plaintext = ApiKey.create("speaker")
        await repo.save(key)

        found = await repo.find_by_key(plaintext)
        assert found is not None
        assert found.id == key.id
        assert await repo.find_by_key(plaintext + "x") is None

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self) -> None:
        repo = InMemoryKeyRepository()
        key, _ = ApiKey.create("copy")
        await repo.save(key)

        found = await repo.find_by_id(key.id)
        assert found is not None
        found.active = False
        stored = await repo.find_by_id(key.id)
        assert stored is not None
        assert stored.active is True

    @pytest.mark.asyncio
    async def test_find_all_active_excludes_inactive_and_expired(self) -> None:
        repo = InMemoryKeyRepository()
        active, _ = ApiKey.create("active")
        inactive, _ = ApiKey.create("inactive")
        inactive.active = False
        expired, _ = ApiKey.create("expired", expires_at=datetime.now(UTC) - timedelta(minutes=1))
        for key in (active, inactive, expired):
            await repo.save(key)

        assert len(await repo.find_all()) == 3
        assert [k.id for k in await repo.find_all_active()] == [active.id]

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        repo = InMemoryKeyRepository()
        key, plaintext = ApiKey.create("gone")
        await repo.save(key)

        assert await repo.delete(key.id) is True
        assert await repo.delete(key.id) is False
        assert await repo.exists(key.id) is False
        assert await repo.find_by_key(plaintext) is None

    @pytest.mark.asyncio
    async def test_increment_usage(self) -> None:
        repo = InMemoryKeyRepository()
        key, _ = ApiKey.create("busy")
        await repo.save(key)

        await repo.increment_usage(key.id)
        await repo.increment_usage(key.id)
        await repo.increment_usage("unknown")

        stored = await repo.find_by_id(key.id)
        assert stored is not None
        assert stored.request_count == 2
        assert stored.last_used_at is not None

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryKeyRepository(), KeyRepository)


class TestRedisKeyRepository:
    """Store failures surface as RepositoryUnavailable, not as "not found"."""

    @pytest.mark.asyncio
    async def test_lookup_failure_raises_unavailable(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        repo = RedisKeyRepository(redis)

        with pytest.raises(RepositoryUnavailable):
            await repo.find_by_key("whatever")

    @pytest.mark.asyncio
    async def test_unknown_digest_returns_none(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        repo = RedisKeyRepository(redis)

        assert await repo.find_by_key("whatever") is None

    @pytest.mark.asyncio
    async def test_find_by_id_decodes_counters(self) -> None:
        key, _ = ApiKey.create("redis")
        redis = MagicMock()
        redis.hgetall = AsyncMock(
            return_value={
                "record": json.dumps(key.to_record()),
                "request_count": "5",
                "last_used_at": "2026-01-02T03:04:05+00:00",
            }
        )
        repo = RedisKeyRepository(redis, prefix="test")

        found = await repo.find_by_id(key.id)
        assert found is not None
        assert found.request_count == 5
        assert found.last_used_at == datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
        redis.hgetall.assert_awaited_once_with(f"test:apikey:{key.id}")

    @pytest.mark.asyncio
    async def test_increment_usage_is_one_script_call(self) -> None:
        redis = MagicMock()
        redis.eval = AsyncMock(return_value=1)
        redis.sismember = AsyncMock()
        redis.pipeline = MagicMock()
        repo = RedisKeyRepository(redis, prefix="test")

        await repo.increment_usage("abc")

        redis.eval.assert_awaited_once()
        script, numkeys, index_key, hash_key, key_id, used_at = redis.eval.await_args.args
        assert numkeys == 2
        assert (index_key, hash_key, key_id) == ("test:apikeys", "test:apikey:abc", "abc")
        assert "SISMEMBER" in script
        assert script.index("SISMEMBER") < script.index("HINCRBY")
        assert datetime.fromisoformat(used_at).tzinfo is not None
        redis.sismember.assert_not_called()
        redis.pipeline.assert_not_called()

    @pytest.mark.asyncio
    async def test_increment_usage_failure_raises_unavailable(self) -> None:
        redis = MagicMock()
        redis.eval = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(RepositoryUnavailable):
            await RedisKeyRepository(redis).increment_usage("abc")

    @pytest.mark.asyncio
    async def test_is_available_false_when_ping_fails(self) -> None:
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await RedisKeyRepository(redis).is_available() is False


class TestPostgresKeyRepository:
    @pytest.mark.asyncio
    async def test_query_failure_raises_unavailable(self) -> None:
        engine = MagicMock()
        engine.begin = MagicMock(side_effect=SQLAlchemyError("connection refused"))
        repo = PostgresKeyRepository(engine)

        with pytest.raises(RepositoryUnavailable):
            await repo.find_by_id("abc")

    def test_row_mapping(self) -> None:
        key, _ = ApiKey.create("pg", rate_limit=42)
        row = {
            "id": key.id,
            "key_hash": key.secret_hash,
            "key_suffix": key.key_suffix,
            "name": key.name,
            "is_admin": False,
            "active": True,
            "rate_limit": 42,
            "expires_at": None,
            "created_at": key.created_at,
            "last_used": None,
            "request_count": 3,
            "engine_config": '{"azure": {"enabled": false}}',
        }
        mapped = PostgresKeyRepository._row_to_key(row)
        assert mapped.secret_hash == key.secret_hash
        assert mapped.request_count == 3
        assert mapped.can_access_engine("azure") is False
