"""Unit tests for the auth / rate-limit gate."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from src.config import AuthSettings
from src.errors import Forbidden, RateLimited, RepositoryUnavailable, Unauthorized
from src.gate.admission import LOCAL_KEY_ID, MASTER_KEY_ID, AdmissionGate
from src.gate.rate_limiter import InMemoryRateLimiter
from src.keys.models import ApiKey, EngineKeyConfig
from src.keys.repository import InMemoryKeyRepository

MASTER = "master-secret-key"


def _gate(repo: InMemoryKeyRepository | None = None, *, required: bool = True) -> AdmissionGate:
    auth = AuthSettings(
        environment="development", api_key_required=required, local_mode=False, admin_api_key=MASTER
    )
    return AdmissionGate(auth, repo or InMemoryKeyRepository(), InMemoryRateLimiter(window_seconds=60))


async def _stored_key(repo: InMemoryKeyRepository, **kwargs: object) -> tuple[ApiKey, str]:
    key, plaintext = ApiKey.create("test", **kwargs)  # type: ignore[arg-type]
    await repo.save(key)
    return key, plaintext


class TestAdmissionBypass:
    @pytest.mark.asyncio
    async def test_auth_not_required(self) -> None:
        admission = await _gate(required=False).admit(None)
        assert admission.key_id == LOCAL_KEY_ID
        assert admission.is_admin
        assert not admission.authenticated

    @pytest.mark.asyncio
    async def test_master_key_is_admin(self) -> None:
        admission = await _gate().admit(MASTER)
        assert admission.key_id == MASTER_KEY_ID
        assert admission.is_admin


class TestAdmissionRejections:
    """Each failure maps to its own error."""

    @pytest.mark.asyncio
    async def test_missing_key(self) -> None:
        with pytest.raises(Unauthorized) as exc_info:
            await _gate().admit(None)
        assert exc_info.value.code == "API_KEY_REQUIRED"

    @pytest.mark.asyncio
    async def test_unknown_key(self) -> None:
        with pytest.raises(Unauthorized) as exc_info:
            await _gate().admit("nope")
        assert exc_info.value.code == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_inactive_key(self) -> None:
        repo = InMemoryKeyRepository()
        key, plaintext = await _stored_key(repo)
        key.active = False
        await repo.save(key)

        with pytest.raises(Unauthorized) as exc_info:
            await _gate(repo).admit(plaintext)
        assert exc_info.value.code == "API_KEY_INACTIVE"

    @pytest.mark.asyncio
    async def test_expired_key(self) -> None:
        repo = InMemoryKeyRepository()
        _, plaintext = await _stored_key(repo, expires_at=datetime.now(UTC) - timedelta(seconds=5))

        with pytest.raises(Unauthorized) as exc_info:
            await _gate(repo).admit(plaintext)
        assert exc_info.value.code == "API_KEY_EXPIRED"

    @pytest.mark.asyncio
    async def test_engine_not_entitled(self) -> None:
        repo = InMemoryKeyRepository()
        _, plaintext = await _stored_key(repo, engine_config={"azure": EngineKeyConfig(enabled=False)})

        with pytest.raises(Forbidden):
            await _gate(repo).admit(plaintext, engine="azure")

    @pytest.mark.asyncio
    async def test_repository_down_is_not_unauthorized(self) -> None:
        repo = InMemoryKeyRepository()
        repo.find_by_key = AsyncMock(side_effect=RepositoryUnavailable("down"))  # type: ignore[method-assign]

        with pytest.raises(RepositoryUnavailable):
            await _gate(repo).admit("some-key")


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_rate_limited_after_limit(self) -> None:
        repo = InMemoryKeyRepository()
        _, plaintext = await _stored_key(repo, rate_limit=2)
        gate = _gate(repo)

        first = await gate.admit(plaintext)
        await gate.admit(plaintext)
        with pytest.raises(RateLimited) as exc_info:
            await gate.admit(plaintext)

        assert first.rate_limit is not None
        assert first.rate_limit.remaining == 1
        assert exc_info.value.limit == 2
        assert exc_info.value.retry_after >= 1

    @pytest.mark.asyncio
    async def test_admin_keys_skip_rate_limit(self) -> None:
        repo = InMemoryKeyRepository()
        _, plaintext = await _stored_key(repo, is_admin=True, rate_limit=1)
        gate = _gate(repo)

        for _ in range(5):
            admission = await gate.admit(plaintext)
        assert admission.rate_limit is None

    @pytest.mark.asyncio
    async def test_uncounted_admission_skips_window(self) -> None:
        repo = InMemoryKeyRepository()
        key, plaintext = await _stored_key(repo, rate_limit=1)
        gate = _gate(repo)

        for _ in range(3):
            admission = await gate.admit(plaintext, count=False)
        await gate.admit(plaintext)
        await gate.drain()

        assert admission.rate_limit is None
        stored = await repo.find_by_id(key.id)
        assert stored is not None
        assert stored.request_count == 1
        with pytest.raises(RateLimited):
            await gate.admit(plaintext)


class TestUsageIncrement:
    @pytest.mark.asyncio
    async def test_increment_runs_in_background(self) -> None:
        repo = InMemoryKeyRepository()
        key, plaintext = await _stored_key(repo)
        gate = _gate(repo)

        await gate.admit(plaintext)
        await gate.admit(plaintext)
        await gate.drain()

        stored = await repo.find_by_id(key.id)
        assert stored is not None
        assert stored.request_count == 2

    @pytest.mark.asyncio
    async def test_increment_failure_does_not_reject(self) -> None:
        repo = InMemoryKeyRepository()
        _, plaintext = await _stored_key(repo)
        repo.increment_usage = AsyncMock(side_effect=RepositoryUnavailable("down"))  # type: ignore[method-assign]
        gate = _gate(repo)

        admission = await gate.admit(plaintext)
        await gate.drain()
        assert admission.authenticated


class TestAdminAdmission:
    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self) -> None:
        repo = InMemoryKeyRepository()
        _, plaintext = await _stored_key(repo)

        with pytest.raises(Forbidden):
            await _gate(repo).admit_admin(plaintext)

    @pytest.mark.asyncio
    async def test_admin_key_admitted(self) -> None:
        repo = InMemoryKeyRepository()
        _, plaintext = await _stored_key(repo, is_admin=True)

        admission = await _gate(repo).admit_admin(plaintext)
        assert admission.is_admin
