"""Admin API: API key management, usage reports, engine cache control.

Every route requires an admin key (or the master key).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from src.api.deps import get_gateway, require_admin
from src.engines.definitions import get_definition
from src.errors import InvalidRequest, KeyNotFound
from src.gate.admission import Admission
from src.keys.models import MAX_NAME_LENGTH, MAX_RATE_LIMIT, ApiKey, EngineKeyConfig, validate_key_fields

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

# Module-level dependency to satisfy B008 lint rule
_admin_dep = Depends(require_admin)


class EngineConfigBody(BaseModel):
    enabled: bool = True
    use_custom_credentials: bool = False
    credentials: dict[str, str] = Field(default_factory=dict)


class CreateKeyRequest(BaseModel):
    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    is_admin: bool = False
    rate_limit: int = Field(default=100, ge=1, le=MAX_RATE_LIMIT)
    expires_at: datetime | None = None
    engine_config: dict[str, EngineConfigBody] | None = None


class UpdateKeyRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    active: bool | None = None
    rate_limit: int | None = Field(default=None, ge=1, le=MAX_RATE_LIMIT)
    expires_at: datetime | None = None
    engine_config: dict[str, EngineConfigBody] | None = None


def _engine_config(body: dict[str, EngineConfigBody] | None) -> dict[str, EngineKeyConfig] | None:
    if body is None:
        return None
    config: dict[str, EngineKeyConfig] = {}
    for engine_id, entry in body.items():
        if get_definition(engine_id) is None:
            msg = f"Unknown engine in engine_config: {engine_id}"
            raise InvalidRequest(msg)
        config[engine_id] = EngineKeyConfig(
            enabled=entry.enabled,
            use_custom_credentials=entry.use_custom_credentials,
            credentials=dict(entry.credentials),
        )
    return config


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=UTC)


# --- Keys ---


@router.get("/keys")
async def list_keys(request: Request, _: Admission = _admin_dep) -> dict[str, Any]:
    """List all API keys (no secrets)."""
    keys = await get_gateway(request).keys.find_all()
    keys.sort(key=lambda k: k.created_at, reverse=True)
    return {"keys": [k.to_public_dict() for k in keys], "count": len(keys)}


@router.post("/keys", status_code=201)
async def create_key(body: CreateKeyRequest, request: Request, _: Admission = _admin_dep) -> dict[str, Any]:
    """Create an API key. The plaintext key is returned only here."""
    key, plaintext = ApiKey.create(
        body.name,
        is_admin=body.is_admin,
        rate_limit=body.rate_limit,
        expires_at=_aware(body.expires_at),
        engine_config=_engine_config(body.engine_config),
    )
    await get_gateway(request).keys.save(key)
    logger.info("API key created: %s (%s)", key.id, key.name)
    return {**key.to_public_dict(), "key": plaintext}


@router.get("/keys/{key_id}")
async def get_key(key_id: str, request: Request, _: Admission = _admin_dep) -> dict[str, Any]:
    key = await get_gateway(request).keys.find_by_id(key_id)
    if key is None:
        raise KeyNotFound(key_id)
    return key.to_public_dict()


@router.patch("/keys/{key_id}")
async def update_key(
    key_id: str, body: UpdateKeyRequest, request: Request, _: Admission = _admin_dep
) -> dict[str, Any]:
    """Update name, status, rate limit, expiry or engine entitlements."""
    repository = get_gateway(request).keys
    key = await repository.find_by_id(key_id)
    if key is None:
        raise KeyNotFound(key_id)

    fields = body.model_fields_set
    if "name" in fields and body.name is not None:
        key.name = body.name.strip()
    if "active" in fields and body.active is not None:
        key.active = body.active
    if "rate_limit" in fields and body.rate_limit is not None:
        key.rate_limit = body.rate_limit
    if "expires_at" in fields:
        key.expires_at = _aware(body.expires_at)
    if "engine_config" in fields:
        key.engine_config = _engine_config(body.engine_config)
    validate_key_fields(key.name, key.rate_limit)

    await repository.save(key)
    logger.info("API key updated: %s (%s)", key.id, ", ".join(sorted(fields)) or "no changes")
    return key.to_public_dict()


@router.delete("/keys/{key_id}")
async def delete_key(key_id: str, request: Request, _: Admission = _admin_dep) -> dict[str, Any]:
    if not await get_gateway(request).keys.delete(key_id):
        raise KeyNotFound(key_id)
    logger.info("API key deleted: %s", key_id)
    return {"deleted": True, "id": key_id}


# --- Usage ---


@router.get("/usage")
async def list_usage(
    request: Request,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=1000, ge=1, le=10_000),
    _: Admission = _admin_dep,
) -> dict[str, Any]:
    """Raw usage records, newest first."""
    records = await get_gateway(request).recorder.get_usage(_aware(since), _aware(until))
    records.sort(key=lambda r: r.timestamp, reverse=True)
    return {"records": [r.to_dict() for r in records[:limit]], "total": len(records)}


@router.get("/usage/stats")
async def usage_stats(
    request: Request,
    since: datetime | None = Query(default=None),
    _: Admission = _admin_dep,
) -> dict[str, Any]:
    stats = await get_gateway(request).recorder.get_stats(_aware(since))
    return stats.to_dict()


@router.delete("/usage")
async def prune_usage(
    request: Request,
    older_than_days: int | None = Query(default=None, ge=0),
    _: Admission = _admin_dep,
) -> dict[str, Any]:
    """Delete usage records older than N days (default: configured retention)."""
    gateway = get_gateway(request)
    days = older_than_days if older_than_days is not None else gateway.settings.usage.retention_days
    removed = await gateway.prune_usage(days)
    return {"removed": removed, "cutoff": (datetime.now(UTC) - timedelta(days=days)).isoformat()}


# --- Engines ---


@router.post("/engines/dispose")
async def dispose_engines(
    request: Request,
    engine: str | None = Query(default=None),
    _: Admission = _admin_dep,
) -> dict[str, Any]:
    """Drop cached adapters so the next request re-initializes them."""
    if engine is not None and get_definition(engine) is None:
        msg = f"Unknown engine: {engine}"
        raise InvalidRequest(msg)
    disposed = await get_gateway(request).registry.dispose(engine)
    return {"disposed": disposed, "engine": engine}
