"""Auth / rate-limit gate.

Decides whether a request may proceed to routing:

  1. auth not required (local/desktop mode) → trusted admission
  2. master ADMIN_API_KEY                   → admin admission
  3. repository lookup                      → Unauthorized if absent/inactive/expired
  4. per-engine entitlement                 → Forbidden
  5. per-key fixed window (non-admin keys)  → RateLimited

On admission ``increment_usage`` runs as a background task; the decision
never waits for it.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from src.errors import Forbidden, RateLimited, RepositoryUnavailable, Unauthorized
from src.monitoring.metrics import (
    admissions_total,
    rate_limit_exceeded_total,
    usage_increment_failures_total,
)

if TYPE_CHECKING:
    from src.config import AuthSettings
    from src.gate.rate_limiter import RateLimiter, RateLimitResult
    from src.keys.models import ApiKey
    from src.keys.repository import KeyRepository

logger = logging.getLogger(__name__)

LOCAL_KEY_ID = "local"
MASTER_KEY_ID = "admin"


@dataclass(frozen=True, slots=True)
class Admission:
    """Outcome of a successful gate check."""

    key_id: str
    is_admin: bool
    authenticated: bool
    key: ApiKey | None = None
    rate_limit: RateLimitResult | None = None

    def can_access_engine(self, engine_id: str) -> bool:
        if self.key is None:
            return True
        return self.key.can_access_engine(engine_id)

    def engine_credentials(self, engine_id: str) -> dict[str, str] | None:
        if self.key is None:
            return None
        return self.key.engine_credentials(engine_id)


class AdmissionGate:
    """Composes the key repository and rate limiter into one admit() decision."""

    def __init__(self, auth: AuthSettings, repository: KeyRepository, limiter: RateLimiter) -> None:
        self._auth = auth
        self._repository = repository
        self._limiter = limiter
        self._background: set[asyncio.Task[None]] = set()

    @property
    def auth_required(self) -> bool:
        return self._auth.auth_required

    def _is_master_key(self, presented: str) -> bool:
        master = self._auth.admin_api_key
        if not master:
            return False
        return hmac.compare_digest(presented.encode(), master.encode())

    async def admit(
        self, presented_key: str | None, engine: str | None = None, *, count: bool = True
    ) -> Admission:
        """Admit or reject a request. Raises a GatewayError subclass on rejection.

        With ``count=False`` the key is authenticated only: no rate-limit hit
        and no usage increment (WebSocket handshake; each speak is counted).
        """
        if not self._auth.auth_required:
            admissions_total.labels(outcome="bypass").inc()
            return Admission(key_id=LOCAL_KEY_ID, is_admin=True, authenticated=False)

        if not presented_key:
            admissions_total.labels(outcome="unauthorized").inc()
            raise Unauthorized("missing")

        if self._is_master_key(presented_key):
            admissions_total.labels(outcome="admin").inc()
            return Admission(key_id=MASTER_KEY_ID, is_admin=True, authenticated=True)

        try:
            key = await self._repository.find_by_key(presented_key)
        except RepositoryUnavailable:
            admissions_total.labels(outcome="unavailable").inc()
            logger.error("Key repository unavailable during admission")
            raise

        if key is None:
            admissions_total.labels(outcome="unauthorized").inc()
            raise Unauthorized("invalid")
        if not key.active:
            admissions_total.labels(outcome="unauthorized").inc()
            raise Unauthorized("inactive")
        if key.is_expired(datetime.now(UTC)):
            admissions_total.labels(outcome="unauthorized").inc()
            raise Unauthorized("expired")

        if engine is not None and not key.can_access_engine(engine):
            admissions_total.labels(outcome="forbidden").inc()
            raise Forbidden(f"API key does not have access to engine: {engine}")

        result: RateLimitResult | None = None
        if count and not key.is_admin:
            result = await self._limiter.hit(key.id, key.rate_limit)
            if not result.allowed:
                admissions_total.labels(outcome="rate_limited").inc()
                rate_limit_exceeded_total.inc()
                logger.warning("Rate limit exceeded: key=%s limit=%d", key.id, key.rate_limit, extra={"key_id": key.id})
                raise RateLimited(result.limit, result.retry_after(), int(result.reset_at))

        if count:
            self._schedule_increment(key.id)
        admissions_total.labels(outcome="admitted").inc()
        return Admission(key_id=key.id, is_admin=key.is_admin, authenticated=True, key=key, rate_limit=result)

    async def admit_admin(self, presented_key: str | None) -> Admission:
        """Admit only administrative callers."""
        admission = await self.admit(presented_key)
        if not admission.is_admin:
            raise Forbidden("Admin access required")
        return admission

    def _schedule_increment(self, key_id: str) -> None:
        task = asyncio.create_task(self._increment(key_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _increment(self, key_id: str) -> None:
        try:
            await self._repository.increment_usage(key_id)
        except Exception:
            usage_increment_failures_total.inc()
            logger.warning("Failed to record key usage: key=%s", key_id, exc_info=True)

    async def drain(self) -> None:
        """Wait for scheduled usage increments (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
