"""API key records and hashing helpers."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.errors import InvalidRequest

KEY_BYTES = 32
SUFFIX_LENGTH = 8
DEFAULT_RATE_LIMIT = 100
MAX_RATE_LIMIT = 10_000
MAX_NAME_LENGTH = 100


def hash_key(plaintext: str) -> str:
    """Return the SHA-256 hex digest stored in place of the key."""
    return hashlib.sha256(plaintext.encode()).hexdigest()


def generate_key() -> str:
    """Generate a new URL-safe plaintext key."""
    return secrets.token_urlsafe(KEY_BYTES)


def generate_key_id() -> str:
    return secrets.token_hex(16)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class EngineKeyConfig:
    """Per-engine entitlement attached to a key."""

    enabled: bool = True
    use_custom_credentials: bool = False
    credentials: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "use_custom_credentials": self.use_custom_credentials,
            "credentials": dict(self.credentials),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineKeyConfig:
        return cls(
            enabled=bool(data.get("enabled", True)),
            use_custom_credentials=bool(data.get("use_custom_credentials", False)),
            credentials={str(k): str(v) for k, v in (data.get("credentials") or {}).items()},
        )


def validate_key_fields(name: str, rate_limit: int) -> None:
    """Raise InvalidRequest when name or rate limit is out of range."""
    if not name or not name.strip() or len(name) > MAX_NAME_LENGTH:
        msg = f"Key name must be 1-{MAX_NAME_LENGTH} characters"
        raise InvalidRequest(msg)
    if not 1 <= rate_limit <= MAX_RATE_LIMIT:
        msg = f"Rate limit must be between 1 and {MAX_RATE_LIMIT}"
        raise InvalidRequest(msg)


@dataclass
class ApiKey:
    """Identity and entitlement record for one caller.

    Only the SHA-256 digest of the key is held; the plaintext is returned
    once by ``create`` and never stored.
    """

    id: str
    secret_hash: str
    key_suffix: str
    name: str
    is_admin: bool = False
    active: bool = True
    rate_limit: int = DEFAULT_RATE_LIMIT
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_used_at: datetime | None = None
    request_count: int = 0
    expires_at: datetime | None = None
    engine_config: dict[str, EngineKeyConfig] | None = None

    @classmethod
    def create(
        cls,
        name: str,
        *,
        is_admin: bool = False,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        expires_at: datetime | None = None,
        engine_config: dict[str, EngineKeyConfig] | None = None,
    ) -> tuple[ApiKey, str]:
        """Create a new key. Returns (record, plaintext)."""
        validate_key_fields(name, rate_limit)
        plaintext = generate_key()
        key = cls(
            id=generate_key_id(),
            secret_hash=hash_key(plaintext),
            key_suffix=plaintext[-SUFFIX_LENGTH:],
            name=name.strip(),
            is_admin=is_admin,
            rate_limit=rate_limit,
            expires_at=expires_at,
            engine_config=engine_config,
        )
        return key, plaintext

    # --- Entitlements ---

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(UTC))

    def is_usable(self, now: datetime | None = None) -> bool:
        return self.active and not self.is_expired(now)

    def can_access_engine(self, engine_id: str) -> bool:
        """Admins and keys without a config entry for the engine are allowed."""
        if self.is_admin or not self.engine_config:
            return True
        config = self.engine_config.get(engine_id)
        if config is None:
            return True
        return config.enabled

    def engine_credentials(self, engine_id: str) -> dict[str, str] | None:
        """Custom credentials for an engine, if this key brings its own."""
        if not self.engine_config:
            return None
        config = self.engine_config.get(engine_id)
        if config is None or not config.use_custom_credentials or not config.credentials:
            return None
        return dict(config.credentials)

    def mark_used(self, now: datetime | None = None) -> None:
        self.request_count += 1
        self.last_used_at = now or datetime.now(UTC)

    # --- Serialization ---

    def to_public_dict(self) -> dict[str, Any]:
        """Representation safe to return to admins: no hash, no credentials."""
        engines = None
        if self.engine_config is not None:
            engines = {
                engine: {
                    "enabled": cfg.enabled,
                    "use_custom_credentials": cfg.use_custom_credentials,
                    "has_credentials": bool(cfg.credentials),
                }
                for engine, cfg in self.engine_config.items()
            }
        return {
            "id": self.id,
            "name": self.name,
            "key_suffix": f"...{self.key_suffix}",
            "is_admin": self.is_admin,
            "active": self.active,
            "rate_limit": self.rate_limit,
            "created_at": _format_dt(self.created_at),
            "last_used_at": _format_dt(self.last_used_at),
            "request_count": self.request_count,
            "expires_at": _format_dt(self.expires_at),
            "engine_config": engines,
        }

    def to_record(self) -> dict[str, Any]:
        """Full JSON-compatible record for persistence."""
        return {
            "id": self.id,
            "secret_hash": self.secret_hash,
            "key_suffix": self.key_suffix,
            "name": self.name,
            "is_admin": self.is_admin,
            "active": self.active,
            "rate_limit": self.rate_limit,
            "created_at": _format_dt(self.created_at),
            "last_used_at": _format_dt(self.last_used_at),
            "request_count": self.request_count,
            "expires_at": _format_dt(self.expires_at),
            "engine_config": (
                {engine: cfg.to_dict() for engine, cfg in self.engine_config.items()}
                if self.engine_config is not None
                else None
            ),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> ApiKey:
        engine_config = data.get("engine_config")
        return cls(
            id=str(data["id"]),
            secret_hash=str(data["secret_hash"]),
            key_suffix=str(data.get("key_suffix", "")),
            name=str(data["name"]),
            is_admin=bool(data.get("is_admin", False)),
            active=bool(data.get("active", True)),
            rate_limit=int(data.get("rate_limit", DEFAULT_RATE_LIMIT)),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(UTC),
            last_used_at=_parse_dt(data.get("last_used_at")),
            request_count=int(data.get("request_count", 0)),
            expires_at=_parse_dt(data.get("expires_at")),
            engine_config=(
                {engine: EngineKeyConfig.from_dict(cfg) for engine, cfg in engine_config.items()}
                if engine_config is not None
                else None
            ),
        )
