"""Unit tests for configuration validation."""

from __future__ import annotations

from src.config import (
    AuthSettings,
    DatabaseSettings,
    EngineCredentialSettings,
    EngineSettings,
    KeyStoreSettings,
    RateLimitSettings,
    RedisSettings,
    ServerSettings,
    Settings,
    UsageSettings,
)


def _fields(settings: Settings) -> set[str]:
    return {err.field for err in settings.validate_required().errors}


class TestAuthSettings:
    def test_local_mode_disables_auth(self) -> None:
        auth = AuthSettings(api_key_required=True, local_mode=True)
        assert auth.auth_required is False

    def test_production_requires_keys(self) -> None:
        assert AuthSettings(environment="production").auth_required is True

    def test_development_default_is_open(self) -> None:
        assert AuthSettings(environment="development", api_key_required=False).auth_required is False


class TestValidateRequired:
    """Semantic checks on top of pydantic's type validation."""

    def test_defaults_are_valid(self) -> None:
        settings = Settings(
            auth=AuthSettings(api_key_required=False, environment="development"),
            credentials=EngineCredentialSettings(azure_speech_key="", azure_speech_region=""),
        )
        assert settings.validate_required().ok

    def test_admin_key_required_when_auth_enforced(self) -> None:
        settings = Settings(auth=AuthSettings(api_key_required=True, admin_api_key=""))
        assert "ADMIN_API_KEY" in _fields(settings)

    def test_unknown_key_store_backend(self) -> None:
        settings = Settings(key_store=KeyStoreSettings(backend="sqlite"))
        assert "KEY_STORE_BACKEND" in _fields(settings)

    def test_unknown_usage_and_limiter_backends(self) -> None:
        settings = Settings(
            usage=UsageSettings(backend="disk"),
            rate_limit=RateLimitSettings(backend="etcd"),
        )
        assert {"USAGE_BACKEND", "RATE_LIMIT_BACKEND"} <= _fields(settings)

    def test_postgres_url_checked_only_for_postgres_backend(self) -> None:
        bad_db = DatabaseSettings(url="mysql://x")
        assert "DATABASE_URL" not in _fields(Settings(database=bad_db))
        assert "DATABASE_URL" in _fields(
            Settings(database=bad_db, key_store=KeyStoreSettings(backend="postgres"))
        )

    def test_redis_url_scheme(self) -> None:
        settings = Settings(
            key_store=KeyStoreSettings(backend="redis"),
            redis=RedisSettings(url="http://localhost:6379"),
        )
        assert "REDIS_URL" in _fields(settings)

    def test_unknown_default_engine(self) -> None:
        settings = Settings(engines=EngineSettings(default_engine="polly"))
        assert "TTS_DEFAULT_ENGINE" in _fields(settings)

    def test_unknown_format_policy(self) -> None:
        settings = Settings(engines=EngineSettings(format_policy="transcode"))
        assert "TTS_FORMAT_POLICY" in _fields(settings)

    def test_azure_credentials_must_be_paired(self) -> None:
        settings = Settings(
            credentials=EngineCredentialSettings(azure_speech_key="secret", azure_speech_region="")
        )
        assert "AZURE_SPEECH_REGION" in _fields(settings)

    def test_uses_redis_when_any_backend_is_redis(self) -> None:
        assert Settings(usage=UsageSettings(backend="redis")).uses_redis
        assert not Settings(
            usage=UsageSettings(backend="memory"),
            key_store=KeyStoreSettings(backend="memory"),
            rate_limit=RateLimitSettings(backend="memory"),
        ).uses_redis


class TestServerSettings:
    def test_cors_origin_list(self) -> None:
        server = ServerSettings(cors_allowed_origins="https://a.example, https://b.example,")
        assert server.cors_origin_list == ["https://a.example", "https://b.example"]


class TestCredentialSettings:
    def test_as_env_skips_empty_values(self) -> None:
        creds = EngineCredentialSettings(
            azure_speech_key="",
            azure_speech_region="",
            elevenlabs_api_key="el-key",
            openai_api_key="",
            google_api_key="",
            google_application_credentials_json="",
        )
        assert creds.as_env() == {"ELEVENLABS_API_KEY": "el-key"}
