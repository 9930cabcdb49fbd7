"""Shared pytest fixtures for all test types."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from src.config import (
    AuthSettings,
    EmbeddedSettings,
    EngineCredentialSettings,
    EngineSettings,
    Settings,
)
from src.engines.definitions import EngineId
from src.gate.admission import Admission
from src.gateway import Gateway
from src.main import create_app
from tests.unit.mocks.mock_engine import MockEngineFactory

ADMIN_KEY = "test-admin-key-0123456789"


@pytest.fixture
def settings() -> Settings:
    """Settings with API keys enforced and in-memory backends."""
    return Settings(
        auth=AuthSettings(environment="development", api_key_required=True, local_mode=False, admin_api_key=ADMIN_KEY),
        engines=EngineSettings(default_engine="espeak", request_timeout=5.0),
        embedded=EmbeddedSettings(default_engine="espeak", default_voice="en", ws_idle_timeout=30),
        credentials=EngineCredentialSettings(elevenlabs_api_key="sk_test_elevenlabs_key"),
    )


@pytest.fixture
def mock_factory() -> MockEngineFactory:
    """Factory building MockEngineAdapter for every engine."""
    return MockEngineFactory()


@pytest.fixture
def gateway(settings: Settings, mock_factory: MockEngineFactory) -> Gateway:
    """Gateway wired to mock adapters."""
    return Gateway(settings, factories={str(engine): mock_factory for engine in EngineId})


@pytest.fixture
def client(gateway: Gateway) -> Iterator[TestClient]:
    """TestClient running the app lifespan (gateway start/close)."""
    with TestClient(create_app(gateway=gateway)) as test_client:
        yield test_client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def local_admission() -> Admission:
    """Admission as granted when API keys are not required."""
    return Admission(key_id="local", is_admin=True, authenticated=False)
