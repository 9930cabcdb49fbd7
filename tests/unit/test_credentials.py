"""Unit tests for credential precedence."""

from __future__ import annotations

from src.engines.credentials import CredentialSource, resolve_credentials
from src.engines.definitions import ENGINE_DEFINITIONS, EngineId

AZURE = ENGINE_DEFINITIONS[EngineId.AZURE]
GOOGLE = ENGINE_DEFINITIONS[EngineId.GOOGLE]
ESPEAK = ENGINE_DEFINITIONS[EngineId.ESPEAK]

DEFAULTS = {
    "AZURE_SPEECH_KEY": "default-key",
    "AZURE_SPEECH_REGION": "westeurope",
    "OPENAI_API_KEY": "sk-default",
}


class TestResolveCredentials:
    def test_explicit_wins(self) -> None:
        resolution = resolve_credentials(AZURE, {"AZURE_SPEECH_KEY": "mine", "AZURE_SPEECH_REGION": "eastus"}, DEFAULTS)
        assert resolution.source is CredentialSource.EXPLICIT
        assert resolution.credentials["AZURE_SPEECH_KEY"] == "mine"

    def test_empty_explicit_values_fall_back(self) -> None:
        resolution = resolve_credentials(AZURE, {"AZURE_SPEECH_KEY": ""}, DEFAULTS)
        assert resolution.source is CredentialSource.DEFAULT

    def test_defaults_filtered_to_engine_fields(self) -> None:
        resolution = resolve_credentials(AZURE, None, DEFAULTS)
        assert resolution.credentials == {"AZURE_SPEECH_KEY": "default-key", "AZURE_SPEECH_REGION": "westeurope"}

    def test_incomplete_defaults_are_missing(self) -> None:
        resolution = resolve_credentials(AZURE, None, {"AZURE_SPEECH_KEY": "only-key"})
        assert resolution.source is CredentialSource.MISSING
        assert resolution.fingerprint == "none"

    def test_optional_fields_need_at_least_one(self) -> None:
        assert resolve_credentials(GOOGLE, None, {}).source is CredentialSource.MISSING
        assert resolve_credentials(GOOGLE, None, {"GOOGLE_API_KEY": "g"}).source is CredentialSource.DEFAULT

    def test_engine_without_credentials(self) -> None:
        assert resolve_credentials(ESPEAK, None, DEFAULTS).source is CredentialSource.MISSING


class TestFingerprint:
    def test_stable_and_order_independent(self) -> None:
        a = resolve_credentials(AZURE, {"AZURE_SPEECH_KEY": "k", "AZURE_SPEECH_REGION": "r"}, None)
        b = resolve_credentials(AZURE, {"AZURE_SPEECH_REGION": "r", "AZURE_SPEECH_KEY": "k"}, None)
        assert a.fingerprint == b.fingerprint

    def test_differs_per_credential_set(self) -> None:
        a = resolve_credentials(AZURE, {"AZURE_SPEECH_KEY": "k1"}, None)
        b = resolve_credentials(AZURE, {"AZURE_SPEECH_KEY": "k2"}, None)
        assert a.fingerprint != b.fingerprint

    def test_does_not_contain_secret(self) -> None:
        resolution = resolve_credentials(AZURE, {"AZURE_SPEECH_KEY": "super-secret"}, None)
        assert "super-secret" not in resolution.fingerprint
