"""Tests for the ElevenLabs-compatible synthesis API."""

from __future__ import annotations

import base64
from typing import Any

from fastapi.testclient import TestClient

from src.api.tts import parse_output_format
from src.engines.base import AudioFormat


def _create_key(client: TestClient, admin_headers: dict[str, str], **body: Any) -> str:
    response = client.post("/admin/keys", json={"name": "test", **body}, headers=admin_headers)
    assert response.status_code == 201
    return str(response.json()["key"])


class TestParseOutputFormat:
    def test_vendor_style(self) -> None:
        assert parse_output_format("pcm_16000", "wav") == (AudioFormat.PCM16, 16000)
        assert parse_output_format("mp3_44100_128", "wav") == (AudioFormat.MP3, 44100)

    def test_plain_and_default(self) -> None:
        assert parse_output_format("wav", "mp3") == (AudioFormat.WAV, None)
        assert parse_output_format(None, "mp3") == (AudioFormat.MP3, None)


class TestAuth:
    def test_missing_key(self, client: TestClient) -> None:
        response = client.post("/v1/text-to-speech/default", json={"text": "hello"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "API_KEY_REQUIRED"

    def test_invalid_key(self, client: TestClient) -> None:
        response = client.get("/v1/voices", headers={"X-API-Key": "wrong"})
        assert response.status_code == 401

    def test_alternate_key_locations(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        key = _create_key(client, admin_headers)
        assert client.get("/v1/voices", headers={"xi-api-key": key}).status_code == 200
        assert client.get("/v1/voices", headers={"Authorization": f"Bearer {key}"}).status_code == 200
        assert client.get("/v1/voices", params={"api_key": key}).status_code == 200

    def test_rate_limited(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        key = _create_key(client, admin_headers, rate_limit=2)
        headers = {"X-API-Key": key}

        first = client.get("/v1/voices", headers=headers)
        client.get("/v1/voices", headers=headers)
        rejected = client.get("/v1/voices", headers=headers)

        assert first.status_code == 200
        assert rejected.status_code == 429
        assert rejected.headers["X-RateLimit-Limit"] == "2"
        assert rejected.headers["X-RateLimit-Remaining"] == "0"
        assert int(rejected.headers["Retry-After"]) >= 1
        assert rejected.json()["error"]["code"] == "RATE_LIMITED"

    def test_rate_limit_headers_on_success(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        key = _create_key(client, admin_headers, rate_limit=5)
        response = client.post("/v1/text-to-speech/default", json={"text": "hello"}, headers={"X-API-Key": key})
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_engine_not_entitled(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        key = _create_key(client, admin_headers, engine_config={"elevenlabs": {"enabled": False}})
        response = client.post(
            "/v1/text-to-speech/elevenlabs:voice-a", json={"text": "hello"}, headers={"X-API-Key": key}
        )
        assert response.status_code == 403


class TestVoices:
    def test_lists_reachable_engines(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.get("/v1/voices", headers=admin_headers)

        assert response.status_code == 200
        ids = {v["voice_id"] for v in response.json()["voices"]}
        assert {"espeak:voice-a", "elevenlabs:voice-b"} <= ids
        assert not any(i.startswith("azure:") for i in ids)

    def test_get_voice(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.get("/v1/voices/espeak:voice-b", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["labels"]["language"] == "uk"

    def test_unknown_voice(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        assert client.get("/v1/voices/espeak:nope", headers=admin_headers).status_code == 404
        assert client.get("/v1/voices/festival:x", headers=admin_headers).status_code == 404


class TestTextToSpeech:
    def test_batch(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/v1/text-to-speech/espeak:voice-a", json={"text": "hello"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/wav"
        assert response.headers["X-Engine"] == "espeak"
        assert response.headers["X-Voice"] == "espeak:voice-a"
        assert response.headers["X-Character-Count"] == "5"
        assert response.content.startswith(b"RIFF")

    def test_format_negotiated_header(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post(
            "/v1/text-to-speech/default",
            params={"output_format": "mp3_44100_128"},
            json={"text": "hello"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.headers["X-Format-Negotiated"] == "mp3->wav"

    def test_empty_text_rejected(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/v1/text-to-speech/default", json={"text": ""}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_text_too_long(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/v1/text-to-speech/default", json={"text": "a" * 5001}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "TEXT_TOO_LONG"

    def test_engine_without_credentials(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/v1/text-to-speech/openai:alloy", json={"text": "hello"}, headers=admin_headers)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ENGINE_CREDENTIALS_MISSING"

    def test_stream(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post(
            "/v1/text-to-speech/elevenlabs:voice-a/stream",
            params={"output_format": "pcm_16000"},
            json={"text": "hello"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.headers["X-Audio-Format"] == "pcm16"
        assert len(response.content) == 5 * 320

    def test_stream_unsupported(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/v1/text-to-speech/espeak:voice-a/stream", json={"text": "hi"}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNSUPPORTED_CAPABILITY"


class TestWithTimestamps:
    def test_alignment(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post(
            "/v1/text-to-speech/elevenlabs:voice-a/with-timestamps", json={"text": "hey"}, headers=admin_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["alignment"]["characters"] == ["h", "e", "y"]
        assert body["alignment"]["character_start_times_seconds"] == [0.0, 0.05, 0.1]
        assert len(base64.b64decode(body["audio_base64"])) == 3 * 320

    def test_unsupported_engine(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post(
            "/v1/text-to-speech/espeak:voice-a/with-timestamps", json={"text": "hey"}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNSUPPORTED_CAPABILITY"


class TestCompatibility:
    def test_models(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        models = client.get("/v1/models", headers=admin_headers).json()
        assert models[0]["maximum_text_length_per_request"] == 5000

    def test_user(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        assert client.get("/v1/user", headers=admin_headers).json()["subscription"]["tier"] == "admin"

    def test_engines(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        body = client.get("/v1/engines", headers=admin_headers).json()
        engines = {e["id"]: e for e in body["engines"]}

        assert body["default_engine"] == "espeak"
        assert engines["elevenlabs"]["supports_timestamps"] is True
        assert engines["elevenlabs"]["has_default_credentials"] is True
        assert engines["openai"]["has_default_credentials"] is False
        assert engines["azure"]["status"]["message"] == "Not initialized"
