"""Tests for the embedded-device API."""

from __future__ import annotations

from fastapi.testclient import TestClient


class TestSpeak:
    """Devices get raw PCM with audio metadata in headers."""

    def test_pcm_by_default(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/api/speak", json={"text": "hello"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/pcm"
        assert response.headers["X-Audio-Format"] == "pcm16"
        assert response.headers["X-Sample-Rate"] == "16000"
        assert response.headers["X-Channels"] == "1"
        assert response.headers["X-Bit-Depth"] == "16"
        assert response.headers["X-Engine"] == "espeak"
        assert len(response.content) == 5 * 320

    def test_wav_requested(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post(
            "/api/speak", json={"text": "hello", "format": "wav", "sample_rate": 22050}, headers=admin_headers
        )
        assert response.headers["content-type"] == "audio/wav"
        assert response.headers["X-Sample-Rate"] == "22050"
        assert response.content.startswith(b"RIFF")

    def test_unsupported_device_format(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/api/speak", json={"text": "hello", "format": "ogg"}, headers=admin_headers)
        assert response.status_code == 400

    def test_sample_rate_bounds(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/api/speak", json={"text": "hello", "sample_rate": 4000}, headers=admin_headers)
        assert response.status_code == 400

    def test_text_limit(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/api/speak", json={"text": "a" * 2001}, headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "TEXT_TOO_LONG"

    def test_requires_key(self, client: TestClient) -> None:
        assert client.post("/api/speak", json={"text": "hello"}).status_code == 401


class TestListings:
    def test_voices(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        body = client.get("/api/voices", headers=admin_headers).json()
        assert body["count"] == len(body["voices"])
        assert {"id": "espeak:voice-a", "name": "Voice A", "engine": "espeak", "language": "en"} in body["voices"]

    def test_engines(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        body = client.get("/api/engines", headers=admin_headers).json()
        assert body["count"] == 5
        assert {e["id"] for e in body["engines"]} == {"espeak", "azure", "elevenlabs", "openai", "google"}

    def test_ping_is_public(self, client: TestClient) -> None:
        body = client.get("/api/ping").json()
        assert body["status"] == "ok"
        assert body["timestamp"] > 0
