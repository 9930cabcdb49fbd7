"""OpenAI speech adapter (POST /v1/audio/speech)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from src.engines.adapters.http import VendorAPIError, VendorHTTPClient, require_credential
from src.engines.base import (
    AdapterState,
    AudioFormat,
    EngineCapabilities,
    EngineStatus,
    SynthesisRequest,
    SynthesisResult,
    TimestampedResult,
    Voice,
)
from src.errors import (
    MissingCredentials,
    SpeechGenerationError,
    UnsupportedCapability,
    UnsupportedFormat,
    VendorUnreachable,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.config import EngineSettings
    from src.engines.definitions import EngineDefinition

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.openai.com/v1"
_MODEL = "tts-1"
_SAMPLE_RATE = 24000  # fixed by the API for every format

_VOICES = ("alloy", "ash", "ballad", "coral", "echo", "fable", "nova", "onyx", "sage", "shimmer")

_RESPONSE_FORMATS = {
    AudioFormat.MP3: "mp3",
    AudioFormat.WAV: "wav",
    AudioFormat.OPUS: "opus",
    AudioFormat.PCM16: "pcm",
}


class OpenAIAdapter:
    """OpenAI TTS over REST; streams the response body when asked."""

    def __init__(self, definition: EngineDefinition, settings: EngineSettings) -> None:
        self._definition = definition
        self._settings = settings
        self._state = AdapterState(str(definition.id))
        self._http: VendorHTTPClient | None = None

    @property
    def engine_id(self) -> str:
        return self._state.engine_id

    @property
    def capabilities(self) -> EngineCapabilities:
        return self._definition.capabilities

    @property
    def default_voice(self) -> str | None:
        return self._state.default_voice(self._definition.default_voice)

    async def initialize(self, credentials: dict[str, str] | None = None) -> None:
        """Open the HTTP session and verify the key against the models endpoint."""
        try:
            api_key = require_credential(self.engine_id, credentials, "OPENAI_API_KEY")
            self._http = VendorHTTPClient(
                self.engine_id,
                _BASE_URL,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self._settings.vendor_timeout,
            )
            await self._http.open()
            await self._http.get_json(f"/models/{_MODEL}")
        except VendorAPIError as exc:
            self._state.mark_failed(exc)
            raise VendorUnreachable(self.engine_id, exc.message) from exc
        except (MissingCredentials, VendorUnreachable) as exc:
            self._state.mark_failed(exc)
            raise

        voices = [
            Voice(engine=self.engine_id, native_id=name, name=name.capitalize(), language="multilingual")
            for name in _VOICES
        ]
        self._state.mark_ready(voices)

    async def get_voices(self) -> list[Voice]:
        return list(self._state.voices)

    def _payload(self, request: SynthesisRequest) -> dict[str, Any]:
        response_format = _RESPONSE_FORMATS.get(request.format)
        if response_format is None:
            raise UnsupportedFormat(self.engine_id, request.format)
        payload: dict[str, Any] = {
            "model": _MODEL,
            "input": request.text,
            "voice": request.native_voice or self._definition.default_voice,
            "response_format": response_format,
        }
        if request.voice_settings is not None and request.voice_settings.speed is not None:
            payload["speed"] = request.voice_settings.speed
        return payload

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        self._state.require_ready()
        payload = self._payload(request)
        try:
            audio = await self._http.post_bytes("/audio/speech", json_data=payload)  # type: ignore[union-attr]
        except VendorAPIError as exc:
            raise SpeechGenerationError(self.engine_id, exc.message) from exc

        return SynthesisResult(
            audio=audio,
            format=request.format,
            sample_rate=_SAMPLE_RATE,
            engine=self.engine_id,
            voice=f"{self.engine_id}:{payload['voice']}",
            character_count=len(request.text),
        )

    async def synthesize_stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]:
        self._state.require_ready()
        payload = self._payload(request)
        try:
            async for chunk in self._http.post_stream("/audio/speech", json_data=payload):  # type: ignore[union-attr]
                yield chunk
        except VendorAPIError as exc:
            raise SpeechGenerationError(self.engine_id, exc.message) from exc

    async def synthesize_with_timestamps(self, request: SynthesisRequest) -> TimestampedResult:
        raise UnsupportedCapability(self.engine_id, "timestamps")

    def status(self) -> EngineStatus:
        return self._state.status()

    def mark_failed(self, exc: BaseException) -> None:
        self._state.mark_failed(exc)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None
        self._state.reset()
