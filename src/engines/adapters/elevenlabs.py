"""ElevenLabs adapter: batch, streaming and character-timestamp synthesis."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import TYPE_CHECKING, Any

from src.engines.adapters.http import VendorAPIError, VendorHTTPClient, require_credential
from src.engines.base import (
    AdapterState,
    Alignment,
    AudioFormat,
    EngineCapabilities,
    EngineStatus,
    SynthesisRequest,
    SynthesisResult,
    TimestampedResult,
    Voice,
)
from src.errors import (
    EngineNotAvailable,
    MissingCredentials,
    SpeechGenerationError,
    UnsupportedFormat,
    VendorUnreachable,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.config import EngineSettings
    from src.engines.definitions import EngineDefinition

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.elevenlabs.io/v1"
_MODEL_ID = "eleven_multilingual_v2"
_MP3_OUTPUT = ("mp3_44100_128", 44100)
_PCM_RATES = (16000, 22050, 24000, 44100)


def output_format(audio_format: AudioFormat, sample_rate: int | None) -> tuple[str, int]:
    """Map a gateway format to ElevenLabs' output_format and its sample rate."""
    if audio_format is AudioFormat.MP3:
        return _MP3_OUTPUT
    if audio_format is AudioFormat.PCM16:
        wanted = sample_rate or 22050
        rate = min(_PCM_RATES, key=lambda r: abs(r - wanted))
        return f"pcm_{rate}", rate
    raise UnsupportedFormat("elevenlabs", audio_format)


def _parse_voices(engine_id: str, data: dict[str, Any]) -> list[Voice]:
    voices = []
    for item in data.get("voices", []):
        labels = {str(k): str(v) for k, v in (item.get("labels") or {}).items()}
        voices.append(
            Voice(
                engine=engine_id,
                native_id=item["voice_id"],
                name=item.get("name", item["voice_id"]),
                language=labels.get("accent", ""),
                language_code=labels.get("language", "en"),
                gender=labels.get("gender"),
                labels=labels,
            )
        )
    return voices


class ElevenLabsAdapter:
    """ElevenLabs REST API; the only engine with character timestamps."""

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
        try:
            api_key = require_credential(self.engine_id, credentials, "ELEVENLABS_API_KEY")
            self._http = VendorHTTPClient(
                self.engine_id,
                _BASE_URL,
                headers={"xi-api-key": api_key},
                timeout=self._settings.vendor_timeout,
            )
            await self._http.open()
            data = await self._http.get_json("/voices")
            voices = _parse_voices(self.engine_id, data)
        except VendorAPIError as exc:
            self._state.mark_failed(exc)
            raise VendorUnreachable(self.engine_id, exc.message) from exc
        except (MissingCredentials, VendorUnreachable) as exc:
            self._state.mark_failed(exc)
            raise
        except (KeyError, TypeError, AttributeError) as exc:
            self._state.mark_failed(exc)
            message = f"malformed voice list ({exc.__class__.__name__}: {exc})"
            raise VendorUnreachable(self.engine_id, message) from exc
        self._state.mark_ready(voices)

    async def get_voices(self) -> list[Voice]:
        return list(self._state.voices)

    def _voice_id(self, request: SynthesisRequest) -> str:
        voice_id = request.native_voice or (self.default_voice or "").split(":", 1)[-1]
        if not voice_id:
            raise EngineNotAvailable(self.engine_id, "no voices available")
        return voice_id

    @staticmethod
    def _payload(request: SynthesisRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": request.text, "model_id": _MODEL_ID}
        settings = request.voice_settings
        if settings is not None:
            voice_settings = {
                "stability": settings.stability,
                "similarity_boost": settings.similarity_boost,
                "style": settings.style,
                "speed": settings.speed,
                "use_speaker_boost": settings.use_speaker_boost,
            }
            payload["voice_settings"] = {k: v for k, v in voice_settings.items() if v is not None}
        return payload

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        self._state.require_ready()
        voice_id = self._voice_id(request)
        fmt, rate = output_format(request.format, request.sample_rate)
        try:
            audio = await self._http.post_bytes(  # type: ignore[union-attr]
                f"/text-to-speech/{voice_id}",
                json_data=self._payload(request),
                params={"output_format": fmt},
            )
        except VendorAPIError as exc:
            raise SpeechGenerationError(self.engine_id, exc.message) from exc

        return SynthesisResult(
            audio=audio,
            format=request.format,
            sample_rate=rate,
            engine=self.engine_id,
            voice=f"{self.engine_id}:{voice_id}",
            character_count=len(request.text),
        )

    async def synthesize_stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]:
        self._state.require_ready()
        voice_id = self._voice_id(request)
        fmt, _ = output_format(request.format, request.sample_rate)
        try:
            async for chunk in self._http.post_stream(  # type: ignore[union-attr]
                f"/text-to-speech/{voice_id}/stream",
                json_data=self._payload(request),
                params={"output_format": fmt},
            ):
                yield chunk
        except VendorAPIError as exc:
            raise SpeechGenerationError(self.engine_id, exc.message) from exc

    async def synthesize_with_timestamps(self, request: SynthesisRequest) -> TimestampedResult:
        self._state.require_ready()
        voice_id = self._voice_id(request)
        fmt, rate = output_format(request.format, request.sample_rate)
        try:
            data = await self._http.post_json(  # type: ignore[union-attr]
                f"/text-to-speech/{voice_id}/with-timestamps",
                json_data=self._payload(request),
                params={"output_format": fmt},
            )
            audio = base64.b64decode(data["audio_base64"])
        except VendorAPIError as exc:
            raise SpeechGenerationError(self.engine_id, exc.message) from exc
        except (KeyError, TypeError, binascii.Error) as exc:
            raise SpeechGenerationError(self.engine_id, f"malformed timestamp response: {exc}") from exc

        raw = data.get("alignment") or {}
        alignment = Alignment(
            characters=list(raw.get("characters", [])),
            character_start_times_seconds=[float(t) for t in raw.get("character_start_times_seconds", [])],
            character_end_times_seconds=[float(t) for t in raw.get("character_end_times_seconds", [])],
        )
        return TimestampedResult(
            audio=audio,
            alignment=alignment,
            format=request.format,
            sample_rate=rate,
            engine=self.engine_id,
            voice=f"{self.engine_id}:{voice_id}",
            character_count=len(request.text),
        )

    def status(self) -> EngineStatus:
        return self._state.status()

    def mark_failed(self, exc: BaseException) -> None:
        self._state.mark_failed(exc)

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None
        self._state.reset()
