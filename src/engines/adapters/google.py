"""Google Cloud Text-to-Speech adapter with phrase caching."""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from google.api_core import exceptions as google_exceptions
from google.cloud import texttospeech_v1 as texttospeech
from google.oauth2 import service_account

from src.audio.wav import extract_pcm
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
from src.monitoring.metrics import engine_cache_hits_total, engine_cache_misses_total

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.config import EngineSettings
    from src.engines.definitions import EngineDefinition

logger = logging.getLogger(__name__)

_ENCODINGS = {
    AudioFormat.WAV: texttospeech.AudioEncoding.LINEAR16,
    AudioFormat.PCM16: texttospeech.AudioEncoding.LINEAR16,
    AudioFormat.MP3: texttospeech.AudioEncoding.MP3,
    AudioFormat.OGG: texttospeech.AudioEncoding.OGG_OPUS,
}

# Only short phrases are cached (likely to repeat: prompts, confirmations)
_CACHEABLE_LENGTH = 100
_CACHE_SIZE = 256

_UNREACHABLE = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.TooManyRequests,
)


def _language_from_voice(voice_name: str) -> str:
    """en-US-Standard-C → en-US."""
    parts = voice_name.split("-")
    return "-".join(parts[:2]) if len(parts) >= 2 else "en-US"


class GoogleAdapter:
    """Google Cloud TTS via the async gRPC client."""

    def __init__(self, definition: EngineDefinition, settings: EngineSettings) -> None:
        self._definition = definition
        self._settings = settings
        self._state = AdapterState(str(definition.id))
        self._client: texttospeech.TextToSpeechAsyncClient | None = None
        self._cache: OrderedDict[str, bytes] = OrderedDict()

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
        """Build the client from an API key or service account JSON, then list voices."""
        try:
            self._client = self._build_client(credentials or {})
            response = await self._client.list_voices()
        except MissingCredentials as exc:
            self._state.mark_failed(exc)
            raise
        except (google_exceptions.GoogleAPICallError, ValueError) as exc:
            self._state.mark_failed(exc)
            raise VendorUnreachable(self.engine_id, str(exc)) from exc

        voices = [
            Voice(
                engine=self.engine_id,
                native_id=v.name,
                name=v.name,
                language=v.language_codes[0] if v.language_codes else "",
                language_code=(v.language_codes[0] if v.language_codes else "en").split("-")[0],
                gender=texttospeech.SsmlVoiceGender(v.ssml_gender).name.lower(),
            )
            for v in response.voices
        ]
        self._state.mark_ready(voices)
        logger.info("Google TTS initialized, %d voices", len(voices))

    def _build_client(self, credentials: dict[str, str]) -> texttospeech.TextToSpeechAsyncClient:
        service_json = credentials.get("GOOGLE_APPLICATION_CREDENTIALS_JSON")
        api_key = credentials.get("GOOGLE_API_KEY")
        if service_json:
            info = json.loads(service_json)
            return texttospeech.TextToSpeechAsyncClient(
                credentials=service_account.Credentials.from_service_account_info(info)
            )
        if api_key:
            return texttospeech.TextToSpeechAsyncClient(client_options={"api_key": api_key})
        raise MissingCredentials(self.engine_id)

    async def get_voices(self) -> list[Voice]:
        return list(self._state.voices)

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        self._state.require_ready()
        encoding = _ENCODINGS.get(request.format)
        if encoding is None:
            raise UnsupportedFormat(self.engine_id, request.format)

        voice_name = request.native_voice or self._definition.default_voice or "en-US-Standard-C"
        sample_rate = request.sample_rate or self._definition.native_sample_rate
        key = self._cache_key(request, voice_name, sample_rate)

        audio = self._cache.get(key)
        if audio is not None:
            self._cache.move_to_end(key)
            engine_cache_hits_total.labels(engine=self.engine_id).inc()
        else:
            engine_cache_misses_total.labels(engine=self.engine_id).inc()
            audio = await self._call_tts_api(request, voice_name, encoding, sample_rate)
            if len(request.text) < _CACHEABLE_LENGTH:
                self._cache[key] = audio
                if len(self._cache) > _CACHE_SIZE:
                    self._cache.popitem(last=False)

        if request.format is AudioFormat.PCM16:
            audio, _ = extract_pcm(audio)

        return SynthesisResult(
            audio=audio,
            format=request.format,
            sample_rate=sample_rate,
            engine=self.engine_id,
            voice=f"{self.engine_id}:{voice_name}",
            character_count=len(request.text),
        )

    async def _call_tts_api(
        self,
        request: SynthesisRequest,
        voice_name: str,
        encoding: texttospeech.AudioEncoding,
        sample_rate: int,
    ) -> bytes:
        """Send synthesis request to Google TTS and return the encoded audio."""
        audio_config: dict[str, Any] = {"audio_encoding": encoding, "sample_rate_hertz": sample_rate}
        settings = request.voice_settings
        if settings is not None and settings.speed is not None:
            audio_config["speaking_rate"] = settings.speed
        if settings is not None and settings.pitch is not None:
            audio_config["pitch"] = settings.pitch

        try:
            response = await self._client.synthesize_speech(  # type: ignore[union-attr]
                input=texttospeech.SynthesisInput(text=request.text),
                voice=texttospeech.VoiceSelectionParams(
                    language_code=_language_from_voice(voice_name),
                    name=voice_name,
                ),
                audio_config=texttospeech.AudioConfig(**audio_config),
            )
        except _UNREACHABLE as exc:
            raise VendorUnreachable(self.engine_id, str(exc)) from exc
        except google_exceptions.GoogleAPICallError as exc:
            raise SpeechGenerationError(self.engine_id, str(exc)) from exc

        logger.debug("Google TTS synthesized %d bytes for '%s'", len(response.audio_content), request.text[:50])
        return response.audio_content

    @staticmethod
    def _cache_key(request: SynthesisRequest, voice_name: str, sample_rate: int) -> str:
        """Generate a cache key for a request's text and audio parameters."""
        settings = request.voice_settings
        parts = [
            request.text,
            voice_name,
            AudioFormat.WAV if request.format is AudioFormat.PCM16 else request.format,
            str(sample_rate),
            repr((settings.speed, settings.pitch)) if settings is not None else "",
        ]
        return hashlib.sha256("\x1f".join(parts).encode()).hexdigest()

    def synthesize_stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]:
        raise UnsupportedCapability(self.engine_id, "streaming")

    async def synthesize_with_timestamps(self, request: SynthesisRequest) -> TimestampedResult:
        raise UnsupportedCapability(self.engine_id, "timestamps")

    def status(self) -> EngineStatus:
        return self._state.status()

    def mark_failed(self, exc: BaseException) -> None:
        self._state.mark_failed(exc)

    async def close(self) -> None:
        self._cache.clear()
        self._client = None
        self._state.reset()
