"""Azure Cognitive Services Speech adapter (REST + SSML)."""

from __future__ import annotations

import logging
import xml.sax.saxutils
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

_PCM_RATES_KHZ = (8, 16, 24, 48)


def output_format(audio_format: AudioFormat, sample_rate: int | None) -> tuple[str, int]:
    """Map a gateway format to Azure's X-Microsoft-OutputFormat and its sample rate."""
    if audio_format is AudioFormat.MP3:
        return "audio-24khz-48kbitrate-mono-mp3", 24000
    if audio_format is AudioFormat.OGG:
        return "ogg-24khz-16bit-mono-opus", 24000
    if audio_format in (AudioFormat.WAV, AudioFormat.PCM16):
        wanted = (sample_rate or 24000) / 1000
        khz = min(_PCM_RATES_KHZ, key=lambda r: abs(r - wanted))
        container = "riff" if audio_format is AudioFormat.WAV else "raw"
        return f"{container}-{khz}khz-16bit-mono-pcm", khz * 1000
    raise UnsupportedFormat("azure", audio_format)


def build_ssml(text: str, voice: str, speed: float | None = None, pitch: float | None = None) -> str:
    """Wrap escaped text in SSML with optional prosody."""
    language = "-".join(voice.split("-")[:2]) or "en-US"
    body = xml.sax.saxutils.escape(text)
    prosody = []
    if speed is not None:
        prosody.append(f"rate='{round((speed - 1.0) * 100):+d}%'")
    if pitch is not None:
        prosody.append(f"pitch='{round(pitch):+d}st'")
    if prosody:
        body = f"<prosody {' '.join(prosody)}>{body}</prosody>"
    return (
        f"<speak version='1.0' xmlns='http://www.w3.org/2001/10/synthesis' xml:lang='{language}'>"
        f"<voice name='{xml.sax.saxutils.escape(voice)}'>{body}</voice></speak>"
    )


def _parse_voices(engine_id: str, data: list[dict[str, Any]]) -> list[Voice]:
    return [
        Voice(
            engine=engine_id,
            native_id=item["ShortName"],
            name=item.get("DisplayName", item["ShortName"]),
            language=item.get("Locale", ""),
            language_code=item.get("Locale", "en").split("-")[0],
            gender=(item.get("Gender") or "").lower() or None,
        )
        for item in data
    ]


class AzureAdapter:
    """Azure neural voices; the REST response body is streamed as it arrives."""

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
            key = require_credential(self.engine_id, credentials, "AZURE_SPEECH_KEY")
            region = require_credential(self.engine_id, credentials, "AZURE_SPEECH_REGION")
            self._http = VendorHTTPClient(
                self.engine_id,
                f"https://{region}.tts.speech.microsoft.com",
                headers={"Ocp-Apim-Subscription-Key": key, "User-Agent": "speech-gateway"},
                timeout=self._settings.vendor_timeout,
            )
            await self._http.open()
            data = await self._http.get_json("/cognitiveservices/voices/list")
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

    def _request_parts(self, request: SynthesisRequest) -> tuple[str, str, dict[str, str], int]:
        voice = request.native_voice or self._definition.default_voice or "en-US-JennyNeural"
        fmt, rate = output_format(request.format, request.sample_rate)
        settings = request.voice_settings
        ssml = build_ssml(
            request.text,
            voice,
            speed=settings.speed if settings is not None else None,
            pitch=settings.pitch if settings is not None else None,
        )
        headers = {"Content-Type": "application/ssml+xml", "X-Microsoft-OutputFormat": fmt}
        return voice, ssml, headers, rate

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        self._state.require_ready()
        voice, ssml, headers, rate = self._request_parts(request)
        try:
            audio = await self._http.post_bytes(  # type: ignore[union-attr]
                "/cognitiveservices/v1", data=ssml.encode(), headers=headers
            )
        except VendorAPIError as exc:
            raise SpeechGenerationError(self.engine_id, exc.message) from exc

        return SynthesisResult(
            audio=audio,
            format=request.format,
            sample_rate=rate,
            engine=self.engine_id,
            voice=f"{self.engine_id}:{voice}",
            character_count=len(request.text),
        )

    async def synthesize_stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]:
        self._state.require_ready()
        _, ssml, headers, _ = self._request_parts(request)
        try:
            async for chunk in self._http.post_stream(  # type: ignore[union-attr]
                "/cognitiveservices/v1", data=ssml.encode(), headers=headers
            ):
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
