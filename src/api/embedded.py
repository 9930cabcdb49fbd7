"""Embedded-device API (ESP32 and similar).

Devices ask for raw 16-bit mono PCM by default. When the engine can only
emit WAV, the container is stripped here; audio is never resampled.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from src.api.deps import get_gateway, rate_limit_headers, require_admission
from src.api.tts import collect_voices
from src.audio.wav import extract_pcm
from src.engines.base import AudioFormat, SynthesisRequest
from src.errors import InvalidRequest
from src.gate.admission import Admission

if TYPE_CHECKING:
    from src.gateway import Gateway

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["embedded"])

_admitted = Depends(require_admission)

DEVICE_FORMATS = (AudioFormat.PCM16, AudioFormat.WAV, AudioFormat.MP3)
MIN_SAMPLE_RATE = 8000
MAX_SAMPLE_RATE = 48000


class SpeakBody(BaseModel):
    text: str = Field(min_length=1)
    engine: str | None = None
    voice: str | None = None
    format: str = "pcm16"
    sample_rate: int | None = Field(default=None, ge=MIN_SAMPLE_RATE, le=MAX_SAMPLE_RATE)


@dataclass(frozen=True, slots=True)
class DeviceAudio:
    audio: bytes
    format: AudioFormat
    sample_rate: int
    engine: str
    voice: str
    character_count: int

    @property
    def content_type(self) -> str:
        return self.format.content_type


async def speak_for_device(
    gateway: Gateway,
    admission: Admission,
    *,
    text: str,
    engine: str | None = None,
    voice: str | None = None,
    format: str | None = None,
    sample_rate: int | None = None,
    max_length: int,
    path: str,
) -> DeviceAudio:
    """Route a device request and hand back PCM when PCM was asked for."""
    defaults = gateway.settings.embedded
    requested = AudioFormat.parse(format or AudioFormat.PCM16)
    if requested not in DEVICE_FORMATS:
        msg = f"format must be one of: {', '.join(DEVICE_FORMATS)}"
        raise InvalidRequest(msg)
    if sample_rate is not None and not MIN_SAMPLE_RATE <= sample_rate <= MAX_SAMPLE_RATE:
        msg = f"sample_rate must be between {MIN_SAMPLE_RATE} and {MAX_SAMPLE_RATE}"
        raise InvalidRequest(msg)

    engine_id = engine or defaults.default_engine
    if not voice and engine_id == defaults.default_engine:
        voice = defaults.default_voice

    synthesis = SynthesisRequest.create(
        text,
        max_length=max_length,
        engine=engine_id,
        voice=voice,
        format=requested,
        sample_rate=sample_rate or defaults.default_sample_rate,
    )
    result = await gateway.router.route(synthesis, admission, path=path)

    audio, audio_format, rate = result.audio, result.format, result.sample_rate
    if requested is AudioFormat.PCM16 and audio_format is AudioFormat.WAV:
        audio, header_rate = extract_pcm(audio)
        audio_format = AudioFormat.PCM16
        rate = header_rate or rate

    return DeviceAudio(
        audio=audio,
        format=audio_format,
        sample_rate=rate,
        engine=result.engine,
        voice=result.voice,
        character_count=result.character_count,
    )


@router.post("/speak")
async def speak(body: SpeakBody, request: Request, admission: Admission = _admitted) -> Response:
    """Synthesize for a device; audio metadata travels in headers."""
    gateway = get_gateway(request)
    started = time.monotonic()
    result = await speak_for_device(
        gateway,
        admission,
        text=body.text,
        engine=body.engine,
        voice=body.voice,
        format=body.format,
        sample_rate=body.sample_rate,
        max_length=gateway.settings.embedded.max_text_length,
        path="/api/speak",
    )
    headers = {
        "X-Audio-Format": str(result.format),
        "X-Sample-Rate": str(result.sample_rate),
        "X-Channels": "1",
        "X-Bit-Depth": "16",
        "X-Character-Count": str(result.character_count),
        "X-Duration-Ms": str(int((time.monotonic() - started) * 1000)),
        "X-Engine": result.engine,
        **rate_limit_headers(admission),
    }
    return Response(content=result.audio, media_type=result.content_type, headers=headers)


@router.get("/voices")
async def device_voices(request: Request, admission: Admission = _admitted) -> dict[str, Any]:
    voices = [
        {"id": v.id, "name": v.name, "engine": v.engine, "language": v.language_code}
        for v in await collect_voices(get_gateway(request), admission)
    ]
    return {"voices": voices, "count": len(voices)}


@router.get("/engines")
async def device_engines(request: Request, admission: Admission = _admitted) -> dict[str, Any]:
    engines = engine_summaries(get_gateway(request))
    return {"engines": engines, "count": len(engines)}


@router.get("/ping")
async def ping() -> dict[str, Any]:
    return {"status": "ok", "timestamp": int(time.time() * 1000)}


def engine_summaries(gateway: Gateway) -> list[dict[str, Any]]:
    """Compact status per engine for devices and the WebSocket ``engines`` command."""
    return [
        {"id": engine_id, "available": status.available, "voice_count": status.voice_count}
        for engine_id, status in gateway.registry.engine_statuses().items()
    ]
