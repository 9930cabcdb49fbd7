"""ElevenLabs-compatible synthesis API.

Voice ids are "engine:native_id" (e.g. ``azure:en-US-JennyNeural``); a bare
id is routed to the default engine.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from src.api.deps import get_gateway, rate_limit_headers, require_admission
from src.engines.base import AudioFormat, SynthesisRequest, Voice
from src.engines.definitions import get_definition
from src.errors import GatewayError, VoiceNotFound
from src.gate.admission import Admission

if TYPE_CHECKING:
    from src.gateway import Gateway

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1", tags=["tts"])

_admitted = Depends(require_admission)


class VoiceSettingsBody(BaseModel):
    stability: float | None = Field(default=None, ge=0, le=1)
    similarity_boost: float | None = Field(default=None, ge=0, le=1)
    style: float | None = Field(default=None, ge=0, le=1)
    use_speaker_boost: bool | None = None
    speed: float | None = Field(default=None, ge=0.25, le=4)
    pitch: float | None = Field(default=None, ge=-20, le=20)


class TextToSpeechBody(BaseModel):
    text: str = Field(min_length=1)
    model_id: str | None = None
    voice_settings: VoiceSettingsBody | None = None
    output_format: str | None = None


def parse_output_format(value: str | None, default: str) -> tuple[AudioFormat, int | None]:
    """ElevenLabs output_format ("mp3_44100_128", "pcm_16000") or a plain format name."""
    if not value:
        return AudioFormat.parse(default), None
    codec, _, rest = value.partition("_")
    rate_part = rest.split("_", 1)[0]
    sample_rate = int(rate_part) if rate_part.isdigit() else None
    return AudioFormat.parse(codec), sample_rate


def voice_to_dict(voice: Voice) -> dict[str, Any]:
    """ElevenLabs voice shape."""
    labels = {"engine": voice.engine, "language": voice.language_code, **voice.labels}
    if voice.gender:
        labels["gender"] = voice.gender
    return {
        "voice_id": voice.id,
        "name": voice.name,
        "category": "premade",
        "labels": labels,
        "description": f"{voice.name} ({voice.engine})",
        "preview_url": None,
        "available_for_tiers": [],
        "settings": None,
    }


async def collect_voices(gateway: Gateway, admission: Admission, engine: str | None = None) -> list[Voice]:
    """Voices of every engine this caller can reach. Unavailable engines are skipped."""
    voices: list[Voice] = []
    engine_ids = [engine] if engine else gateway.registry.get_available_engines()
    for engine_id in engine_ids:
        if not admission.can_access_engine(engine_id):
            continue
        credentials = admission.engine_credentials(engine_id)
        if credentials is None and not gateway.registry.has_default_credentials(engine_id):
            continue
        try:
            adapter = await gateway.registry.create_engine(engine_id, credentials)
            if adapter.status().available:
                voices.extend(await adapter.get_voices())
        except GatewayError as exc:
            logger.warning("Skipping voices for %s: %s", engine_id, exc, extra={"engine": engine_id})
    return voices


def _check_voice_id(voice_id: str) -> str | None:
    if voice_id in ("", "default"):
        return None
    if ":" in voice_id and get_definition(voice_id.split(":", 1)[0]) is None:
        raise VoiceNotFound(voice_id)
    return voice_id


def _build_request(
    gateway: Gateway, voice_id: str, body: TextToSpeechBody, output_format: str | None
) -> SynthesisRequest:
    settings = gateway.settings.engines
    audio_format, sample_rate = parse_output_format(output_format or body.output_format, settings.default_format)
    return SynthesisRequest.create(
        body.text,
        max_length=settings.max_text_length,
        voice=_check_voice_id(voice_id),
        format=audio_format,
        sample_rate=sample_rate,
        voice_settings=body.voice_settings.model_dump(exclude_none=True) if body.voice_settings else None,
    )


# --- Voices ---


@router.get("/voices")
async def list_voices(request: Request, admission: Admission = _admitted) -> dict[str, Any]:
    voices = await collect_voices(get_gateway(request), admission)
    return {"voices": [voice_to_dict(v) for v in voices]}


@router.get("/voices/{voice_id}")
async def get_voice(voice_id: str, request: Request, admission: Admission = _admitted) -> dict[str, Any]:
    _check_voice_id(voice_id)
    engine = voice_id.split(":", 1)[0] if ":" in voice_id else None
    for voice in await collect_voices(get_gateway(request), admission, engine):
        if voice.id == voice_id or (engine is None and voice.native_id == voice_id):
            return voice_to_dict(voice)
    raise VoiceNotFound(voice_id)


# --- Synthesis ---


@router.post("/text-to-speech/{voice_id}")
async def text_to_speech(
    voice_id: str,
    body: TextToSpeechBody,
    request: Request,
    output_format: str | None = Query(default=None),
    admission: Admission = _admitted,
) -> Response:
    """Batch synthesis: the whole audio in one response."""
    gateway = get_gateway(request)
    synthesis = _build_request(gateway, voice_id, body, output_format)
    result = await gateway.router.route(synthesis, admission, path="/v1/text-to-speech")

    headers = {
        "X-Audio-Format": str(result.format),
        "X-Sample-Rate": str(result.sample_rate),
        "X-Character-Count": str(result.character_count),
        "X-Engine": result.engine,
        "X-Voice": result.voice,
        **rate_limit_headers(admission),
    }
    if result.format_negotiated:
        headers["X-Format-Negotiated"] = f"{result.requested_format}->{result.format}"
    return Response(content=result.audio, media_type=result.content_type, headers=headers)


@router.post("/text-to-speech/{voice_id}/stream")
async def text_to_speech_stream(
    voice_id: str,
    body: TextToSpeechBody,
    request: Request,
    output_format: str | None = Query(default=None),
    admission: Admission = _admitted,
) -> StreamingResponse:
    """Chunked synthesis; errors before the first byte map to a normal error response."""
    gateway = get_gateway(request)
    synthesis = _build_request(gateway, voice_id, body, output_format)
    handle = await gateway.router.stream(synthesis, admission, path="/v1/text-to-speech/stream")
    headers = {
        "X-Audio-Format": str(handle.format),
        "X-Sample-Rate": str(handle.sample_rate),
        "X-Character-Count": str(len(synthesis.text)),
        "X-Engine": handle.engine,
        **rate_limit_headers(admission),
    }
    return StreamingResponse(handle.chunks, media_type=handle.content_type, headers=headers)


@router.post("/text-to-speech/{voice_id}/with-timestamps")
@router.post("/text-to-speech/{voice_id}/stream/with-timestamps")
async def text_to_speech_with_timestamps(
    voice_id: str,
    body: TextToSpeechBody,
    request: Request,
    output_format: str | None = Query(default=None),
    admission: Admission = _admitted,
) -> JSONResponse:
    """Audio plus per-character alignment, base64 in JSON."""
    gateway = get_gateway(request)
    synthesis = _build_request(gateway, voice_id, body, output_format)
    result = await gateway.router.route(
        synthesis, admission, timestamps=True, path="/v1/text-to-speech/with-timestamps"
    )
    alignment = result.alignment.to_dict() if result.alignment is not None else None
    return JSONResponse(
        {
            "audio_base64": base64.b64encode(result.audio).decode("ascii"),
            "alignment": alignment,
            "normalized_alignment": alignment,
        },
        headers=rate_limit_headers(admission),
    )


# --- Compatibility stubs ---


@router.get("/models")
async def list_models(request: Request, admission: Admission = _admitted) -> list[dict[str, Any]]:
    max_length = get_gateway(request).settings.engines.max_text_length
    return [
        {
            "model_id": "eleven_multilingual_v2",
            "name": "Eleven Multilingual v2",
            "can_do_text_to_speech": True,
            "can_do_voice_conversion": False,
            "can_use_style": True,
            "can_use_speaker_boost": True,
            "token_cost_factor": 1,
            "description": "Default model (routed through the speech gateway)",
            "maximum_text_length_per_request": max_length,
            "languages": [{"language_id": "en", "name": "English"}],
        }
    ]


@router.get("/user")
async def get_user(admission: Admission = _admitted) -> dict[str, Any]:
    key_suffix = admission.key.key_suffix if admission.key is not None else "****"
    return {
        "subscription": {
            "tier": "admin" if admission.is_admin else "free",
            "character_count": 0,
            "character_limit": 1_000_000 if admission.is_admin else 10_000,
            "can_extend_character_limit": False,
            "next_character_count_reset_unix": int(time.time()) + 86400 * 30,
            "status": "active",
        },
        "is_new_user": False,
        "xi_api_key": f"...{key_suffix}",
        "is_onboarding_completed": True,
    }


# --- Engines ---


@router.get("/engines")
async def list_engines(request: Request, admission: Admission = _admitted) -> dict[str, Any]:
    """Engine definitions with the status of each engine's default adapter."""
    gateway = get_gateway(request)
    statuses = gateway.registry.engine_statuses()
    engines = []
    for definition in gateway.registry.definitions():
        engine_id = str(definition.id)
        engines.append(
            {
                **definition.to_dict(),
                "has_default_credentials": gateway.registry.has_default_credentials(engine_id),
                "allowed": admission.can_access_engine(engine_id),
                "status": statuses[engine_id].to_dict(),
            }
        )
    return {"engines": engines, "default_engine": gateway.settings.engines.default_engine}
