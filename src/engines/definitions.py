"""Static definitions of the supported engines.

The set is closed: an engine exists here, with its credential fields and
capabilities, or the gateway does not support it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from src.engines.base import AudioFormat, EngineCapabilities


class EngineId(enum.StrEnum):
    ESPEAK = "espeak"
    AZURE = "azure"
    ELEVENLABS = "elevenlabs"
    OPENAI = "openai"
    GOOGLE = "google"


@dataclass(frozen=True, slots=True)
class CredentialField:
    """One credential value, named after its environment variable."""

    name: str
    label: str
    required: bool = True
    secret: bool = True


@dataclass(frozen=True, slots=True)
class EngineDefinition:
    id: EngineId
    name: str
    description: str
    capabilities: EngineCapabilities
    credential_fields: tuple[CredentialField, ...] = ()
    requires_credentials: bool = False
    default_voice: str | None = None
    native_format: AudioFormat = AudioFormat.WAV
    native_sample_rate: int = 22050

    @property
    def credential_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.credential_fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "requires_credentials": self.requires_credentials,
            "credential_fields": [
                {"name": f.name, "label": f.label, "required": f.required} for f in self.credential_fields
            ],
            "supported_formats": sorted(str(f) for f in self.capabilities.supported_formats),
            "supports_streaming": self.capabilities.supports_streaming,
            "supports_timestamps": self.capabilities.supports_timestamps,
            "supports_ssml": self.capabilities.supports_ssml,
        }


ENGINE_DEFINITIONS: dict[EngineId, EngineDefinition] = {
    EngineId.ESPEAK: EngineDefinition(
        id=EngineId.ESPEAK,
        name="eSpeak",
        description="Local open-source synthesizer (espeak-ng / espeak), no credentials",
        capabilities=EngineCapabilities(
            supported_formats=frozenset({AudioFormat.WAV, AudioFormat.PCM16}),
        ),
        default_voice="en",
        native_format=AudioFormat.WAV,
        native_sample_rate=22050,
    ),
    EngineId.AZURE: EngineDefinition(
        id=EngineId.AZURE,
        name="Azure TTS",
        description="Microsoft Azure Cognitive Services Speech",
        capabilities=EngineCapabilities(
            supported_formats=frozenset({AudioFormat.WAV, AudioFormat.PCM16, AudioFormat.MP3, AudioFormat.OGG}),
            supports_streaming=True,
            supports_ssml=True,
        ),
        credential_fields=(
            CredentialField("AZURE_SPEECH_KEY", "Subscription key"),
            CredentialField("AZURE_SPEECH_REGION", "Region", secret=False),
        ),
        requires_credentials=True,
        default_voice="en-US-JennyNeural",
        native_format=AudioFormat.WAV,
        native_sample_rate=24000,
    ),
    EngineId.ELEVENLABS: EngineDefinition(
        id=EngineId.ELEVENLABS,
        name="ElevenLabs",
        description="ElevenLabs neural voices with streaming and character timestamps",
        capabilities=EngineCapabilities(
            supported_formats=frozenset({AudioFormat.MP3, AudioFormat.PCM16}),
            supports_streaming=True,
            supports_timestamps=True,
        ),
        credential_fields=(CredentialField("ELEVENLABS_API_KEY", "API key"),),
        requires_credentials=True,
        native_format=AudioFormat.MP3,
        native_sample_rate=44100,
    ),
    EngineId.OPENAI: EngineDefinition(
        id=EngineId.OPENAI,
        name="OpenAI TTS",
        description="OpenAI audio speech API",
        capabilities=EngineCapabilities(
            supported_formats=frozenset({AudioFormat.MP3, AudioFormat.WAV, AudioFormat.OPUS, AudioFormat.PCM16}),
            supports_streaming=True,
        ),
        credential_fields=(CredentialField("OPENAI_API_KEY", "API key"),),
        requires_credentials=True,
        default_voice="alloy",
        native_format=AudioFormat.MP3,
        native_sample_rate=24000,
    ),
    EngineId.GOOGLE: EngineDefinition(
        id=EngineId.GOOGLE,
        name="Google Cloud TTS",
        description="Google Cloud Text-to-Speech",
        capabilities=EngineCapabilities(
            supported_formats=frozenset({AudioFormat.MP3, AudioFormat.WAV, AudioFormat.PCM16, AudioFormat.OGG}),
            supports_ssml=True,
        ),
        credential_fields=(
            CredentialField("GOOGLE_API_KEY", "API key", required=False),
            CredentialField("GOOGLE_APPLICATION_CREDENTIALS_JSON", "Service account JSON", required=False),
        ),
        requires_credentials=True,
        default_voice="en-US-Standard-C",
        native_format=AudioFormat.WAV,
        native_sample_rate=24000,
    ),
}


def get_definition(engine_id: str) -> EngineDefinition | None:
    try:
        return ENGINE_DEFINITIONS[EngineId(engine_id)]
    except ValueError:
        return None
