"""Engine adapter interface and synthesis data types."""

from __future__ import annotations

import enum
import re
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from src.errors import EngineNotAvailable, InvalidRequest, TextTooLong

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

# Hard ceiling regardless of surface-specific limits
ABSOLUTE_MAX_TEXT_LENGTH = 10_000

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")


class AudioFormat(enum.StrEnum):
    """Audio encodings an adapter may produce."""

    WAV = "wav"
    MP3 = "mp3"
    PCM16 = "pcm16"
    OGG = "ogg"
    OPUS = "opus"

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self]

    @classmethod
    def parse(cls, value: str | AudioFormat) -> AudioFormat:
        """Accept enum members, names and the vendor alias "pcm"."""
        if isinstance(value, AudioFormat):
            return value
        normalized = str(value).strip().lower()
        if normalized == "pcm":
            return cls.PCM16
        try:
            return cls(normalized)
        except ValueError:
            msg = f"Unsupported audio format: {value!r}"
            raise InvalidRequest(msg) from None


_CONTENT_TYPES = {
    AudioFormat.WAV: "audio/wav",
    AudioFormat.MP3: "audio/mpeg",
    AudioFormat.PCM16: "audio/pcm",
    AudioFormat.OGG: "audio/ogg",
    AudioFormat.OPUS: "audio/opus",
}


def normalize_text(text: str) -> str:
    """Strip control characters and collapse whitespace."""
    text = _CONTROL_CHARS_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def native_voice_id(voice_id: str) -> str:
    """Strip the "engine:" prefix from a gateway voice id."""
    return voice_id.split(":", 1)[1] if ":" in voice_id else voice_id


@dataclass(frozen=True, slots=True)
class Voice:
    """A voice offered by an engine. ``id`` is "engine:native_id"."""

    engine: str
    native_id: str
    name: str
    language: str = ""
    language_code: str = "en"
    gender: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return f"{self.engine}:{self.native_id}"


@dataclass(frozen=True, slots=True)
class VoiceSettings:
    """Optional tunables, each bounded to its documented range."""

    stability: float | None = None
    similarity_boost: float | None = None
    style: float | None = None
    speed: float | None = None
    pitch: float | None = None
    use_speaker_boost: bool | None = None

    _RANGES = {
        "stability": (0.0, 1.0),
        "similarity_boost": (0.0, 1.0),
        "style": (0.0, 1.0),
        "speed": (0.25, 4.0),
        "pitch": (-20.0, 20.0),
    }

    def __post_init__(self) -> None:
        for name, (low, high) in self._RANGES.items():
            value = getattr(self, name)
            if value is not None and not low <= value <= high:
                msg = f"voice_settings.{name} must be between {low} and {high}"
                raise InvalidRequest(msg)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> VoiceSettings | None:
        if not data:
            return None
        try:
            return cls(
                stability=_opt_float(data.get("stability")),
                similarity_boost=_opt_float(data.get("similarity_boost")),
                style=_opt_float(data.get("style")),
                speed=_opt_float(data.get("speed")),
                pitch=_opt_float(data.get("pitch")),
                use_speaker_boost=(
                    bool(data["use_speaker_boost"]) if data.get("use_speaker_boost") is not None else None
                ),
            )
        except (TypeError, ValueError) as exc:
            msg = f"Invalid voice_settings: {exc}"
            raise InvalidRequest(msg) from exc


def _opt_float(value: Any) -> float | None:
    return float(value) if value is not None else None


@dataclass(frozen=True, slots=True)
class SynthesisRequest:
    """Immutable, validated synthesis request.

    ``engine`` and ``voice`` may be None until the router fills in the
    configured default engine and the adapter's default voice.
    """

    text: str
    engine: str | None = None
    voice: str | None = None
    format: AudioFormat = AudioFormat.WAV
    sample_rate: int | None = None
    voice_settings: VoiceSettings | None = None

    def __post_init__(self) -> None:
        if not self.text or not self.text.strip():
            msg = "Text must not be empty"
            raise InvalidRequest(msg)
        if len(self.text) > ABSOLUTE_MAX_TEXT_LENGTH:
            raise TextTooLong(len(self.text), ABSOLUTE_MAX_TEXT_LENGTH)
        if not isinstance(self.format, AudioFormat):
            object.__setattr__(self, "format", AudioFormat.parse(self.format))
        if self.sample_rate is not None and (
            isinstance(self.sample_rate, bool) or not isinstance(self.sample_rate, int) or self.sample_rate <= 0
        ):
            msg = "sample_rate must be a positive integer"
            raise InvalidRequest(msg)

    @classmethod
    def create(
        cls,
        text: str,
        *,
        max_length: int,
        engine: str | None = None,
        voice: str | None = None,
        format: str | AudioFormat = AudioFormat.WAV,
        sample_rate: int | None = None,
        voice_settings: VoiceSettings | dict[str, Any] | None = None,
    ) -> SynthesisRequest:
        """Normalize text and enforce a surface-specific length bound."""
        if not isinstance(text, str):
            msg = "Text must be a string"
            raise InvalidRequest(msg)
        normalized = normalize_text(text)
        if len(normalized) > max_length:
            raise TextTooLong(len(normalized), max_length)
        if isinstance(voice_settings, dict):
            voice_settings = VoiceSettings.from_dict(voice_settings)
        return cls(
            text=normalized,
            engine=engine or None,
            voice=voice or None,
            format=AudioFormat.parse(format),
            sample_rate=sample_rate,
            voice_settings=voice_settings,
        )

    def with_changes(self, **changes: Any) -> SynthesisRequest:
        return replace(self, **changes)

    @property
    def native_voice(self) -> str | None:
        return native_voice_id(self.voice) if self.voice else None


@dataclass(frozen=True, slots=True)
class SynthesisResult:
    audio: bytes
    format: AudioFormat
    sample_rate: int
    engine: str
    voice: str
    character_count: int

    @property
    def content_type(self) -> str:
        return self.format.content_type


@dataclass(frozen=True, slots=True)
class Alignment:
    """Per-character timing, in seconds from the start of the audio."""

    characters: list[str]
    character_start_times_seconds: list[float]
    character_end_times_seconds: list[float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "characters": list(self.characters),
            "character_start_times_seconds": list(self.character_start_times_seconds),
            "character_end_times_seconds": list(self.character_end_times_seconds),
        }


@dataclass(frozen=True, slots=True)
class TimestampedResult:
    audio: bytes
    alignment: Alignment
    format: AudioFormat
    sample_rate: int
    engine: str
    voice: str
    character_count: int


@dataclass(frozen=True, slots=True)
class EngineCapabilities:
    supported_formats: frozenset[AudioFormat]
    supports_streaming: bool = False
    supports_timestamps: bool = False
    supports_ssml: bool = False

    def supports_format(self, audio_format: AudioFormat) -> bool:
        return audio_format in self.supported_formats


@dataclass(frozen=True, slots=True)
class EngineStatus:
    available: bool
    voice_count: int
    message: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "available": self.available,
            "voice_count": self.voice_count,
            "message": self.message,
        }
        if self.error:
            data["error"] = self.error
        return data


NOT_INITIALIZED = EngineStatus(available=False, voice_count=0, message="Not initialized")


@runtime_checkable
class EngineAdapter(Protocol):
    """Capability contract every vendor adapter implements.

    Adapters are credential-bound: ``initialize`` receives the resolved
    credential set once, records success or failure in ``status()``, and
    raises ``MissingCredentials`` / ``VendorUnreachable`` on failure.
    ``mark_failed`` lets the owner record a failure the adapter did not
    catch itself.
    Optional capabilities raise ``UnsupportedCapability`` when absent.
    """

    @property
    def engine_id(self) -> str: ...

    @property
    def capabilities(self) -> EngineCapabilities: ...

    @property
    def default_voice(self) -> str | None: ...

    async def initialize(self, credentials: dict[str, str] | None = None) -> None: ...

    def mark_failed(self, exc: BaseException) -> None: ...

    async def get_voices(self) -> list[Voice]: ...

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult: ...

    def synthesize_stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]: ...

    async def synthesize_with_timestamps(self, request: SynthesisRequest) -> TimestampedResult: ...

    def status(self) -> EngineStatus: ...

    async def close(self) -> None: ...


class AdapterState:
    """Initialization bookkeeping shared by adapters through composition."""

    def __init__(self, engine_id: str) -> None:
        self.engine_id = engine_id
        self.voices: list[Voice] = []
        self.initialized = False
        self.error: str | None = None
        self.failed_at: float | None = None

    def mark_ready(self, voices: list[Voice]) -> None:
        self.voices = list(voices)
        self.initialized = True
        self.error = None
        self.failed_at = None

    def mark_failed(self, exc: BaseException) -> None:
        self.initialized = False
        self.error = str(exc) or exc.__class__.__name__
        self.failed_at = time.monotonic()

    def reset(self) -> None:
        self.voices = []
        self.initialized = False

    def status(self) -> EngineStatus:
        if self.error is not None:
            return EngineStatus(False, len(self.voices), "Error", self.error)
        if not self.initialized:
            return NOT_INITIALIZED
        return EngineStatus(True, len(self.voices), f"Ready ({len(self.voices)} voices)")

    def require_ready(self) -> None:
        if not self.initialized:
            raise EngineNotAvailable(self.engine_id, self.error or "not initialized")

    def default_voice(self, configured: str | None = None) -> str | None:
        if configured:
            return configured if ":" in configured else f"{self.engine_id}:{configured}"
        return self.voices[0].id if self.voices else None
