"""Local eSpeak adapter.

Runs espeak-ng (falling back to espeak) as a subprocess; text goes in on
stdin and WAV comes out on stdout. No credentials, no network.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from typing import TYPE_CHECKING

from src.audio.wav import extract_pcm, wav_info
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
from src.errors import EngineNotAvailable, SpeechGenerationError, UnsupportedCapability, VendorUnreachable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.config import EngineSettings
    from src.engines.definitions import EngineDefinition

logger = logging.getLogger(__name__)

_BINARIES = ("espeak-ng", "espeak")
_BASE_WORDS_PER_MINUTE = 175
_PROCESS_TIMEOUT = 30.0


def parse_voice_list(output: str) -> list[Voice]:
    """Parse ``espeak --voices`` output (first line is the header)."""
    voices: list[Voice] = []
    seen: set[str] = set()
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 4:
            continue
        language, age_gender, name = parts[1], parts[2], parts[3]
        if language in seen:
            continue
        seen.add(language)
        voices.append(
            Voice(
                engine="espeak",
                native_id=language,
                name=f"{name} (eSpeak)",
                language=language,
                language_code=language.split("-")[0] or "en",
                gender="female" if "F" in age_gender else "male",
            )
        )
    return voices


class EspeakAdapter:
    """eSpeak speech via subprocess."""

    def __init__(self, definition: EngineDefinition, settings: EngineSettings) -> None:
        self._definition = definition
        self._settings = settings
        self._state = AdapterState(str(definition.id))
        self._binary: str | None = None

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
            self._binary = self._find_binary()
            voices_output = await self._run(["--voices"])
            voices = parse_voice_list(voices_output.decode(errors="replace"))
            if not voices:
                voices = [Voice(engine="espeak", native_id="en", name="en (eSpeak)", language="en")]
        except Exception as exc:
            self._state.mark_failed(exc)
            raise
        self._state.mark_ready(voices)
        logger.info("eSpeak initialized with %s, %d voices", self._binary, len(voices))

    @staticmethod
    def _find_binary() -> str:
        for name in _BINARIES:
            path = shutil.which(name)
            if path:
                return path
        raise VendorUnreachable("espeak", "espeak is not installed or not in PATH")

    async def _run(self, args: list[str], stdin: bytes | None = None) -> bytes:
        binary = self._binary
        if binary is None:
            raise EngineNotAvailable(self.engine_id, "not initialized")
        proc = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout=_PROCESS_TIMEOUT)
        except (TimeoutError, asyncio.CancelledError):
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:200]
            raise SpeechGenerationError("espeak", f"exit code {proc.returncode}: {detail}")
        return stdout

    async def get_voices(self) -> list[Voice]:
        return list(self._state.voices)

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        self._state.require_ready()
        voice = request.native_voice or self._definition.default_voice or "en"

        args = ["-v", voice, "--stdout"]
        settings = request.voice_settings
        if settings is not None and settings.speed is not None:
            args += ["-s", str(round(_BASE_WORDS_PER_MINUTE * settings.speed))]
        if settings is not None and settings.pitch is not None:
            # -20..20 semitone-style range onto espeak's 0..99
            args += ["-p", str(max(0, min(99, round(50 + settings.pitch * 2.5))))]

        audio = await self._run(args, stdin=request.text.encode())
        if not audio:
            raise SpeechGenerationError("espeak", "no audio produced")

        info = wav_info(audio)
        sample_rate = info.sample_rate if info else self._definition.native_sample_rate
        if request.format is AudioFormat.PCM16:
            audio, _ = extract_pcm(audio)

        return SynthesisResult(
            audio=audio,
            format=request.format,
            sample_rate=sample_rate,
            engine=self.engine_id,
            voice=f"espeak:{voice}",
            character_count=len(request.text),
        )

    def synthesize_stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]:
        raise UnsupportedCapability(self.engine_id, "streaming")

    async def synthesize_with_timestamps(self, request: SynthesisRequest) -> TimestampedResult:
        raise UnsupportedCapability(self.engine_id, "timestamps")

    def status(self) -> EngineStatus:
        return self._state.status()

    def mark_failed(self, exc: BaseException) -> None:
        self._state.mark_failed(exc)

    async def close(self) -> None:
        self._state.reset()
