"""Unit tests for the request router."""

from __future__ import annotations

import pytest

from src.config import EngineSettings
from src.engines.base import AudioFormat, SynthesisRequest
from src.engines.definitions import EngineId
from src.engines.registry import EngineRegistry
from src.errors import (
    EngineNotAvailable,
    Forbidden,
    RequestTimeout,
    SpeechGenerationError,
    UnsupportedCapability,
    UnsupportedFormat,
    VendorUnreachable,
)
from src.gate.admission import Admission
from src.keys.models import ApiKey, EngineKeyConfig
from src.routing.router import RequestRouter, RouteMode
from src.usage.recorder import InMemoryUsageStore, UsageRecorder
from tests.unit.mocks.mock_engine import MockEngineFactory

DEFAULTS = {
    "AZURE_SPEECH_KEY": "azure-key",
    "AZURE_SPEECH_REGION": "westeurope",
    "ELEVENLABS_API_KEY": "sk_eleven",
}

LOCAL = Admission(key_id="local", is_admin=True, authenticated=False)


class _Harness:
    def __init__(self, factory: MockEngineFactory | None = None, **settings: object) -> None:
        self.factory = factory or MockEngineFactory()
        self.settings = EngineSettings(**settings)  # type: ignore[arg-type]
        self.registry = EngineRegistry(
            self.settings,
            default_credentials=DEFAULTS,
            factories={str(engine): self.factory for engine in EngineId},
        )
        self.recorder = UsageRecorder(InMemoryUsageStore())
        self.router = RequestRouter(self.registry, self.recorder, self.settings)


def _request(text: str = "hello", **kwargs: object) -> SynthesisRequest:
    return SynthesisRequest.create(text, max_length=5000, **kwargs)  # type: ignore[arg-type]


class TestBatchRouting:
    @pytest.mark.asyncio
    async def test_default_engine_and_voice(self) -> None:
        h = _Harness()
        result = await h.router.route(_request(), LOCAL)

        assert result.engine == "espeak"
        assert result.voice == "espeak:en"
        assert result.mode == RouteMode.BATCH
        assert result.audio.startswith(b"RIFF")
        assert result.character_count == 5
        assert h.factory.for_engine("espeak")[0].synthesize_count == 1

    @pytest.mark.asyncio
    async def test_voice_prefix_selects_engine(self) -> None:
        h = _Harness()
        result = await h.router.route(_request(voice="azure:en-GB-RyanNeural"), LOCAL)
        assert result.engine == "azure"
        assert result.voice == "azure:en-GB-RyanNeural"

    @pytest.mark.asyncio
    async def test_voice_from_other_engine_replaced(self) -> None:
        h = _Harness()
        result = await h.router.route(_request(engine="espeak", voice="azure:en-US-JennyNeural"), LOCAL)

        assert result.engine == "espeak"
        assert h.factory.for_engine("espeak")[0].requests[0].voice == "espeak:en"

    @pytest.mark.asyncio
    async def test_bare_voice_gets_engine_prefix(self) -> None:
        h = _Harness()
        await h.router.route(_request(engine="azure", voice="en-US-AriaNeural"), LOCAL)
        assert h.factory.for_engine("azure")[0].requests[0].voice == "azure:en-US-AriaNeural"

    @pytest.mark.asyncio
    async def test_configured_default_voice(self) -> None:
        h = _Harness(default_voice="mb-en1")
        result = await h.router.route(_request(), LOCAL)
        assert result.voice == "espeak:mb-en1"


class TestFormatNegotiation:
    @pytest.mark.asyncio
    async def test_fallback_uses_preference_order(self) -> None:
        h = _Harness()
        result = await h.router.route(_request(format="mp3"), LOCAL)

        assert result.format is AudioFormat.WAV
        assert result.requested_format is AudioFormat.MP3
        assert result.format_negotiated

    @pytest.mark.asyncio
    async def test_fallback_skips_unsupported_preferences(self) -> None:
        h = _Harness()
        result = await h.router.route(_request(engine="elevenlabs", format="wav"), LOCAL)
        assert result.format is AudioFormat.PCM16

    @pytest.mark.asyncio
    async def test_reject_policy(self) -> None:
        h = _Harness(format_policy="reject")
        with pytest.raises(UnsupportedFormat):
            await h.router.route(_request(format="mp3"), LOCAL)
        assert h.factory.created == []


class TestCapabilities:
    """Unsupported capabilities fail before any vendor call."""

    @pytest.mark.asyncio
    async def test_timestamps_unsupported(self) -> None:
        h = _Harness()
        with pytest.raises(UnsupportedCapability):
            await h.router.route(_request(), LOCAL, timestamps=True)

        assert h.factory.created == []

    @pytest.mark.asyncio
    async def test_timestamps_take_precedence_over_sink(self) -> None:
        h = _Harness()
        chunks: list[bytes] = []

        async def sink(chunk: bytes) -> None:
            chunks.append(chunk)

        result = await h.router.route(_request(engine="elevenlabs"), LOCAL, timestamps=True, sink=sink)

        adapter = h.factory.for_engine("elevenlabs")[0]
        assert result.mode == RouteMode.TIMESTAMPS
        assert result.alignment is not None
        assert result.alignment.characters == list("hello")
        assert adapter.timestamps_count == 1
        assert adapter.synthesize_count == 0
        assert adapter.stream_count == 0
        assert chunks == []

    @pytest.mark.asyncio
    async def test_streaming_unsupported(self) -> None:
        h = _Harness()

        async def sink(chunk: bytes) -> None:
            raise AssertionError("no chunks expected")

        with pytest.raises(UnsupportedCapability):
            await h.router.route(_request(engine="google"), LOCAL, sink=sink)

    @pytest.mark.asyncio
    async def test_streaming_pushes_to_sink(self) -> None:
        h = _Harness()
        chunks: list[bytes] = []

        async def sink(chunk: bytes) -> None:
            chunks.append(chunk)

        result = await h.router.route(_request(engine="azure"), LOCAL, sink=sink)

        assert result.mode == RouteMode.STREAM
        assert len(chunks) > 1
        assert result.bytes_streamed == sum(len(c) for c in chunks)
        assert result.audio == b""


class TestFailures:
    @pytest.mark.asyncio
    async def test_forbidden_engine(self) -> None:
        key, _ = ApiKey.create("limited", engine_config={"azure": EngineKeyConfig(enabled=False)})
        admission = Admission(key_id=key.id, is_admin=False, authenticated=True, key=key)

        with pytest.raises(Forbidden):
            await _Harness().router.route(_request(engine="azure"), admission)

    @pytest.mark.asyncio
    async def test_engine_failed_to_initialize(self) -> None:
        h = _Harness(MockEngineFactory(init_error=VendorUnreachable("azure", "down")))
        with pytest.raises(EngineNotAvailable):
            await h.router.route(_request(engine="azure"), LOCAL)

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        h = _Harness(MockEngineFactory(delay=1.0), request_timeout=0.05)
        with pytest.raises(RequestTimeout):
            await h.router.route(_request(), LOCAL)

    @pytest.mark.asyncio
    async def test_adapter_exception_wrapped(self) -> None:
        h = _Harness(MockEngineFactory(error=RuntimeError("boom")))
        with pytest.raises(SpeechGenerationError) as exc_info:
            await h.router.route(_request(), LOCAL)
        assert "boom" in str(exc_info.value)


class TestUsageMetering:
    """Every routed request appends exactly one usage record."""

    @pytest.mark.asyncio
    async def test_success_recorded(self) -> None:
        h = _Harness()
        await h.router.route(_request("hi there"), LOCAL, path="/tts")

        records = await h.recorder.get_usage()
        assert len(records) == 1
        assert records[0].key_id == "local"
        assert records[0].engine == "espeak"
        assert records[0].path == "/tts"
        assert records[0].character_count == 8
        assert records[0].status_code == 200

    @pytest.mark.asyncio
    async def test_failure_recorded_with_status(self) -> None:
        h = _Harness()
        with pytest.raises(UnsupportedCapability):
            await h.router.route(_request(), LOCAL, timestamps=True)

        records = await h.recorder.get_usage()
        assert [r.status_code for r in records] == [400]

    @pytest.mark.asyncio
    async def test_timeout_recorded(self) -> None:
        h = _Harness(MockEngineFactory(delay=1.0), request_timeout=0.05)
        with pytest.raises(RequestTimeout):
            await h.router.route(_request(), LOCAL)
        assert [r.status_code for r in await h.recorder.get_usage()] == [504]


class TestStreamHandle:
    @pytest.mark.asyncio
    async def test_metered_after_consumption(self) -> None:
        h = _Harness()
        handle = await h.router.stream(_request(engine="azure"), LOCAL, path="/stream")

        assert handle.engine == "azure"
        assert await h.recorder.get_usage() == []

        audio = b"".join([chunk async for chunk in handle.chunks])
        assert audio

        records = await h.recorder.get_usage()
        assert len(records) == 1
        assert records[0].path == "/stream"
        assert records[0].status_code == 200

    @pytest.mark.asyncio
    async def test_resolution_error_raised_eagerly(self) -> None:
        h = _Harness()
        with pytest.raises(UnsupportedCapability):
            await h.router.stream(_request(engine="espeak"), LOCAL)
        assert [r.status_code for r in await h.recorder.get_usage()] == [400]
