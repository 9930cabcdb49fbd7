"""Request Router: admitted SynthesisRequest → adapter → audio.

Path precedence for one request:

  1. timestamps requested          → synthesize_with_timestamps
  2. streaming sink attached       → synthesize_stream, chunks pushed to the sink
  3. otherwise                     → synthesize

A requested capability the adapter lacks fails with UnsupportedCapability
before any vendor call. Every routed request appends exactly one
UsageRecord, whether it succeeded or not.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from src.engines.base import Alignment, AudioFormat, EngineAdapter, SynthesisRequest
from src.engines.definitions import get_definition
from src.errors import (
    EngineNotAvailable,
    Forbidden,
    GatewayError,
    RequestTimeout,
    SpeechGenerationError,
    UnsupportedCapability,
    UnsupportedFormat,
)
from src.monitoring.metrics import (
    synthesis_latency_ms,
    synthesis_requests_total,
    synthesized_characters_total,
)
from src.usage.models import UsageRecord

if TYPE_CHECKING:
    from src.config import EngineSettings
    from src.engines.registry import EngineRegistry
    from src.gate.admission import Admission
    from src.usage.recorder import UsageRecorder

logger = logging.getLogger(__name__)

ChunkSink = Callable[[bytes], Awaitable[None]]
T = TypeVar("T")

FORMAT_POLICY_REJECT = "reject"
FORMAT_POLICY_FALLBACK = "fallback"

# Deterministic fallback order when the requested format is not native
_FORMAT_PREFERENCE = (AudioFormat.WAV, AudioFormat.PCM16, AudioFormat.MP3, AudioFormat.OGG, AudioFormat.OPUS)


class RouteMode:
    BATCH = "batch"
    STREAM = "stream"
    TIMESTAMPS = "timestamps"


@dataclass(frozen=True, slots=True)
class RoutedResult:
    """Audio plus the decisions the router made on the way."""

    audio: bytes
    format: AudioFormat
    requested_format: AudioFormat
    sample_rate: int
    engine: str
    voice: str
    character_count: int
    mode: str
    duration_ms: int
    alignment: Alignment | None = None
    bytes_streamed: int = 0

    @property
    def format_negotiated(self) -> bool:
        return self.format is not self.requested_format

    @property
    def content_type(self) -> str:
        return self.format.content_type


@dataclass(frozen=True, slots=True)
class StreamHandle:
    """A resolved streaming request; iterate ``chunks`` to pull audio."""

    engine: str
    voice: str
    format: AudioFormat
    sample_rate: int
    chunks: AsyncIterator[bytes]

    @property
    def content_type(self) -> str:
        return self.format.content_type


@dataclass(frozen=True, slots=True)
class _Resolved:
    adapter: EngineAdapter
    request: SynthesisRequest


class RequestRouter:
    """Dispatches admitted requests to engine adapters and meters them."""

    def __init__(self, registry: EngineRegistry, recorder: UsageRecorder, settings: EngineSettings) -> None:
        self._registry = registry
        self._recorder = recorder
        self._settings = settings

    # --- Public API ---

    async def route(
        self,
        request: SynthesisRequest,
        admission: Admission,
        *,
        timestamps: bool = False,
        sink: ChunkSink | None = None,
        path: str = "/v1/text-to-speech",
    ) -> RoutedResult:
        """Route one request through exactly one capability path."""
        if timestamps:
            mode = RouteMode.TIMESTAMPS
        elif sink is not None:
            mode = RouteMode.STREAM
        else:
            mode = RouteMode.BATCH

        started = time.monotonic()
        engine = self._engine_for(request)
        status_code = 200
        try:
            resolved = await self._resolve(request, admission, mode)
            engine = resolved.adapter.engine_id
            if mode == RouteMode.STREAM and sink is not None:
                total = 0
                async for chunk in self._stream_chunks(resolved):
                    total += len(chunk)
                    await sink(chunk)
                return self._result(resolved, request, mode, started, b"", bytes_streamed=total)
            if mode == RouteMode.TIMESTAMPS:
                ts_result = await self._with_deadline(
                    resolved, resolved.adapter.synthesize_with_timestamps(resolved.request)
                )
                return self._result(
                    resolved,
                    request,
                    mode,
                    started,
                    ts_result.audio,
                    sample_rate=ts_result.sample_rate,
                    voice=ts_result.voice,
                    alignment=ts_result.alignment,
                )
            result = await self._with_deadline(resolved, resolved.adapter.synthesize(resolved.request))
            return self._result(
                resolved,
                request,
                mode,
                started,
                result.audio,
                sample_rate=result.sample_rate,
                voice=result.voice,
                audio_format=result.format,
            )
        except GatewayError as exc:
            status_code = exc.status_code
            raise
        except asyncio.CancelledError:
            status_code = 499
            raise
        except Exception:
            status_code = 500
            raise
        finally:
            await self._meter(request, admission, engine, mode, path, started, status_code)

    async def stream(
        self,
        request: SynthesisRequest,
        admission: Admission,
        *,
        path: str = "/v1/text-to-speech/stream",
    ) -> StreamHandle:
        """Resolve eagerly, then return a handle over the streamed audio.

        Resolution errors (auth, capability, format) surface from this
        call so an HTTP surface can still answer with a proper status.
        """
        started = time.monotonic()
        try:
            resolved = await self._resolve(request, admission, RouteMode.STREAM)
        except GatewayError as exc:
            await self._meter(
                request, admission, self._engine_for(request), RouteMode.STREAM, path, started, exc.status_code
            )
            raise
        routed = resolved.request
        definition = self._registry.get_definition(resolved.adapter.engine_id)
        return StreamHandle(
            engine=resolved.adapter.engine_id,
            voice=routed.voice or "",
            format=routed.format,
            sample_rate=routed.sample_rate or definition.native_sample_rate,
            chunks=self._metered_stream(resolved, request, admission, path, started),
        )

    # --- Resolution ---

    def _engine_for(self, request: SynthesisRequest) -> str:
        """Explicit engine, else the engine prefix of the voice id, else the default."""
        if request.engine:
            return request.engine
        if request.voice and ":" in request.voice:
            prefix = request.voice.split(":", 1)[0]
            if get_definition(prefix) is not None:
                return prefix
        return self._settings.default_engine

    async def _resolve(self, request: SynthesisRequest, admission: Admission, mode: str) -> _Resolved:
        engine_id = self._engine_for(request)
        definition = self._registry.get_definition(engine_id)
        if not admission.can_access_engine(engine_id):
            raise Forbidden(f"API key does not have access to engine: {engine_id}")

        # Reject unsupported capabilities before touching the vendor
        capabilities = definition.capabilities
        if mode == RouteMode.TIMESTAMPS and not capabilities.supports_timestamps:
            raise UnsupportedCapability(engine_id, "timestamps")
        if mode == RouteMode.STREAM and not capabilities.supports_streaming:
            raise UnsupportedCapability(engine_id, "streaming")
        audio_format = self._negotiate_format(engine_id, request.format, capabilities.supported_formats)

        adapter = await self._registry.create_engine(engine_id, admission.engine_credentials(engine_id))
        status = adapter.status()
        if not status.available:
            raise EngineNotAvailable(engine_id, status.error or status.message)

        voice = request.voice
        if voice and ":" in voice and voice.split(":", 1)[0] != engine_id:
            # A voice id from another engine cannot be honoured; use the adapter default
            voice = None
        if not voice and engine_id == self._settings.default_engine and self._settings.default_voice:
            voice = self._settings.default_voice
        if not voice:
            voice = adapter.default_voice
        if voice and ":" not in voice:
            voice = f"{engine_id}:{voice}"

        return _Resolved(
            adapter=adapter,
            request=request.with_changes(engine=engine_id, voice=voice, format=audio_format),
        )

    def _negotiate_format(
        self, engine_id: str, requested: AudioFormat, supported: frozenset[AudioFormat]
    ) -> AudioFormat:
        if requested in supported:
            return requested
        if self._settings.format_policy == FORMAT_POLICY_REJECT:
            raise UnsupportedFormat(engine_id, requested)
        fallback = next(f for f in _FORMAT_PREFERENCE if f in supported)
        logger.info(
            "Format %s not native to %s, falling back to %s",
            requested,
            engine_id,
            fallback,
            extra={"engine": engine_id},
        )
        return fallback

    # --- Execution ---

    async def _with_deadline(self, resolved: _Resolved, call: Awaitable[T]) -> T:
        engine_id = resolved.adapter.engine_id
        timeout = self._settings.request_timeout
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except TimeoutError as exc:
            raise RequestTimeout(f"Engine {engine_id} did not respond within {timeout:.0f}s") from exc
        except GatewayError:
            raise
        except Exception as exc:
            logger.exception("Engine %s failed", engine_id, extra={"engine": engine_id})
            raise SpeechGenerationError(engine_id, str(exc) or exc.__class__.__name__) from exc

    async def _stream_chunks(self, resolved: _Resolved) -> AsyncIterator[bytes]:
        """Iterate adapter chunks, bounding the whole stream by the request deadline."""
        engine_id = resolved.adapter.engine_id
        timeout = self._settings.request_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        iterator = aiter(resolved.adapter.synthesize_stream(resolved.request))
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise RequestTimeout(f"Engine {engine_id} did not finish within {timeout:.0f}s")
                try:
                    chunk = await asyncio.wait_for(anext(iterator), timeout=remaining)
                except StopAsyncIteration:
                    return
                except TimeoutError as exc:
                    raise RequestTimeout(f"Engine {engine_id} did not finish within {timeout:.0f}s") from exc
                except GatewayError:
                    raise
                except Exception as exc:
                    logger.exception("Engine %s stream failed", engine_id, extra={"engine": engine_id})
                    raise SpeechGenerationError(engine_id, str(exc) or exc.__class__.__name__) from exc
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    async def _metered_stream(
        self,
        resolved: _Resolved,
        request: SynthesisRequest,
        admission: Admission,
        path: str,
        started: float,
    ) -> AsyncIterator[bytes]:
        status_code = 200
        try:
            async for chunk in self._stream_chunks(resolved):
                yield chunk
        except GatewayError as exc:
            status_code = exc.status_code
            raise
        except (asyncio.CancelledError, GeneratorExit):
            status_code = 499
            raise
        finally:
            await self._meter(
                request, admission, resolved.adapter.engine_id, RouteMode.STREAM, path, started, status_code
            )

    def _result(
        self,
        resolved: _Resolved,
        original: SynthesisRequest,
        mode: str,
        started: float,
        audio: bytes,
        *,
        sample_rate: int | None = None,
        voice: str | None = None,
        audio_format: AudioFormat | None = None,
        alignment: Alignment | None = None,
        bytes_streamed: int = 0,
    ) -> RoutedResult:
        routed = resolved.request
        definition = self._registry.get_definition(resolved.adapter.engine_id)
        return RoutedResult(
            audio=audio,
            format=audio_format or routed.format,
            requested_format=original.format,
            sample_rate=sample_rate or routed.sample_rate or definition.native_sample_rate,
            engine=resolved.adapter.engine_id,
            voice=voice or routed.voice or "",
            character_count=len(routed.text),
            mode=mode,
            duration_ms=int((time.monotonic() - started) * 1000),
            alignment=alignment,
            bytes_streamed=bytes_streamed or len(audio),
        )

    # --- Metering ---

    async def _meter(
        self,
        request: SynthesisRequest,
        admission: Admission,
        engine: str,
        mode: str,
        path: str,
        started: float,
        status_code: int,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        outcome = "success" if status_code < 400 else "error"
        synthesis_requests_total.labels(engine=engine, mode=mode, status=outcome).inc()
        synthesis_latency_ms.labels(engine=engine, mode=mode).observe(duration_ms)
        if outcome == "success":
            synthesized_characters_total.labels(engine=engine).inc(len(request.text))

        record = UsageRecord(
            timestamp=datetime.now(UTC),
            key_id=admission.key_id,
            engine=engine,
            path=path,
            character_count=len(request.text),
            duration_ms=duration_ms,
            status_code=status_code,
        )
        try:
            await self._recorder.append_usage(record)
        except Exception:
            logger.warning("Failed to record usage for %s", path, exc_info=True, extra={"key_id": admission.key_id})

        logger.info(
            "Routed %s request: engine=%s status=%d chars=%d",
            mode,
            engine,
            status_code,
            len(request.text),
            extra={"key_id": admission.key_id, "engine": engine, "path": path, "duration_ms": duration_ms},
        )

