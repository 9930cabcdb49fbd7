"""Engine registry and factory.

Owns every live adapter. Adapters are built lazily on first use, keyed by
(engine_id, credential fingerprint) so one caller's custom credentials are
never served to another, and kept until ``dispose`` invalidates them.

Concurrent ``create_engine`` calls for the same key share one in-flight
construction task; vendor-side setup runs at most once per key.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping
from typing import TYPE_CHECKING

from src.engines.base import (
    NOT_INITIALIZED,
    AdapterState,
    EngineAdapter,
    EngineCapabilities,
    EngineStatus,
    SynthesisRequest,
    SynthesisResult,
    TimestampedResult,
    Voice,
)
from src.engines.credentials import CredentialSource, resolve_credentials
from src.engines.definitions import ENGINE_DEFINITIONS, EngineDefinition, EngineId, get_definition
from src.errors import EngineNotAvailable, MissingCredentials
from src.monitoring.metrics import engine_initializations_total, engines_cached

if TYPE_CHECKING:
    from src.config import EngineSettings

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[EngineDefinition, "EngineSettings"], EngineAdapter]

# Adapters whose initialization failed are rebuilt on demand after this delay
_FAILED_RETRY_SECONDS = 60.0


def default_factories() -> dict[str, AdapterFactory]:
    """Adapter constructors for every engine in the closed set."""
    from src.engines.adapters.azure import AzureAdapter
    from src.engines.adapters.elevenlabs import ElevenLabsAdapter
    from src.engines.adapters.espeak import EspeakAdapter
    from src.engines.adapters.google import GoogleAdapter
    from src.engines.adapters.openai import OpenAIAdapter

    return {
        EngineId.ESPEAK: EspeakAdapter,
        EngineId.AZURE: AzureAdapter,
        EngineId.ELEVENLABS: ElevenLabsAdapter,
        EngineId.OPENAI: OpenAIAdapter,
        EngineId.GOOGLE: GoogleAdapter,
    }


class EngineRegistry:
    """Lifecycle-scoped adapter cache; one instance per gateway."""

    def __init__(
        self,
        settings: EngineSettings,
        default_credentials: Mapping[str, str] | None = None,
        factories: Mapping[str, AdapterFactory] | None = None,
    ) -> None:
        self._settings = settings
        self._defaults: dict[str, str] = dict(default_credentials or {})
        self._factories: dict[str, AdapterFactory] = (
            dict(factories) if factories is not None else default_factories()
        )
        self._cache: dict[tuple[str, str], EngineAdapter] = {}
        self._failed_at: dict[tuple[str, str], float] = {}
        self._inflight: dict[tuple[str, str], asyncio.Task[EngineAdapter]] = {}
        self._lock = asyncio.Lock()

    # --- Introspection (never constructs) ---

    def get_available_engines(self) -> list[str]:
        return [str(e) for e in EngineId]

    def is_engine_supported(self, engine_id: str) -> bool:
        return get_definition(engine_id) is not None

    def get_definition(self, engine_id: str) -> EngineDefinition:
        definition = get_definition(engine_id)
        if definition is None:
            raise EngineNotAvailable(engine_id, "unsupported engine")
        return definition

    def has_default_credentials(self, engine_id: str) -> bool:
        definition = self.get_definition(engine_id)
        if not definition.requires_credentials:
            return True
        resolution = resolve_credentials(definition, None, self._defaults)
        return resolution.source is CredentialSource.DEFAULT

    def get_cached_engine(self, engine_id: str) -> EngineAdapter | None:
        """Adapter built with the system default credentials, if cached."""
        definition = get_definition(engine_id)
        if definition is None:
            return None
        resolution = resolve_credentials(definition, None, self._defaults)
        return self._cache.get((engine_id, resolution.fingerprint))

    def get_initialized_engines(self) -> list[EngineAdapter]:
        return list(self._cache.values())

    def engine_statuses(self) -> dict[str, EngineStatus]:
        """Status per engine: cached default adapter or "Not initialized"."""
        statuses: dict[str, EngineStatus] = {}
        for engine_id in self.get_available_engines():
            adapter = self.get_cached_engine(engine_id)
            statuses[engine_id] = adapter.status() if adapter is not None else NOT_INITIALIZED
        return statuses

    # --- Construction ---

    def set_default_credentials(self, credentials: Mapping[str, str]) -> None:
        """Replace system defaults. Cached adapters keep their credentials until disposed."""
        self._defaults = dict(credentials)

    async def create_engine(self, engine_id: str, credentials: Mapping[str, str] | None = None) -> EngineAdapter:
        definition = self.get_definition(engine_id)
        resolution = resolve_credentials(definition, credentials, self._defaults)
        if resolution.source is CredentialSource.MISSING and definition.requires_credentials:
            raise MissingCredentials(engine_id)

        cache_key = (str(definition.id), resolution.fingerprint)
        async with self._lock:
            adapter = self._cache.get(cache_key)
            if adapter is not None and not self._should_retry(cache_key):
                return adapter
            if adapter is not None:
                logger.info("Retrying failed engine %s", engine_id, extra={"engine": engine_id})
                del self._cache[cache_key]
                self._failed_at.pop(cache_key, None)
                await _close_quietly(adapter)

            task = self._inflight.get(cache_key)
            if task is None:
                task = asyncio.create_task(
                    self._construct(definition, resolution.credentials, resolution.source, cache_key),
                    name=f"engine-init-{engine_id}",
                )
                self._inflight[cache_key] = task

        # shield: a cancelled caller must not abort a construction others await
        return await asyncio.shield(task)

    def _should_retry(self, cache_key: tuple[str, str]) -> bool:
        failed_at = self._failed_at.get(cache_key)
        return failed_at is not None and time.monotonic() - failed_at >= _FAILED_RETRY_SECONDS

    async def _construct(
        self,
        definition: EngineDefinition,
        credentials: dict[str, str],
        source: CredentialSource,
        cache_key: tuple[str, str],
    ) -> EngineAdapter:
        engine_id = str(definition.id)
        try:
            factory = self._factories.get(engine_id)
            if factory is None:
                raise EngineNotAvailable(engine_id, "no adapter registered")

            # Any failure ends up in the cached adapter's status; other engines stay usable
            failure: Exception | None = None
            try:
                adapter: EngineAdapter = factory(definition, self._settings)
            except Exception as exc:
                adapter = UnbuiltAdapter(definition, exc)
                failure = exc
            else:
                try:
                    await adapter.initialize(credentials or None)
                except Exception as exc:
                    adapter.mark_failed(exc)
                    failure = exc

            if failure is not None:
                engine_initializations_total.labels(engine=engine_id, outcome="error").inc()
                logger.warning(
                    "Engine %s failed to initialize (%s credentials): %s",
                    engine_id,
                    source,
                    failure,
                    extra={"engine": engine_id},
                )
            else:
                engine_initializations_total.labels(engine=engine_id, outcome="ready").inc()
                logger.info(
                    "Engine %s initialized (%s credentials): %s",
                    engine_id,
                    source,
                    adapter.status().message,
                    extra={"engine": engine_id},
                )
            async with self._lock:
                if failure is not None:
                    self._failed_at[cache_key] = time.monotonic()
                self._cache[cache_key] = adapter
                engines_cached.set(len(self._cache))
            return adapter
        finally:
            async with self._lock:
                self._inflight.pop(cache_key, None)

    # --- Disposal ---

    async def dispose(self, engine_id: str | None = None) -> int:
        """Drop cached adapters (all, or one engine's). Returns number disposed."""
        async with self._lock:
            keys = [k for k in self._cache if engine_id is None or k[0] == engine_id]
            adapters = [self._cache.pop(k) for k in keys]
            for k in keys:
                self._failed_at.pop(k, None)
            engines_cached.set(len(self._cache))

        for adapter in adapters:
            await _close_quietly(adapter)
        if adapters:
            logger.info("Disposed %d engine adapter(s)%s", len(adapters), f" for {engine_id}" if engine_id else "")
        return len(adapters)

    @staticmethod
    def definitions() -> list[EngineDefinition]:
        return list(ENGINE_DEFINITIONS.values())


async def _close_quietly(adapter: EngineAdapter) -> None:
    try:
        await adapter.close()
    except Exception:
        logger.warning("Error closing engine adapter %s", adapter.engine_id, exc_info=True)


class UnbuiltAdapter:
    """Cached in place of an adapter whose constructor raised.

    Reports the construction error through ``status()`` and refuses every
    synthesis call, so the failure is visible in listings and retried on
    the normal schedule.
    """

    def __init__(self, definition: EngineDefinition, exc: BaseException) -> None:
        self._definition = definition
        self._state = AdapterState(str(definition.id))
        self._state.mark_failed(exc)

    @property
    def engine_id(self) -> str:
        return str(self._definition.id)

    @property
    def capabilities(self) -> EngineCapabilities:
        return self._definition.capabilities

    @property
    def default_voice(self) -> str | None:
        return None

    async def initialize(self, credentials: dict[str, str] | None = None) -> None:
        self._state.require_ready()

    def mark_failed(self, exc: BaseException) -> None:
        self._state.mark_failed(exc)

    async def get_voices(self) -> list[Voice]:
        return []

    async def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        raise self._unavailable()

    def synthesize_stream(self, request: SynthesisRequest) -> AsyncIterator[bytes]:
        raise self._unavailable()

    async def synthesize_with_timestamps(self, request: SynthesisRequest) -> TimestampedResult:
        raise self._unavailable()

    def status(self) -> EngineStatus:
        return self._state.status()

    async def close(self) -> None:
        return None

    def _unavailable(self) -> EngineNotAvailable:
        return EngineNotAvailable(self.engine_id, self._state.error or "not initialized")
