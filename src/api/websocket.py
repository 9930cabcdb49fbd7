"""WebSocket streaming endpoint for devices and CLI clients.

Auth: API key via ?api_key= (or ?key=, X-API-Key, xi-api-key headers),
authenticated at connect time; a rejected key gets an error frame and
close code 4001. Each speak passes the gate again and counts against the
key's rate-limit window (RATE_LIMITED error frame with retry_after).

Commands (JSON text frames): ``speak`` (default), ``voices``, ``engines``.
One speak exchange runs at a time per connection; a second one while the
first is in flight is answered with BUSY. Disconnecting cancels only this
connection's exchange.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketState

from src.api.deps import extract_api_key, get_gateway
from src.api.embedded import engine_summaries, speak_for_device
from src.api.tts import collect_voices
from src.errors import GatewayError, InvalidRequest, RateLimited, Unauthorized
from src.monitoring.metrics import websocket_exchanges_total, websocket_sessions_active
from src.streaming.frames import EndFrame, FrameType, MetaFrame, chunk_audio, encode, error_frame

if TYPE_CHECKING:
    from src.gate.admission import Admission
    from src.gateway import Gateway

logger = logging.getLogger(__name__)
router = APIRouter()

CLOSE_UNAUTHORIZED = 4001
CLOSE_UNAVAILABLE = 1011


class _Connection:
    """Serializes sends; the reader loop and the exchange task share one socket."""

    def __init__(self, websocket: WebSocket, session_id: str) -> None:
        self.websocket = websocket
        self.session_id = session_id
        self._send_lock = asyncio.Lock()

    @property
    def open(self) -> bool:
        return self.websocket.application_state == WebSocketState.CONNECTED

    async def send_json(self, data: dict[str, Any]) -> None:
        async with self._send_lock:
            if self.open:
                await self.websocket.send_text(encode(data))

    async def send_bytes(self, data: bytes) -> None:
        async with self._send_lock:
            if self.open:
                await self.websocket.send_bytes(data)

    async def send_error(self, message: str, code: str, **fields: Any) -> None:
        async with self._send_lock:
            if self.open:
                await self.websocket.send_text(error_frame(message, code, **fields))


@router.websocket("/ws")
async def speech_socket(websocket: WebSocket) -> None:
    gateway = get_gateway(websocket)
    session_id = uuid.uuid4().hex[:12]

    presented_key = extract_api_key(websocket)
    try:
        admission = await gateway.gate.admit(presented_key, count=False)
    except GatewayError as exc:
        await _reject(websocket, exc, session_id)
        return

    await websocket.accept()
    conn = _Connection(websocket, session_id)
    websocket_sessions_active.inc()
    logger.info("WebSocket connected: key=%s", admission.key_id, extra={"session_id": session_id})

    exchange: asyncio.Task[None] | None = None
    idle_timeout = gateway.settings.embedded.ws_idle_timeout
    try:
        while True:
            try:
                message = await asyncio.wait_for(websocket.receive(), timeout=idle_timeout)
            except TimeoutError:
                logger.info("WebSocket idle for %ds, closing", idle_timeout, extra={"session_id": session_id})
                await websocket.close(code=1000, reason="Idle timeout")
                break

            if message["type"] == "websocket.disconnect":
                break
            if message.get("text") is None:
                await conn.send_error("Binary frames are not accepted", "INVALID_FRAME")
                continue

            try:
                command = json.loads(message["text"])
            except json.JSONDecodeError:
                await conn.send_error("Invalid JSON", "INVALID_JSON")
                continue
            if not isinstance(command, dict):
                await conn.send_error("Command must be a JSON object", "INVALID_JSON")
                continue

            command_type = command.get("type") or FrameType.SPEAK
            if command_type == FrameType.SPEAK:
                if exchange is not None and not exchange.done():
                    await conn.send_error("Another speak request is in progress", "BUSY")
                    continue
                exchange = asyncio.create_task(
                    _handle_speak(conn, gateway, presented_key, command), name=f"ws-speak-{session_id}"
                )
            elif command_type == FrameType.VOICES:
                await _handle_voices(conn, gateway, admission, command)
            elif command_type == FrameType.ENGINES:
                engines = engine_summaries(gateway)
                await conn.send_json({"type": "engines", "engines": engines, "count": len(engines)})
            else:
                await conn.send_error(f"Unknown command type: {command_type}", "UNKNOWN_COMMAND")
    finally:
        if exchange is not None and not exchange.done():
            exchange.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await exchange
        websocket_sessions_active.dec()
        logger.info("WebSocket disconnected", extra={"session_id": session_id})


async def _reject(websocket: WebSocket, exc: GatewayError, session_id: str) -> None:
    """Report an admission failure on the socket, then close it."""
    if isinstance(exc, Unauthorized):
        close_code, reason = CLOSE_UNAUTHORIZED, "Unauthorized"
    else:
        close_code, reason = CLOSE_UNAVAILABLE, exc.code
    logger.warning("WebSocket rejected: %s", exc.code, extra={"session_id": session_id})
    await websocket.accept()
    await websocket.send_text(error_frame(exc.message, exc.code))
    await websocket.close(code=close_code, reason=reason)


async def _handle_speak(
    conn: _Connection, gateway: Gateway, presented_key: str | None, command: dict[str, Any]
) -> None:
    """One exchange: meta frame, audio frame(s), end frame; or one error frame.

    Every exchange passes the gate again, so the per-key window counts speaks.
    """
    defaults = gateway.settings.embedded
    try:
        admission = await gateway.gate.admit(presented_key)
        text = command.get("text")
        if not isinstance(text, str) or not text.strip():
            raise InvalidRequest('Missing or empty "text" field')
        stream = bool(command.get("stream", False))
        chunk_size = _int_field(command, "chunk_size", defaults.ws_chunk_size)
        if chunk_size <= 0:
            raise InvalidRequest("chunk_size must be positive")

        result = await speak_for_device(
            gateway,
            admission,
            text=text,
            engine=command.get("engine") or None,
            voice=command.get("voice") or None,
            format=command.get("format") or None,
            sample_rate=_int_field(command, "sample_rate", None),
            max_length=defaults.ws_max_text_length,
            path="/ws",
        )

        chunks = chunk_audio(result.audio, chunk_size) if stream else [result.audio]
        meta = MetaFrame(
            format=str(result.format),
            sample_rate=result.sample_rate,
            engine=result.engine,
            voice=result.voice,
            bytes=len(result.audio),
            stream=stream,
            chunk_size=chunk_size if stream else len(result.audio),
            chunks=len(chunks),
        )
        await conn.send_json(meta.to_dict())
        for chunk in chunks:
            await conn.send_bytes(chunk)
        await conn.send_json(EndFrame(bytes=len(result.audio), chunks=len(chunks)).to_dict())
        websocket_exchanges_total.labels(outcome="completed").inc()
    except asyncio.CancelledError:
        websocket_exchanges_total.labels(outcome="cancelled").inc()
        raise
    except RateLimited as exc:
        websocket_exchanges_total.labels(outcome="rate_limited").inc()
        await conn.send_error(exc.message, exc.code, retry_after=exc.retry_after)
    except GatewayError as exc:
        websocket_exchanges_total.labels(outcome="failed").inc()
        await conn.send_error(exc.message, exc.code)
    except Exception:
        websocket_exchanges_total.labels(outcome="failed").inc()
        logger.exception("WebSocket speak failed", extra={"session_id": conn.session_id})
        with contextlib.suppress(Exception):
            await conn.send_error("Speech generation failed", "INTERNAL_ERROR")


async def _handle_voices(conn: _Connection, gateway: Gateway, admission: Admission, command: dict[str, Any]) -> None:
    engine = command.get("engine") or None
    voices = [
        {"id": v.id, "name": v.name, "engine": v.engine, "language": v.language_code}
        for v in await collect_voices(gateway, admission, engine)
    ]
    await conn.send_json({"type": "voices", "voices": voices, "count": len(voices)})


def _int_field(command: dict[str, Any], name: str, default: int | None) -> int | None:
    value = command.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise InvalidRequest(f"{name} must be a number")
    return int(value)
