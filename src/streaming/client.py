"""WebSocket streaming client for the /ws endpoint.

Drives one StreamingSession per call over an aiohttp WebSocket. The whole
exchange, connect included, is bounded by ``timeout``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from src.engines.base import AudioFormat, SynthesisRequest
from src.errors import SessionFailed
from src.streaming.frames import ControlFrame, ErrorFrame, FrameType, MetaFrame, encode, parse_text_frame
from src.streaming.session import StreamingSession

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class SpeechResponse:
    audio: bytes
    meta: MetaFrame | None
    chunks: int


class StreamingClient:
    """Speaks to a gateway over WebSocket, one exchange per connection."""

    def __init__(self, url: str, api_key: str | None = None, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._url = url
        self._api_key = api_key
        self._timeout = timeout

    @property
    def _params(self) -> dict[str, str]:
        return {"api_key": self._api_key} if self._api_key else {}

    async def speak(
        self,
        text: str,
        *,
        engine: str | None = None,
        voice: str | None = None,
        format: str | AudioFormat = AudioFormat.PCM16,
        sample_rate: int | None = None,
        stream: bool | None = None,
    ) -> SpeechResponse:
        """Synthesize ``text`` and return the concatenated audio frames.

        Raises SessionFailed (server error frame), ClosedBeforeData or
        SessionTimeout.
        """
        request = SynthesisRequest(
            text=text, engine=engine, voice=voice, format=AudioFormat.parse(format), sample_rate=sample_rate
        )
        session = StreamingSession()
        try:
            return await asyncio.wait_for(self._exchange(session, request, stream), timeout=self._timeout)
        except TimeoutError:
            session.on_timeout(self._timeout)
            logger.warning("Exchange timed out after %.1fs", self._timeout, extra={"session_id": session.session_id})
            if session.failure is None:
                raise SessionFailed(f"No complete response within {self._timeout:.1f}s") from None
            raise session.failure from None

    async def command(self, frame_type: str, **fields: Any) -> dict[str, Any]:
        """Send a listing command (voices, engines) and return the reply payload."""
        try:
            return await asyncio.wait_for(self._command(frame_type, fields), timeout=self._timeout)
        except TimeoutError:
            raise SessionFailed(f"No {frame_type} reply within {self._timeout:.1f}s") from None

    async def voices(self, engine: str | None = None) -> list[dict[str, Any]]:
        fields = {"engine": engine} if engine else {}
        reply = await self.command(FrameType.VOICES, **fields)
        return list(reply.get("voices", []))

    async def engines(self) -> list[dict[str, Any]]:
        reply = await self.command(FrameType.ENGINES)
        return list(reply.get("engines", []))

    # --- Internals ---

    async def _exchange(
        self, session: StreamingSession, request: SynthesisRequest, stream: bool | None
    ) -> SpeechResponse:
        try:
            async with aiohttp.ClientSession() as http, http.ws_connect(self._url, params=self._params) as ws:
                logger.info("Connected to %s", self._url, extra={"session_id": session.session_id})
                await ws.send_str(session.begin(request, stream=stream))
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        session.on_text(msg.data)
                    elif msg.type == aiohttp.WSMsgType.BINARY:
                        session.on_binary(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.warning("WebSocket error: %s", ws.exception(), extra={"session_id": session.session_id})
                        break
                    if session.is_terminal:
                        break
        except aiohttp.ClientError as exc:
            raise SessionFailed(f"WebSocket connection failed: {exc}") from exc

        if not session.is_terminal:
            session.on_close()
        return SpeechResponse(audio=session.result(), meta=session.meta, chunks=session.chunks)

    async def _command(self, frame_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        try:
            async with aiohttp.ClientSession() as http, http.ws_connect(self._url, params=self._params) as ws:
                await ws.send_str(encode({"type": frame_type, **fields}))
                async for msg in ws:
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        continue
                    frame = parse_text_frame(msg.data)
                    if isinstance(frame, ErrorFrame):
                        raise SessionFailed(frame.message, server_code=frame.code)
                    if isinstance(frame, ControlFrame) and frame.type == frame_type:
                        return frame.payload
        except aiohttp.ClientError as exc:
            raise SessionFailed(f"WebSocket connection failed: {exc}") from exc
        raise SessionFailed(f"Connection closed before {frame_type} reply")
