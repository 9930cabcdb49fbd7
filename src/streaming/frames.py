"""WebSocket frame vocabulary for the /ws streaming protocol.

Text frames are JSON control messages; binary frames carry audio.

  client → server   {"type": "speak", "text": ..., "engine"?, "voice"?, "format"?, "sample_rate"?, "stream"?}
                    {"type": "voices", "engine"?} | {"type": "engines"}
  server → client   {"type": "meta", ...} · binary audio · {"type": "end", "bytes": n, "chunks": k}
                    {"type": "voices", ...} | {"type": "engines", ...}
                    {"error": msg, "code": CODE}

Older servers report errors as {"message": msg, "code": "ERROR"}; both
shapes parse to the same ErrorFrame.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Legacy error shape marker
LEGACY_ERROR_CODE = "ERROR"


class FrameType(enum.StrEnum):
    SPEAK = "speak"
    VOICES = "voices"
    ENGINES = "engines"
    META = "meta"
    END = "end"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class MetaFrame:
    format: str
    sample_rate: int
    engine: str
    voice: str
    bytes: int
    stream: bool
    chunk_size: int
    chunks: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": FrameType.META.value,
            "format": self.format,
            "sample_rate": self.sample_rate,
            "engine": self.engine,
            "voice": self.voice,
            "bytes": self.bytes,
            "stream": self.stream,
            "chunk_size": self.chunk_size,
            "chunks": self.chunks,
        }


@dataclass(frozen=True, slots=True)
class EndFrame:
    bytes: int
    chunks: int

    def to_dict(self) -> dict[str, Any]:
        return {"type": FrameType.END.value, "bytes": self.bytes, "chunks": self.chunks}


@dataclass(frozen=True, slots=True)
class ErrorFrame:
    message: str
    code: str | None = None


@dataclass(frozen=True, slots=True)
class ControlFrame:
    """Any other text frame: a command or a listing reply."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)


Frame = MetaFrame | EndFrame | ErrorFrame | ControlFrame


def encode(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def speak_frame(
    text: str,
    *,
    engine: str | None = None,
    voice: str | None = None,
    format: str | None = None,
    sample_rate: int | None = None,
    stream: bool | None = None,
) -> str:
    """Client request frame; unset options are omitted so server defaults apply."""
    data: dict[str, Any] = {"type": FrameType.SPEAK.value, "text": text}
    optional = {"engine": engine, "voice": voice, "format": format, "sample_rate": sample_rate, "stream": stream}
    data.update({k: v for k, v in optional.items() if v is not None})
    return encode(data)


def error_frame(message: str, code: str, **fields: Any) -> str:
    return encode({"error": message, "code": code, **fields})


def chunk_audio(audio: bytes, chunk_size: int) -> list[bytes]:
    """Split audio into ordered binary frames of at most ``chunk_size`` bytes."""
    if chunk_size <= 0:
        return [audio]
    return [audio[i : i + chunk_size] for i in range(0, len(audio), chunk_size)] or [b""]


def parse_text_frame(raw: str) -> Frame | None:
    """Decode a text frame. Returns None for malformed or untyped frames."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Ignoring malformed control frame: %.80s", raw)
        return None
    if not isinstance(data, dict):
        return None

    if "error" in data:
        return ErrorFrame(message=str(data["error"]), code=_opt_str(data.get("code")))
    if "message" in data and data.get("code") == LEGACY_ERROR_CODE:
        return ErrorFrame(message=str(data["message"]), code=LEGACY_ERROR_CODE)

    frame_type = data.get("type")
    try:
        return _typed_frame(frame_type, data)
    except (TypeError, ValueError):
        logger.debug("Ignoring control frame with invalid fields: %.80s", raw)
        return None


def _typed_frame(frame_type: Any, data: dict[str, Any]) -> Frame | None:
    if frame_type == FrameType.META:
        return MetaFrame(
            format=str(data.get("format", "")),
            sample_rate=int(data.get("sample_rate") or 0),
            engine=str(data.get("engine", "")),
            voice=str(data.get("voice", "")),
            bytes=int(data.get("bytes") or 0),
            stream=bool(data.get("stream", False)),
            chunk_size=int(data.get("chunk_size") or 0),
            chunks=int(data.get("chunks") or 0),
        )
    if frame_type == FrameType.END:
        return EndFrame(bytes=int(data.get("bytes") or 0), chunks=int(data.get("chunks") or 0))
    if isinstance(frame_type, str):
        return ControlFrame(type=frame_type, payload=data)
    return None


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None
