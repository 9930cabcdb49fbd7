"""WAV container helpers.

Only container handling: locating the ``fmt `` and ``data`` chunks of a
RIFF/WAVE buffer. No resampling or transcoding happens here.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

_STANDARD_HEADER_SIZE = 44


@dataclass(frozen=True, slots=True)
class WavInfo:
    sample_rate: int
    channels: int
    bits_per_sample: int


def is_wav(audio: bytes) -> bool:
    return len(audio) >= 12 and audio[:4] == b"RIFF" and audio[8:12] == b"WAVE"


def _iter_chunks(audio: bytes):
    offset = 12  # skip RIFF header
    while offset + 8 <= len(audio):
        chunk_id = audio[offset : offset + 4]
        (chunk_size,) = struct.unpack_from("<I", audio, offset + 4)
        yield chunk_id, offset + 8, chunk_size
        # Chunks are word-aligned
        offset += 8 + chunk_size + (chunk_size & 1)


def wav_info(audio: bytes) -> WavInfo | None:
    """Format of a WAV buffer, or None if it has no readable fmt chunk."""
    if not is_wav(audio):
        return None
    for chunk_id, start, size in _iter_chunks(audio):
        if chunk_id == b"fmt " and size >= 16 and start + 16 <= len(audio):
            _, channels, sample_rate, _, _, bits = struct.unpack_from("<HHIIHH", audio, start)
            return WavInfo(sample_rate=sample_rate, channels=channels, bits_per_sample=bits)
    return None


def extract_pcm(audio: bytes) -> tuple[bytes, int | None]:
    """Strip the WAV container, returning (raw PCM, sample rate if known).

    Non-WAV input is returned unchanged. When no ``data`` chunk can be
    found the standard 44-byte header is skipped.
    """
    if len(audio) < _STANDARD_HEADER_SIZE or not is_wav(audio):
        return audio, None

    info = wav_info(audio)
    sample_rate = info.sample_rate if info else None
    for chunk_id, start, size in _iter_chunks(audio):
        if chunk_id == b"data":
            # Streaming encoders may write 0 or 0xFFFFFFFF as the data size
            end = len(audio) if size in (0, 0xFFFFFFFF) else min(start + size, len(audio))
            return audio[start:end], sample_rate

    return audio[_STANDARD_HEADER_SIZE:], sample_rate


def build_wav(pcm: bytes, sample_rate: int, channels: int = 1, bits_per_sample: int = 16) -> bytes:
    """Wrap raw little-endian PCM in a minimal WAV header."""
    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,  # PCM
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        len(pcm),
    )
    return header + pcm
