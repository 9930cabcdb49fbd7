"""Unit tests for WAV container helpers."""

from __future__ import annotations

import struct

from src.audio.wav import build_wav, extract_pcm, is_wav, wav_info

PCM = b"\x01\x02" * 100


class TestBuildWav:
    def test_header(self) -> None:
        audio = build_wav(PCM, 16000)
        assert len(audio) == 44 + len(PCM)
        assert is_wav(audio)
        info = wav_info(audio)
        assert info is not None
        assert (info.sample_rate, info.channels, info.bits_per_sample) == (16000, 1, 16)


class TestExtractPcm:
    def test_strips_container(self) -> None:
        assert extract_pcm(build_wav(PCM, 22050)) == (PCM, 22050)

    def test_non_wav_unchanged(self) -> None:
        raw = b"ID3" + b"\x00" * 60
        assert extract_pcm(raw) == (raw, None)

    def test_skips_extra_chunks(self) -> None:
        wav = build_wav(PCM, 24000)
        list_chunk = b"LIST" + struct.pack("<I", 5) + b"abcde" + b"\x00"
        audio = wav[:36] + list_chunk + wav[36:]

        assert extract_pcm(audio) == (PCM, 24000)

    def test_streaming_data_size(self) -> None:
        wav = bytearray(build_wav(PCM, 16000))
        struct.pack_into("<I", wav, 40, 0xFFFFFFFF)
        assert extract_pcm(bytes(wav)) == (PCM, 16000)

    def test_missing_data_chunk_skips_standard_header(self) -> None:
        header = build_wav(b"", 16000)[:36] + b"junk" + b"\x00" * 4
        audio = header + PCM
        pcm, _ = extract_pcm(audio)
        assert pcm == audio[44:]
