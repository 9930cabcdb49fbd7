"""Unit tests for the /ws frame vocabulary."""

from __future__ import annotations

import json

import pytest

from src.streaming.frames import (
    ControlFrame,
    EndFrame,
    ErrorFrame,
    MetaFrame,
    chunk_audio,
    error_frame,
    parse_text_frame,
    speak_frame,
)


class TestParseTextFrame:
    def test_meta(self) -> None:
        frame = parse_text_frame(
            '{"type":"meta","format":"pcm16","sample_rate":16000,"engine":"espeak","voice":"espeak:en",'
            '"bytes":960,"stream":true,"chunk_size":320,"chunks":3}'
        )
        assert frame == MetaFrame("pcm16", 16000, "espeak", "espeak:en", 960, True, 320, 3)

    def test_end(self) -> None:
        assert parse_text_frame('{"type":"end","bytes":960,"chunks":3}') == EndFrame(960, 3)

    def test_error_shape(self) -> None:
        frame = parse_text_frame('{"error":"Rate limit exceeded","code":"RATE_LIMITED"}')
        assert frame == ErrorFrame("Rate limit exceeded", "RATE_LIMITED")

    def test_legacy_error_shape(self) -> None:
        frame = parse_text_frame('{"message":"Engine failed","code":"ERROR"}')
        assert frame == ErrorFrame("Engine failed", "ERROR")

    def test_message_without_legacy_code_is_not_an_error(self) -> None:
        frame = parse_text_frame('{"type":"voices","message":"hi","code":"OTHER"}')
        assert isinstance(frame, ControlFrame)
        assert frame.type == "voices"

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"no_type": 1}', '{"type":"meta","bytes":"many"}'])
    def test_ignored(self, raw: str) -> None:
        assert parse_text_frame(raw) is None


class TestBuilders:
    def test_speak_frame_omits_unset_options(self) -> None:
        data = json.loads(speak_frame("hello", engine="azure", stream=False))
        assert data == {"type": "speak", "text": "hello", "engine": "azure", "stream": False}

    def test_error_frame(self) -> None:
        assert json.loads(error_frame("bad", "INVALID_JSON")) == {"error": "bad", "code": "INVALID_JSON"}

    def test_meta_round_trip_through_dict(self) -> None:
        meta = MetaFrame("wav", 22050, "espeak", "espeak:en", 10, False, 10, 1)
        assert parse_text_frame(json.dumps(meta.to_dict())) == meta


class TestChunkAudio:
    def test_ordered_chunks(self) -> None:
        assert chunk_audio(b"abcdefg", 3) == [b"abc", b"def", b"g"]

    def test_empty_audio_still_one_frame(self) -> None:
        assert chunk_audio(b"", 4) == [b""]

    def test_non_positive_size_sends_whole(self) -> None:
        assert chunk_audio(b"abc", 0) == [b"abc"]
