"""Tests for frame codecs and audio chunk framing helpers."""

import base64
import json

import pytest

from speech_bridge.audio import AudioChunk, AudioRebuffer, bytes_for_duration
from speech_bridge.codec import (
    BinaryFrameCodec,
    FrameKind,
    JsonAudioFrameCodec,
    classify,
    control_message,
)
from speech_bridge.errors import ProtocolError
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration


def _eos(frames_sent: int) -> str:
    return control_message({"message": "EndOfStream", "last_seq_no": frames_sent})


class TestClassify:
    def test_bytes_are_binary(self):
        assert classify(b"\x00\x01") is FrameKind.BINARY
        assert classify(bytearray(b"\x00")) is FrameKind.BINARY

    def test_text_is_structured(self):
        assert classify('{"type":"Results"}') is FrameKind.STRUCTURED

    def test_other_types_rejected(self):
        with pytest.raises(ProtocolError):
            classify(42)  # type: ignore[arg-type]


class TestBinaryFrameCodec:
    def test_audio_chunk_is_one_binary_frame(self):
        codec = BinaryFrameCodec()
        assert codec.encode(AudioChunk(b"\x01\x02")) == [b"\x01\x02"]

    def test_last_chunk_appends_end_of_stream_after_audio(self):
        codec = BinaryFrameCodec(_eos)
        frames = codec.encode(AudioChunk(b"\x01", is_last=True), frames_sent=4)
        assert frames[0] == b"\x01"
        assert json.loads(frames[1]) == {"message": "EndOfStream", "last_seq_no": 5}

    def test_empty_last_chunk_is_only_end_of_stream(self):
        codec = BinaryFrameCodec(_eos)
        frames = codec.encode(AudioChunk(is_last=True), frames_sent=2)
        assert len(frames) == 1
        assert json.loads(frames[0])["last_seq_no"] == 2

    def test_empty_binary_end_of_stream(self):
        codec = BinaryFrameCodec(lambda n: b"")
        assert codec.encode(AudioChunk(b"ab", is_last=True)) == [b"ab", b""]

    def test_no_end_of_stream_by_default(self):
        codec = BinaryFrameCodec()
        assert codec.encode(AudioChunk(is_last=True)) == []

    def test_decode_restores_audio(self):
        codec = BinaryFrameCodec()
        (frame,) = codec.encode(AudioChunk(b"\x10\x20\x30"))
        assert codec.decode(frame) == b"\x10\x20\x30"

    def test_decode_rejects_text(self):
        with pytest.raises(ValueError):
            BinaryFrameCodec().decode("text")


class TestJsonAudioFrameCodec:
    def test_audio_is_base64_inside_typed_message(self):
        codec = JsonAudioFrameCodec("input_audio_buffer.append")
        (frame,) = codec.encode(AudioChunk(b"\x00\xff"))
        message = json.loads(frame)
        assert message["type"] == "input_audio_buffer.append"
        assert base64.b64decode(message["audio"]) == b"\x00\xff"

    def test_decode_restores_audio(self):
        codec = JsonAudioFrameCodec("append", audio_field="data")
        (frame,) = codec.encode(AudioChunk(b"pcm"))
        assert codec.decode(frame) == b"pcm"

    def test_decode_rejects_other_messages(self):
        codec = JsonAudioFrameCodec("append")
        with pytest.raises(ValueError):
            codec.decode(control_message({"type": "commit"}))

    def test_last_chunk_appends_commit(self):
        codec = JsonAudioFrameCodec("append", lambda n: control_message({"type": "commit"}))
        frames = codec.encode(AudioChunk(b"x", is_last=True))
        assert [json.loads(f)["type"] for f in frames] == ["append", "commit"]


class TestAudioChunk:
    def test_rejects_non_bytes(self):
        with pytest.raises(TypeError):
            AudioChunk("not bytes")  # type: ignore[arg-type]

    def test_bytearray_is_frozen_to_bytes(self):
        chunk = AudioChunk(bytearray(b"ab"))
        assert isinstance(chunk.data, bytes)


class TestRebuffer:
    def test_holds_short_input(self):
        rebuffer = AudioRebuffer(10, 20)
        assert rebuffer.add(b"x" * 5) == []
        assert rebuffer.pending == 5

    def test_emits_once_minimum_reached(self):
        rebuffer = AudioRebuffer(10, 20)
        rebuffer.add(b"x" * 5)
        assert rebuffer.add(b"y" * 7) == [b"x" * 5 + b"y" * 7]
        assert rebuffer.pending == 0

    def test_splits_oversized_input(self):
        rebuffer = AudioRebuffer(10, 20)
        frames = rebuffer.add(b"z" * 45)
        assert [len(f) for f in frames] == [20, 20]
        assert rebuffer.pending == 5

    def test_flush_drains_remainder(self):
        rebuffer = AudioRebuffer(10, 20)
        rebuffer.add(b"abc")
        assert rebuffer.flush() == b"abc"
        assert rebuffer.flush() == b""

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            AudioRebuffer(0, 10)
        with pytest.raises(ValueError):
            AudioRebuffer(20, 10)

    def test_bytes_for_duration_is_frame_aligned(self):
        config = StreamingConfiguration(
            encoding=AudioEncoding.LINEAR16, sample_rate=16000, channels=1
        )
        assert bytes_for_duration(config, 50) == 1600
        assert bytes_for_duration(config, 1000) == 32000

    def test_bytes_for_duration_unknown_for_containers(self):
        config = StreamingConfiguration(encoding=AudioEncoding.OPUS)
        assert bytes_for_duration(config, 50) is None
