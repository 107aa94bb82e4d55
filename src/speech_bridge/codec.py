"""Frame codecs: caller audio chunks to backend wire frames and back.

A codec is stateless.  ``encode`` turns one ``AudioChunk`` into the frames
that must be written for it, in order; a chunk with ``is_last=True`` always
yields the backend's end-of-stream frame, even when it carries no audio.
"""

from __future__ import annotations

import base64
import json
from enum import Enum
from typing import Callable, Union

from speech_bridge.audio import AudioChunk
from speech_bridge.errors import ProtocolError

WireFrame = Union[str, bytes]

# Builds the end-of-stream frame from the number of audio frames written so far.
EndOfStream = Callable[[int], "WireFrame | None"]


class FrameKind(str, Enum):
    BINARY = "binary"
    STRUCTURED = "structured"


def classify(raw: WireFrame) -> FrameKind:
    """Binary transport frames carry bytes; text frames carry structured messages."""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return FrameKind.BINARY
    if isinstance(raw, str):
        return FrameKind.STRUCTURED
    raise ProtocolError(
        f"Unsupported transport frame type: {type(raw).__name__}",
        details={"frame_type": type(raw).__name__},
    )


def control_message(payload: dict) -> str:
    """Serialise a JSON control message the way every backend expects it."""
    return json.dumps(payload, separators=(",", ":"))


def no_end_of_stream(frames_sent: int) -> None:
    return None


class BinaryFrameCodec:
    """Raw audio written as binary frames."""

    kind = FrameKind.BINARY

    def __init__(self, end_of_stream: EndOfStream = no_end_of_stream) -> None:
        self._end_of_stream = end_of_stream

    def encode_audio(self, data: bytes) -> WireFrame:
        return bytes(data)

    def end_of_stream(self, frames_sent: int) -> WireFrame | None:
        return self._end_of_stream(frames_sent)

    def encode(self, chunk: AudioChunk, *, frames_sent: int = 0) -> list[WireFrame]:
        frames: list[WireFrame] = []
        if chunk.data:
            frames.append(self.encode_audio(chunk.data))
        if chunk.is_last:
            eos = self.end_of_stream(frames_sent + len(frames))
            if eos is not None:
                frames.append(eos)
        return frames

    def decode(self, frame: WireFrame) -> bytes:
        if classify(frame) is not FrameKind.BINARY:
            raise ValueError("Binary codec can only decode binary frames")
        return bytes(frame)


class JsonAudioFrameCodec:
    """Audio carried base64-encoded inside a JSON message.

    Args:
        message_type: Value of the ``type`` field on every audio message.
        end_of_stream: Builder for the terminating control message.
        audio_field: Field name holding the encoded audio.
    """

    kind = FrameKind.STRUCTURED

    def __init__(
        self,
        message_type: str,
        end_of_stream: EndOfStream = no_end_of_stream,
        audio_field: str = "audio",
    ) -> None:
        self._message_type = message_type
        self._end_of_stream = end_of_stream
        self._audio_field = audio_field

    def encode_audio(self, data: bytes) -> WireFrame:
        return control_message(
            {
                "type": self._message_type,
                self._audio_field: base64.b64encode(data).decode("ascii"),
            }
        )

    def end_of_stream(self, frames_sent: int) -> WireFrame | None:
        return self._end_of_stream(frames_sent)

    def encode(self, chunk: AudioChunk, *, frames_sent: int = 0) -> list[WireFrame]:
        frames: list[WireFrame] = []
        if chunk.data:
            frames.append(self.encode_audio(chunk.data))
        if chunk.is_last:
            eos = self.end_of_stream(frames_sent + len(frames))
            if eos is not None:
                frames.append(eos)
        return frames

    def decode(self, frame: WireFrame) -> bytes:
        if classify(frame) is not FrameKind.STRUCTURED:
            raise ValueError("JSON audio codec can only decode text frames")
        message = json.loads(frame)
        if message.get("type") != self._message_type:
            raise ValueError(f"Not an audio message: {message.get('type')!r}")
        return base64.b64decode(message[self._audio_field])


FrameCodec = Union[BinaryFrameCodec, JsonAudioFrameCodec]
