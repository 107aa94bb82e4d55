"""Audio chunk type and helpers for sizing raw PCM frames."""

from __future__ import annotations

from dataclasses import dataclass

from speech_bridge.schemas import StreamingConfiguration


@dataclass(frozen=True)
class AudioChunk:
    """One ordered piece of caller audio.

    A chunk with ``is_last=True`` terminates the stream; its ``data`` may be
    empty, in which case it is a pure end-of-audio sentinel.
    """

    data: bytes = b""
    is_last: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.data, (bytes, bytearray, memoryview)):
            raise TypeError(f"AudioChunk.data must be bytes, got {type(self.data).__name__}")
        object.__setattr__(self, "data", bytes(self.data))


def bytes_for_duration(config: StreamingConfiguration, duration_ms: int) -> int | None:
    """Bytes occupied by *duration_ms* of raw audio, rounded down to whole frames."""
    rate = config.bytes_per_second
    if rate is None or config.encoding is None:
        return None
    frame = (config.channels or 1) * (config.encoding.sample_width or 1)
    n_bytes = rate * duration_ms // 1000
    return max(frame, n_bytes - n_bytes % frame)


class AudioRebuffer:
    """Regroup caller chunks into frames between *min_bytes* and *max_bytes*.

    Some backends reject frames that are too short or too long.  ``add``
    returns every frame that is ready; ``flush`` drains the remainder at end of
    stream regardless of size.
    """

    def __init__(self, min_bytes: int, max_bytes: int) -> None:
        if min_bytes <= 0 or max_bytes < min_bytes:
            raise ValueError("Require 0 < min_bytes <= max_bytes")
        self._min = min_bytes
        self._max = max_bytes
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def add(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        ready: list[bytes] = []
        while len(self._buffer) >= self._max:
            ready.append(bytes(self._buffer[: self._max]))
            del self._buffer[: self._max]
        if len(self._buffer) >= self._min:
            ready.append(bytes(self._buffer))
            self._buffer.clear()
        return ready

    def flush(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data
