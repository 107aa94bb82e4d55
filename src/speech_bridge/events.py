"""Shared event taxonomy produced by every backend normalizer.

Each ``StreamEvent`` carries a ``type`` tag from a fixed vocabulary and a
payload dataclass shaped for that tag.  Times are seconds (float) and
confidences lie in [0, 1] whatever the backend's native units.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union


class StreamEventType(str, Enum):
    """Types of events delivered on a session's feed."""

    OPEN = "open"
    TRANSCRIPT = "transcript"              # Interim or final transcript
    UTTERANCE = "utterance"                # Complete speaker turn
    SPEECH_START = "speechStart"
    SPEECH_END = "speechEnd"
    TRANSLATION = "translation"
    SENTIMENT = "sentiment"
    ENTITY = "entity"
    SUMMARIZATION = "summarization"
    CHAPTERIZATION = "chapterization"
    METADATA = "metadata"
    ERROR = "error"
    CLOSE = "close"


# ── Payloads ─────────────────────────────────────────────


@dataclass(frozen=True)
class Word:
    text: str
    start: float
    end: float
    confidence: float | None = None
    speaker: str | None = None


@dataclass(frozen=True)
class Opened:
    session_id: str


@dataclass(frozen=True)
class Transcript:
    text: str
    is_final: bool
    confidence: float | None = None
    words: tuple[Word, ...] = ()
    speaker: str | None = None
    language: str | None = None
    channel: int | None = None
    start: float | None = None
    end: float | None = None


@dataclass(frozen=True)
class Utterance:
    text: str
    start: float
    end: float
    confidence: float | None = None
    speaker: str | None = None
    words: tuple[Word, ...] = ()
    language: str | None = None
    channel: int | None = None


@dataclass(frozen=True)
class SpeechStart:
    timestamp: float | None = None
    channel: int | None = None


@dataclass(frozen=True)
class SpeechEnd:
    timestamp: float | None = None
    channel: int | None = None


@dataclass(frozen=True)
class Translation:
    text: str
    target_language: str
    original: str | None = None
    utterance_id: str | None = None
    is_final: bool = True


@dataclass(frozen=True)
class Sentiment:
    sentiment: str
    utterance_id: str | None = None
    confidence: float | None = None
    text: str | None = None


@dataclass(frozen=True)
class Entity:
    text: str
    entity_type: str
    utterance_id: str | None = None
    start: float | None = None
    end: float | None = None


@dataclass(frozen=True)
class Summarization:
    summary: str
    error: str | None = None


@dataclass(frozen=True)
class Chapter:
    headline: str
    summary: str
    start: float
    end: float


@dataclass(frozen=True)
class Chapterization:
    chapters: tuple[Chapter, ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class Metadata:
    """Informational message; ``kind`` is the backend's own message name."""

    kind: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamError:
    code: str
    message: str
    details: Any = None
    fatal: bool = False


@dataclass(frozen=True)
class Closed:
    code: int | None = None
    reason: str | None = None


Payload = Union[
    Opened,
    Transcript,
    Utterance,
    SpeechStart,
    SpeechEnd,
    Translation,
    Sentiment,
    Entity,
    Summarization,
    Chapterization,
    Metadata,
    StreamError,
    Closed,
]

_TYPE_BY_PAYLOAD: dict[type, StreamEventType] = {
    Opened: StreamEventType.OPEN,
    Transcript: StreamEventType.TRANSCRIPT,
    Utterance: StreamEventType.UTTERANCE,
    SpeechStart: StreamEventType.SPEECH_START,
    SpeechEnd: StreamEventType.SPEECH_END,
    Translation: StreamEventType.TRANSLATION,
    Sentiment: StreamEventType.SENTIMENT,
    Entity: StreamEventType.ENTITY,
    Summarization: StreamEventType.SUMMARIZATION,
    Chapterization: StreamEventType.CHAPTERIZATION,
    Metadata: StreamEventType.METADATA,
    StreamError: StreamEventType.ERROR,
    Closed: StreamEventType.CLOSE,
}


@dataclass(frozen=True)
class StreamEvent:
    """One entry of a session's ordered event feed."""

    type: StreamEventType
    backend: str
    payload: Payload
    raw: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        expected = _TYPE_BY_PAYLOAD.get(type(self.payload))
        if expected is not self.type:
            raise TypeError(
                f"{type(self.payload).__name__} payload cannot be carried by a "
                f"'{self.type.value}' event"
            )

    @classmethod
    def of(cls, backend: str, payload: Payload, raw: Any = None) -> StreamEvent:
        """Build an event whose type tag is derived from the payload class."""
        return cls(type=_TYPE_BY_PAYLOAD[type(payload)], backend=backend, payload=payload, raw=raw)

    @property
    def is_terminal(self) -> bool:
        return self.type is StreamEventType.CLOSE

    @property
    def is_fatal_error(self) -> bool:
        return isinstance(self.payload, StreamError) and self.payload.fatal


# ── Numeric normalization ────────────────────────────────


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clamp_confidence(value: Any) -> float | None:
    """Clamp a confidence score into [0, 1]; non-numeric becomes ``None``."""
    number = _as_float(value)
    if number is None:
        return None
    return min(1.0, max(0.0, number))


def ms_to_seconds(value: Any) -> float | None:
    number = _as_float(value)
    return None if number is None else number / 1000.0


def as_seconds(value: Any) -> float | None:
    return _as_float(value)
