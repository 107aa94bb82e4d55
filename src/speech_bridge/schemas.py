"""Caller-facing configuration value objects."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from speech_bridge.errors import ConfigurationError


class AudioEncoding(str, Enum):
    """Unified audio encoding names; backends map these to their own strings."""

    LINEAR16 = "linear16"
    PCM_F32LE = "pcm_f32le"
    MULAW = "mulaw"
    ALAW = "alaw"
    FLAC = "flac"
    OPUS = "opus"
    SPEEX = "speex"
    AMR_NB = "amr-nb"
    AMR_WB = "amr-wb"
    G729 = "g729"

    @property
    def is_raw(self) -> bool:
        """Raw sample streams carry no header, so rate and channels must be given."""
        return self in _RAW_ENCODINGS

    @property
    def sample_width(self) -> int | None:
        """Bytes per sample for raw encodings, ``None`` for containers/codecs."""
        return _SAMPLE_WIDTH.get(self)


_RAW_ENCODINGS = frozenset(
    {AudioEncoding.LINEAR16, AudioEncoding.PCM_F32LE, AudioEncoding.MULAW, AudioEncoding.ALAW}
)

_SAMPLE_WIDTH = {
    AudioEncoding.LINEAR16: 2,
    AudioEncoding.PCM_F32LE: 4,
    AudioEncoding.MULAW: 1,
    AudioEncoding.ALAW: 1,
}


class StreamingConfiguration(BaseModel):
    """Immutable description of the audio stream and recognition hints.

    Validated once when a session is created and never mutated afterwards.
    ``options`` is the backend-specific block; its keys are passed through to
    the chosen backend's query string or configuration message untouched.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # ── Audio format ─────────────────────────────────────
    encoding: AudioEncoding | None = None
    sample_rate: int | None = Field(default=None, gt=0)
    channels: int | None = Field(default=None, ge=1, le=8)
    bit_depth: int | None = None

    # ── Recognition hints ────────────────────────────────
    language: str | None = None
    language_detection: bool = False
    diarization: bool = False
    interim_results: bool = True
    model: str | None = None
    endpointing_ms: int | None = Field(default=None, ge=0)
    custom_vocabulary: tuple[str, ...] = ()

    # ── Real-time processing ─────────────────────────────
    translation_language: str | None = None
    sentiment_analysis: bool = False
    entity_detection: bool = False
    summarization: bool = False

    # ── Backend-specific ─────────────────────────────────
    options: Mapping[str, Any] = Field(default_factory=dict)

    @field_validator("bit_depth")
    @classmethod
    def _known_bit_depth(cls, v: int | None) -> int | None:
        if v is not None and v not in (8, 16, 24, 32):
            raise ValueError(f"Unsupported bit depth {v}; expected 8, 16, 24 or 32.")
        return v

    def check_audio_format(self) -> None:
        """Raise ``ConfigurationError`` if the encoding's required fields are missing."""
        if self.encoding is None or not self.encoding.is_raw:
            return
        missing = [
            name
            for name in ("sample_rate", "channels")
            if getattr(self, name) is None
        ]
        if missing:
            raise ConfigurationError(
                f"Encoding '{self.encoding.value}' requires {', '.join(missing)}.",
                details={"missing": missing},
            )
        width = self.encoding.sample_width
        if self.bit_depth is not None and width is not None and self.bit_depth != width * 8:
            raise ConfigurationError(
                f"Encoding '{self.encoding.value}' is {width * 8}-bit, "
                f"got bit_depth={self.bit_depth}."
            )

    @property
    def bytes_per_second(self) -> int | None:
        """Byte rate of a raw stream, or ``None`` when it cannot be derived."""
        if self.encoding is None or self.sample_rate is None:
            return None
        width = self.encoding.sample_width
        if width is None:
            return None
        return self.sample_rate * (self.channels or 1) * width


def coerce_configuration(
    config: StreamingConfiguration | Mapping[str, Any] | None,
) -> StreamingConfiguration:
    """Accept a model, a plain mapping, or ``None`` and return a validated model."""
    if isinstance(config, StreamingConfiguration):
        return config
    try:
        return StreamingConfiguration.model_validate(dict(config or {}))
    except ValidationError as exc:
        raise ConfigurationError(
            "Invalid streaming configuration.",
            details=exc.errors(include_url=False),
        ) from exc
