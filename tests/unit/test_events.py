"""Tests for the shared event taxonomy and numeric normalization."""

import math

import pytest

from speech_bridge.events import (
    Closed,
    Metadata,
    StreamError,
    StreamEvent,
    StreamEventType,
    Transcript,
    as_seconds,
    clamp_confidence,
    ms_to_seconds,
)


class TestStreamEvent:
    def test_type_derived_from_payload(self):
        event = StreamEvent.of("deepgram", Transcript(text="hi", is_final=False))
        assert event.type is StreamEventType.TRANSCRIPT
        assert event.backend == "deepgram"

    def test_mismatched_payload_rejected(self):
        with pytest.raises(TypeError):
            StreamEvent(StreamEventType.TRANSCRIPT, "deepgram", Metadata(kind="x"))

    def test_close_is_terminal(self):
        assert StreamEvent.of("soniox", Closed(code=1000)).is_terminal
        assert not StreamEvent.of("soniox", Metadata(kind="finished")).is_terminal

    def test_fatal_error_flag(self):
        fatal = StreamEvent.of("x", StreamError(code="E", message="m", fatal=True))
        benign = StreamEvent.of("x", StreamError(code="E", message="m"))
        assert fatal.is_fatal_error
        assert not benign.is_fatal_error

    def test_speech_boundary_tags(self):
        assert StreamEventType.SPEECH_START.value == "speechStart"
        assert StreamEventType.SPEECH_END.value == "speechEnd"


class TestNumbers:
    @pytest.mark.parametrize(
        "raw, expected",
        [(0.5, 0.5), (1.7, 1.0), (-0.2, 0.0), ("0.25", 0.25), (None, None), (True, None)],
    )
    def test_clamp_confidence(self, raw, expected):
        assert clamp_confidence(raw) == expected

    def test_non_finite_values_dropped(self):
        assert clamp_confidence(math.nan) is None
        assert as_seconds(math.inf) is None

    def test_ms_to_seconds(self):
        assert ms_to_seconds(1500) == 1.5
        assert ms_to_seconds("bad") is None
