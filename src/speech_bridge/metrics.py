"""Latency and volume metrics for a streaming session."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from speech_bridge.logging import session_logger


@dataclass
class SessionMetrics:
    """Counters for one session, emitted once at its final transition."""

    session_id: str = ""
    backend: str = ""

    # Timestamps (monotonic, seconds)
    started_at: float = 0.0
    opened_at: float = 0.0
    first_audio_at: float = 0.0
    first_transcript_at: float = 0.0
    finished_at: float = 0.0

    # Volume
    chunks_sent: int = 0
    bytes_sent: int = 0
    events_delivered: int = 0
    errors: int = 0

    @staticmethod
    def now() -> float:
        """Return monotonic timestamp for latency measurement."""
        return time.monotonic()

    def mark_started(self) -> None:
        self.started_at = self.now()

    def mark_opened(self) -> None:
        self.opened_at = self.now()

    def record_chunk(self, n_bytes: int) -> None:
        if not self.first_audio_at:
            self.first_audio_at = self.now()
        self.chunks_sent += 1
        self.bytes_sent += n_bytes

    def record_transcript(self) -> None:
        if not self.first_transcript_at:
            self.first_transcript_at = self.now()

    @property
    def handshake_ms(self) -> float:
        """Connection start to session open."""
        if self.started_at and self.opened_at:
            return (self.opened_at - self.started_at) * 1000
        return 0.0

    @property
    def first_transcript_ms(self) -> float:
        """First audio sent to first transcript received."""
        if self.first_audio_at and self.first_transcript_at:
            return (self.first_transcript_at - self.first_audio_at) * 1000
        return 0.0

    @property
    def duration_ms(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at) * 1000
        return 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "handshake_ms": round(self.handshake_ms, 1),
            "first_transcript_ms": round(self.first_transcript_ms, 1),
            "duration_ms": round(self.duration_ms, 1),
            "chunks_sent": self.chunks_sent,
            "bytes_sent": self.bytes_sent,
            "events_delivered": self.events_delivered,
            "errors": self.errors,
        }

    def emit(self) -> None:
        """Log the session metrics summary."""
        self.finished_at = self.now()
        summary = self.summary()
        session_logger("metrics", self.session_id, self.backend).info(
            "Session metrics: %s",
            summary,
            extra={"event": "session_metrics", "data": summary},
        )
