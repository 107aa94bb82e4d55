"""Centralised configuration via pydantic-settings + .env."""

from __future__ import annotations

from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All knobs live here.  Loaded from environment / .env in project root."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Credentials (empty = backend not configured) ────
    deepgram_api_key: str = ""
    assemblyai_api_key: str = ""
    gladia_api_key: str = ""
    soniox_api_key: str = ""
    speechmatics_api_key: str = ""
    openai_api_key: str = ""

    # ── Endpoints ───────────────────────────────────────
    deepgram_ws_url: str = "wss://api.deepgram.com/v1/listen"
    assemblyai_ws_url: str = "wss://streaming.assemblyai.com/v3/ws"
    gladia_base_url: str = "https://api.gladia.io"
    gladia_region: Literal["us-west", "eu-west"] | None = None
    soniox_region: Literal["us", "eu", "jp"] = "us"
    speechmatics_region: str = "eu2"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"

    # ── Timeouts ────────────────────────────────────────
    handshake_timeout_ms: int = 10000
    close_timeout_ms: int = 5000
    http_timeout_ms: int = 10000

    # ── Limits ──────────────────────────────────────────
    write_limit_bytes: int = 64 * 1024
    max_message_bytes: int = 10 * 1024 * 1024
    max_concurrent_sessions: int = 32
    # Undelivered events per consumer before the inbound reader pauses
    max_pending_events: int = 1000

    # ── Backend selection ───────────────────────────────
    default_backend: str | None = None
    selection_strategy: Literal["explicit", "default", "round-robin"] = "default"

    # ── Logging ─────────────────────────────────────────
    log_level: str = "INFO"
    log_transcripts: bool = False

    # ── Derived helpers ─────────────────────────────────
    @property
    def handshake_timeout_s(self) -> float:
        return self.handshake_timeout_ms / 1000.0

    @property
    def close_timeout_s(self) -> float:
        return self.close_timeout_ms / 1000.0

    @property
    def http_timeout_s(self) -> float:
        return self.http_timeout_ms / 1000.0

    @property
    def soniox_ws_url(self) -> str:
        host = {
            "us": "stt-rt.soniox.com",
            "eu": "stt-rt.eu.soniox.com",
            "jp": "stt-rt.jp.soniox.com",
        }[self.soniox_region]
        return f"wss://{host}/transcribe-websocket"

    @property
    def speechmatics_ws_url(self) -> str:
        return f"wss://{self.speechmatics_region}.rt.speechmatics.com/v2"

    @field_validator("handshake_timeout_ms", "close_timeout_ms", "http_timeout_ms")
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Timeouts must be positive milliseconds.")
        return v

    @field_validator("max_pending_events")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_pending_events must be positive.")
        return v


def get_settings() -> Settings:
    """Build settings from the environment; pass the result around explicitly."""
    return Settings()
