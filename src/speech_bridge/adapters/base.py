"""Backend wire contract record and the helpers every normalizer shares.

A backend is described by one ``BackendWire`` value rather than a subclass:
how to reach it, what to send before audio, how to recognise its
acknowledgment, how audio is framed, and how its messages are normalized.
``WebSocketSessionAdapter`` drives any of them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, runtime_checkable

import aiohttp
from pydantic import ValidationError

from speech_bridge.audio import AudioRebuffer
from speech_bridge.codec import FrameCodec, FrameKind, WireFrame, classify
from speech_bridge.config import Settings
from speech_bridge.errors import ConfigurationError, ErrorCode, ProtocolError
from speech_bridge.events import StreamError, StreamEvent
from speech_bridge.logging import get_logger
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

logger = get_logger("adapters")

HttpSessionFactory = Callable[..., aiohttp.ClientSession]


@dataclass(frozen=True)
class Capabilities:
    """What a backend can do; ``streaming`` gates ``create_session``."""

    streaming: bool = False
    diarization: bool = False
    language_detection: bool = False
    translation: bool = False
    sentiment_analysis: bool = False
    entity_detection: bool = False
    summarization: bool = False
    mid_session_update: bool = False


@dataclass(frozen=True)
class ConnectionTarget:
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)


@runtime_checkable
class EventNormalizer(Protocol):
    """Maps one raw inbound message to zero or more ``StreamEvent``.

    One instance per session; it may hold the small amount of accumulation
    state its backend needs and must never raise.
    """

    def normalize(self, raw: WireFrame) -> list[StreamEvent]:
        ...


TargetBuilder = Callable[
    [StreamingConfiguration, Settings, HttpSessionFactory], Awaitable[ConnectionTarget]
]


@dataclass(frozen=True)
class BackendWire:
    """Everything needed to run one backend's streaming protocol.

    Args:
        name: Registry name, stamped on every event.
        capabilities: Descriptor consumed by the coordinator.
        credential: ``Settings`` field holding the API key.
        encodings: Unified encoding -> backend encoding name.
        build_target: Coroutine resolving the URL and auth headers.
        codec: Audio framing.
        normalizer_factory: Builds a fresh normalizer per session from its
            configuration.
        config_message: First message sent after the transport opens.
        is_ack: Recognises the backend's acknowledgment; ``None`` means the
            session opens as soon as the transport does.
        rebuffer: Builds a per-session ``AudioRebuffer`` when the backend
            limits frame durations.
        validate: Extra backend-specific configuration checks.
        update_message: Builds the mid-session reconfiguration message.
        endpoint_message: Control message forcing the end of the current turn.
        requires_encoding: Reject configurations without an explicit encoding.
    """

    name: str
    capabilities: Capabilities
    credential: str
    encodings: Mapping[AudioEncoding, str]
    build_target: TargetBuilder
    codec: FrameCodec
    normalizer_factory: Callable[[StreamingConfiguration], EventNormalizer]
    config_message: Optional[Callable[[StreamingConfiguration, Settings], dict]] = None
    is_ack: Optional[Callable[[dict], bool]] = None
    rebuffer: Optional[Callable[[StreamingConfiguration], Optional[AudioRebuffer]]] = None
    validate: Optional[Callable[[StreamingConfiguration], None]] = None
    update_message: Optional[Callable[[Mapping[str, Any]], dict]] = None
    endpoint_message: Optional[dict] = None
    requires_encoding: bool = True

    def wire_encoding(self, config: StreamingConfiguration) -> str | None:
        return self.encodings.get(config.encoding) if config.encoding else None

    def check_configuration(self, config: StreamingConfiguration) -> None:
        """Raise ``ConfigurationError`` for settings this backend cannot honour."""
        config.check_audio_format()
        if config.encoding is None:
            if self.requires_encoding:
                raise ConfigurationError(
                    f"Backend '{self.name}' requires an explicit audio encoding.",
                    details={"supported": sorted(e.value for e in self.encodings)},
                )
        elif config.encoding not in self.encodings:
            raise ConfigurationError(
                f"Backend '{self.name}' does not accept '{config.encoding.value}' audio.",
                details={"supported": sorted(e.value for e in self.encodings)},
            )
        if self.validate is not None:
            self.validate(config)

    def api_key(self, settings: Settings) -> str:
        key = getattr(settings, self.credential, "")
        if not key:
            raise ConfigurationError(
                f"No API key configured for backend '{self.name}' "
                f"(set {self.credential.upper()})."
            )
        return key


# ── Normalizer helpers ───────────────────────────────────


def parse_json_object(raw: WireFrame) -> dict | None:
    """Decode a transport frame holding a JSON object, else ``None``."""
    try:
        kind = classify(raw)
    except ProtocolError:
        return None
    if kind is FrameKind.BINARY:
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        message = json.loads(raw)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None


def unrecognized(backend: str, raw: Any, reason: str) -> StreamEvent:
    logger.warning(
        "Unrecognized %s message: %s",
        backend,
        reason,
        extra={"backend": backend, "error_code": ErrorCode.UNRECOGNIZED_MESSAGE},
    )
    return StreamEvent.of(
        backend,
        StreamError(
            code=ErrorCode.UNRECOGNIZED_MESSAGE,
            message=f"Unrecognized message from {backend}: {reason}",
            details={"raw": raw if isinstance(raw, str) else repr(raw)[:200]},
        ),
        raw=raw,
    )


def normalize_guarded(
    backend: str,
    raw: WireFrame,
    dispatch: Callable[[dict], Optional[list[StreamEvent]]],
) -> list[StreamEvent]:
    """Parse *raw* and run *dispatch*, turning any shape mismatch into an error event.

    *dispatch* returns ``None`` when the message matches no known shape.
    """
    message = parse_json_object(raw)
    if message is None:
        return [unrecognized(backend, raw, "not a JSON object")]
    try:
        events = dispatch(message)
    except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as exc:
        return [unrecognized(backend, raw, f"malformed message ({exc})")]
    if events is None:
        return [unrecognized(backend, raw, "unknown message shape")]
    return events


def provider_error(
    backend: str,
    message: str,
    *,
    details: Any = None,
    fatal: bool = True,
    code: str = ErrorCode.PROVIDER_ERROR,
    raw: Any = None,
) -> StreamEvent:
    return StreamEvent.of(
        backend,
        StreamError(code=code, message=message, details=details, fatal=fatal),
        raw=raw,
    )


def query_value(value: Any) -> str:
    """Render a query-string value the way backends expect booleans."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
