"""Exception taxonomy and error codes shared by every backend.

Pre-flight failures (``ConfigurationError``, ``CapabilityError``,
``SessionLimitError``) are raised from ``create_session`` and never reach the
event feed.  Everything that happens after a session exists is reported as an
``error`` event carrying one of the codes below; the matching exception class
is what ``Session.wait_until_open`` or ``Session.send_audio`` raise.
"""

from __future__ import annotations

from typing import Any


class ErrorCode:
    """String error codes used in ``StreamError`` payloads."""

    INVALID_INPUT = "INVALID_INPUT"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    UNKNOWN_BACKEND = "UNKNOWN_BACKEND"
    SESSION_LIMIT = "SESSION_LIMIT"
    HANDSHAKE_TIMEOUT = "HANDSHAKE_TIMEOUT"
    HANDSHAKE_ERROR = "HANDSHAKE_ERROR"
    WEBSOCKET_ERROR = "WEBSOCKET_ERROR"
    UNRECOGNIZED_MESSAGE = "UNRECOGNIZED_MESSAGE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TRANSCRIPTION_ERROR = "TRANSCRIPTION_ERROR"
    SEND_ERROR = "SEND_ERROR"
    AUDIO_SEND_ERROR = "AUDIO_SEND_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


ERROR_MESSAGES: dict[str, str] = {
    ErrorCode.INVALID_INPUT: "Invalid input provided",
    ErrorCode.NOT_SUPPORTED: "Operation not supported by this backend",
    ErrorCode.UNKNOWN_BACKEND: "Backend is not registered",
    ErrorCode.SESSION_LIMIT: "Maximum number of concurrent sessions reached",
    ErrorCode.HANDSHAKE_TIMEOUT: "Handshake did not complete in time",
    ErrorCode.HANDSHAKE_ERROR: "Handshake failed",
    ErrorCode.WEBSOCKET_ERROR: "WebSocket connection error",
    ErrorCode.UNRECOGNIZED_MESSAGE: "Message did not match any known shape",
    ErrorCode.PROVIDER_ERROR: "Backend reported an error",
    ErrorCode.TRANSCRIPTION_ERROR: "Transcription processing failed",
    ErrorCode.SEND_ERROR: "Failed to write to the transport",
    ErrorCode.AUDIO_SEND_ERROR: "Audio can only be sent while the session is open",
    ErrorCode.UNKNOWN_ERROR: "An unknown error occurred",
}


def default_message(code: str) -> str:
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES[ErrorCode.UNKNOWN_ERROR])


class SpeechBridgeError(Exception):
    """Base exception; carries a stable ``code`` and optional ``details``."""

    code: str = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        if code is not None:
            self.code = code
        self.message = message or default_message(self.code)
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ConfigurationError(SpeechBridgeError):
    """Invalid or missing option; raised before any connection is attempted."""

    code = ErrorCode.INVALID_INPUT


class UnknownBackendError(ConfigurationError):
    """The requested backend name is not in the registry."""

    code = ErrorCode.UNKNOWN_BACKEND


class CapabilityError(SpeechBridgeError):
    """The backend does not support the requested operation."""

    code = ErrorCode.NOT_SUPPORTED


class SessionLimitError(SpeechBridgeError):
    """The coordinator is already running its maximum number of sessions."""

    code = ErrorCode.SESSION_LIMIT


class HandshakeError(SpeechBridgeError):
    """Connection established but negotiation failed."""

    code = ErrorCode.HANDSHAKE_ERROR


class HandshakeTimeout(HandshakeError):
    """Negotiation did not finish within the configured bound."""

    code = ErrorCode.HANDSHAKE_TIMEOUT


class TransportError(SpeechBridgeError):
    """Mid-session network failure.  Never retried by the bridge."""

    code = ErrorCode.WEBSOCKET_ERROR


class ProtocolError(SpeechBridgeError):
    """A backend message could not be classified."""

    code = ErrorCode.UNRECOGNIZED_MESSAGE


class AudioSendError(SpeechBridgeError):
    """Audio was sent outside the ``open`` state."""

    code = ErrorCode.AUDIO_SEND_ERROR
