"""WebSocket session adapter: drives any ``BackendWire`` over one connection.

Owns the live transport for exactly one session: resolves the connection
target, performs the handshake (configuration message + acknowledgment),
frames outbound audio through the backend's codec, and normalizes inbound
messages.  Transport failures surface as ``TransportError`` and are never
retried here.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Mapping

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from speech_bridge.adapters.base import BackendWire, HttpSessionFactory, parse_json_object
from speech_bridge.audio import AudioChunk
from speech_bridge.codec import WireFrame
from speech_bridge.config import Settings
from speech_bridge.errors import (
    AudioSendError,
    CapabilityError,
    ErrorCode,
    HandshakeError,
    HandshakeTimeout,
    TransportError,
)
from speech_bridge.events import StreamEvent
from speech_bridge.logging import session_logger
from speech_bridge.schemas import StreamingConfiguration

ABNORMAL_CLOSURE = 1006


def _close_details(exc: ConnectionClosed) -> tuple[int, str]:
    frame = exc.rcvd
    if frame is None:
        return ABNORMAL_CLOSURE, ""
    return frame.code, frame.reason


class WebSocketSessionAdapter:
    """Backend Session Adapter for one live WebSocket connection.

    Args:
        wire: The backend's wire contract.
        config: Validated streaming configuration for this session.
        settings: Endpoints, credentials, timeouts and buffer limits.
        connect: ``websockets.connect`` or a test double with the same call shape.
        http_session_factory: Builds the ``aiohttp`` session used by backends
            that initiate streaming over HTTP first.
        session_id: Used for log context only.
    """

    def __init__(
        self,
        wire: BackendWire,
        config: StreamingConfiguration,
        settings: Settings,
        *,
        connect: Callable[..., Any] = websockets.connect,
        http_session_factory: HttpSessionFactory = aiohttp.ClientSession,
        session_id: str = "",
    ) -> None:
        self._wire = wire
        self._config = config
        self._settings = settings
        self._connect = connect
        self._http_session_factory = http_session_factory
        self._session_id = session_id
        self._logger = session_logger("adapters.websocket", session_id, wire.name)

        self._normalizer = wire.normalizer_factory(config)
        self._rebuffer = wire.rebuffer(config) if wire.rebuffer else None
        self._ws: Any = None
        self._send_lock = asyncio.Lock()
        self._pending: list[StreamEvent] = []

        self._frames_sent = 0
        self._bytes_sent = 0
        self._stream_ended = False
        self._closed = False
        self.close_code: int | None = None
        self.close_reason: str = ""

    @property
    def backend(self) -> str:
        return self._wire.name

    @property
    def frames_sent(self) -> int:
        return self._frames_sent

    @property
    def bytes_sent(self) -> int:
        return self._bytes_sent

    @property
    def stream_ended(self) -> bool:
        return self._stream_ended

    # ── Handshake ─────────────────────────────────────────

    async def open(self) -> None:
        """Connect, send the configuration message, and wait for the ack.

        Messages arriving before the ack are normalized immediately and held
        for ``events()``; a fatal error among them fails the handshake.
        """
        target = await self._wire.build_target(
            self._config, self._settings, self._http_session_factory
        )
        try:
            self._ws = await self._connect(
                target.url,
                additional_headers=dict(target.headers),
                open_timeout=self._settings.handshake_timeout_s,
                close_timeout=self._settings.close_timeout_s,
                max_size=self._settings.max_message_bytes,
                write_limit=self._settings.write_limit_bytes,
            )
        except asyncio.TimeoutError as exc:
            raise HandshakeTimeout(
                f"Opening the connection to {self._wire.name} timed out",
                details={"url": target.url.split("?")[0]},
            ) from exc
        except (OSError, WebSocketException) as exc:
            raise HandshakeError(
                f"Could not connect to {self._wire.name}: {exc}",
                details={"url": target.url.split("?")[0]},
            ) from exc
        self._logger.info(
            "Connected to %s", target.url.split("?")[0],
            extra={"event": "transport_open"},
        )

        try:
            if self._wire.config_message is not None:
                message = self._wire.config_message(self._config, self._settings)
                await self._ws.send(json.dumps(message))
            if self._wire.is_ack is not None:
                await self._await_ack(self._wire.is_ack)
        except ConnectionClosed as exc:
            code, reason = _close_details(exc)
            raise HandshakeError(
                f"{self._wire.name} closed the connection during the handshake "
                f"(code {code}{': ' + reason if reason else ''})",
                details={"close_code": code, "reason": reason},
            ) from exc
        except OSError as exc:
            raise HandshakeError(
                f"Connection to {self._wire.name} failed during the handshake: {exc}"
            ) from exc

    async def _await_ack(self, is_ack: Callable[[dict], bool]) -> None:
        while True:
            raw = await self._ws.recv()
            events = self._normalizer.normalize(raw)
            for event in events:
                if event.is_fatal_error:
                    raise HandshakeError(
                        event.payload.message,  # type: ignore[union-attr]
                        details=event.payload.details,  # type: ignore[union-attr]
                    )
            self._pending.extend(events)
            message = parse_json_object(raw)
            if message is not None and is_ack(message):
                self._logger.debug("Handshake acknowledged")
                return

    # ── Inbound ───────────────────────────────────────────

    async def events(self) -> AsyncIterator[list[StreamEvent]]:
        """Yield normalized events per inbound message until the transport closes.

        Returns normally on a clean close; raises ``TransportError`` otherwise.
        """
        if self._pending:
            pending, self._pending = self._pending, []
            yield pending
        try:
            while True:
                raw = await self._ws.recv()
                self._logger.debug("Inbound frame: %r", raw)
                events = self._normalizer.normalize(raw)
                if events:
                    yield events
        except ConnectionClosedOK as exc:
            self.close_code, self.close_reason = _close_details(exc)
        except ConnectionClosed as exc:
            self.close_code, self.close_reason = _close_details(exc)
            raise TransportError(
                f"Connection to {self._wire.name} lost (code {self.close_code})",
                details={"close_code": self.close_code, "reason": self.close_reason},
            ) from exc
        except OSError as exc:
            self.close_code = ABNORMAL_CLOSURE
            raise TransportError(f"Connection to {self._wire.name} failed: {exc}") from exc

    # ── Outbound ──────────────────────────────────────────

    def _regroup(self, chunk: AudioChunk) -> list[AudioChunk]:
        if self._rebuffer is None:
            return [chunk]
        parts = [AudioChunk(data) for data in self._rebuffer.add(chunk.data)]
        if chunk.is_last:
            tail = self._rebuffer.flush()
            if tail:
                parts.append(AudioChunk(tail))
            if parts:
                parts[-1] = AudioChunk(parts[-1].data, is_last=True)
            else:
                parts.append(AudioChunk(is_last=True))
        return parts

    async def _transmit(self, frame: WireFrame) -> None:
        # send() waits for the write buffer to drain below write_limit
        try:
            await self._ws.send(frame)
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(
                f"Failed to write to {self._wire.name}: {exc}",
                code=ErrorCode.SEND_ERROR,
            ) from exc

    async def send_audio(self, chunk: AudioChunk) -> None:
        """Encode and write *chunk*; concurrent callers are written in call order."""
        async with self._send_lock:
            if self._closed or self._ws is None:
                raise AudioSendError("Transport is not open")
            if self._stream_ended:
                raise AudioSendError("Audio stream already ended with a final chunk")
            for part in self._regroup(chunk):
                for frame in self._wire.codec.encode(part, frames_sent=self._frames_sent):
                    await self._transmit(frame)
                if part.data:
                    self._frames_sent += 1
                    self._bytes_sent += len(part.data)
            if chunk.is_last:
                self._stream_ended = True
                self._logger.info(
                    "End of audio after %d frames", self._frames_sent,
                    extra={"event": "end_of_stream"},
                )

    async def _send_control(self, message: dict) -> None:
        async with self._send_lock:
            if self._closed or self._ws is None:
                raise AudioSendError("Transport is not open")
            await self._transmit(json.dumps(message))

    async def update_configuration(self, options: Mapping[str, Any]) -> None:
        if self._wire.update_message is None:
            raise CapabilityError(
                f"Backend '{self._wire.name}' does not support mid-session configuration updates."
            )
        await self._send_control(self._wire.update_message(options))

    async def force_endpoint(self) -> None:
        if self._wire.endpoint_message is None:
            raise CapabilityError(
                f"Backend '{self._wire.name}' does not support forcing an endpoint."
            )
        await self._send_control(self._wire.endpoint_message)

    # ── Teardown ──────────────────────────────────────────

    async def _finish_stream(self) -> None:
        async with self._send_lock:
            if not self._stream_ended:
                eos = self._wire.codec.end_of_stream(self._frames_sent)
                if eos is not None:
                    await self._transmit(eos)
                self._stream_ended = True
            await self._ws.close()

    async def close(self) -> None:
        """Send the end-of-stream signal if still owed, then close the transport.

        Idempotent.  Bounded by ``close_timeout_ms``.
        """
        if self._closed:
            return
        self._closed = True
        if self._ws is None:
            return
        try:
            await asyncio.wait_for(self._finish_stream(), timeout=self._settings.close_timeout_s)
        except asyncio.TimeoutError:
            self._logger.warning(
                "Close did not complete within %.1fs", self._settings.close_timeout_s,
                extra={"event": "close_timeout"},
            )
            await self.abort()
        except TransportError as exc:
            self._logger.warning(
                "Transport failed while closing: %s", exc,
                extra={"error_code": exc.code},
            )
        if self.close_code is None:
            self.close_code = getattr(self._ws, "close_code", None)
            self.close_reason = getattr(self._ws, "close_reason", None) or ""
        self._logger.info("Closed", extra={"event": "transport_closed"})

    async def abort(self) -> None:
        """Close the transport without the end-of-stream handshake."""
        self._closed = True
        if self._ws is None:
            return
        try:
            await self._ws.close()
        except (ConnectionClosed, OSError) as exc:
            self._logger.debug("Abort close raised: %s", exc)
