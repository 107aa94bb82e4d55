"""Caller-facing handle for one live transcription session."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional, Union, cast

from speech_bridge.adapters.websocket import WebSocketSessionAdapter
from speech_bridge.audio import AudioChunk
from speech_bridge.config import Settings
from speech_bridge.errors import (
    AudioSendError,
    HandshakeError,
    HandshakeTimeout,
    SpeechBridgeError,
    TransportError,
)
from speech_bridge.events import (
    Closed,
    Opened,
    StreamError,
    StreamEvent,
    StreamEventType,
    Transcript,
)
from speech_bridge.feed import EventFeed, StreamHandlers
from speech_bridge.lifecycle import LifecycleStateMachine, SessionState
from speech_bridge.logging import session_logger
from speech_bridge.metrics import SessionMetrics
from speech_bridge.schemas import StreamingConfiguration

NORMAL_CLOSURE = 1000


class Session:
    """One streaming session against one backend.

    Owns the adapter, the lifecycle state machine, the ordered event feed and
    the tasks that drive them.  Every session ends with exactly one ``close``
    event, published together with its move to ``closed`` or ``errored``.
    """

    def __init__(
        self,
        backend: str,
        config: StreamingConfiguration,
        adapter: WebSocketSessionAdapter,
        settings: Settings,
        *,
        handlers: Optional[StreamHandlers] = None,
        session_id: Optional[str] = None,
        on_finished: Optional[Callable[[Session], None]] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex[:12]
        self.backend = backend
        self.config = config
        self.created_at = datetime.now(timezone.utc)
        self.error: Optional[SpeechBridgeError] = None
        self.metrics = SessionMetrics(session_id=self.id, backend=backend)

        self._adapter = adapter
        self._settings = settings
        self._lifecycle = LifecycleStateMachine(self.id, backend)
        # Handler-driven sessions have a live consumer from the start, so no replay backlog
        self._feed = EventFeed(
            self.id,
            replay=handlers is None,
            max_pending=settings.max_pending_events,
        )
        self._handlers = handlers
        self._handler_queue = self._feed.subscribe() if handlers else None
        self._on_finished = on_finished

        # Task registry, awaited on close
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._settled = asyncio.Event()
        self._finished = asyncio.Event()
        self._logger = session_logger("session", self.id, backend)

    # ── Status ────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._lifecycle.state

    def get_status(self) -> SessionState:
        return self._lifecycle.state

    @property
    def history(self) -> tuple[SessionState, ...]:
        return self._lifecycle.history

    @property
    def is_finished(self) -> bool:
        return self._lifecycle.is_terminal

    def events(self) -> AsyncIterator[StreamEvent]:
        """Ordered events from ``open`` (or the first error) through ``close``."""
        return self._feed.stream()

    # ── Startup ───────────────────────────────────────────

    def start(self) -> None:
        """Schedule the handshake and the inbound reader."""
        self.metrics.mark_started()
        self._tasks["run"] = asyncio.create_task(self._run(), name=f"session-{self.id}")
        if self._handlers is not None and self._handler_queue is not None:
            self._tasks["dispatch"] = asyncio.create_task(
                self._dispatch_handlers(self._handlers, self._handler_queue),
                name=f"session-{self.id}-handlers",
            )

    async def wait_until_open(self) -> None:
        """Return once the session is open; raise the failure if it never opens."""
        await self._settled.wait()
        if self._lifecycle.state is SessionState.OPEN:
            return
        if self.error is not None:
            raise self.error
        raise TransportError(f"Session {self.id} is {self._lifecycle.state.value}")

    async def wait_closed(self) -> None:
        """Return after the final transition and after handlers have seen ``close``."""
        await self._finished.wait()
        await self._drain_handlers()

    async def _run(self) -> None:
        timeout = self._settings.handshake_timeout_s
        try:
            await asyncio.wait_for(self._adapter.open(), timeout=timeout)
        except asyncio.TimeoutError:
            self._fail(
                HandshakeTimeout(
                    f"Handshake with {self.backend} did not complete within {timeout:.1f}s",
                    details={"timeout_s": timeout},
                )
            )
            await self._adapter.abort()
            return
        except SpeechBridgeError as exc:
            self._fail(exc)
            await self._adapter.abort()
            return
        except Exception as exc:
            self._logger.exception("Handshake raised unexpectedly: %s", exc)
            self._fail(
                HandshakeError(
                    f"Handshake with {self.backend} failed: {exc}",
                    details={"exception": type(exc).__name__},
                )
            )
            await self._adapter.abort()
            return

        self._lifecycle.transition(SessionState.OPEN, "handshake complete")
        self.metrics.mark_opened()
        self._settled.set()
        self._emit(StreamEvent.of(self.backend, Opened(session_id=self.id)))

        try:
            await self._read()
        except Exception as exc:
            self._logger.exception("Reader failed: %s", exc)
            self._fail(SpeechBridgeError(str(exc)))
            await self._adapter.abort()

    async def _read(self) -> None:
        try:
            async for events in self._adapter.events():
                for event in events:
                    if self._lifecycle.state is SessionState.OPEN:
                        await self._feed.wait_writable()
                    if self._lifecycle.is_terminal:
                        return
                    if self._lifecycle.state is not SessionState.OPEN:
                        # closing: the caller no longer receives backend events
                        continue
                    self._emit(event)
                    if event.is_fatal_error:
                        await self._fatal(event)
                        return
        except TransportError as exc:
            if self._lifecycle.state is SessionState.OPEN:
                self._fail(exc)
                await self._adapter.abort()
            return

        if self._lifecycle.state is SessionState.OPEN:
            self._lifecycle.transition(SessionState.CLOSING, "closed by backend")
            self._finish(
                SessionState.CLOSED,
                Closed(code=self._adapter.close_code, reason=self._adapter.close_reason),
            )
            await self._adapter.abort()

    async def _fatal(self, event: StreamEvent) -> None:
        payload = cast(StreamError, event.payload)
        self._logger.error(
            "Backend reported a fatal error: %s", payload.message,
            extra={"error_code": payload.code},
        )
        self._finish(
            SessionState.ERRORED,
            Closed(code=self._adapter.close_code, reason=payload.message),
            error=SpeechBridgeError(payload.message, code=payload.code, details=payload.details),
        )
        await self._adapter.abort()

    # ── Event publication ─────────────────────────────────

    def _emit(self, event: StreamEvent) -> None:
        if not self._lifecycle.delivers_events:
            return
        if isinstance(event.payload, Transcript):
            self.metrics.record_transcript()
            if self._settings.log_transcripts and event.payload.is_final:
                self._logger.info(
                    "Final transcript: %s", event.payload.text,
                    extra={"event": "transcript"},
                )
        elif event.type is StreamEventType.ERROR:
            self.metrics.errors += 1
        if self._feed.publish(event):
            self.metrics.events_delivered += 1

    def _fail(self, exc: SpeechBridgeError) -> None:
        """Report *exc* as a fatal error event, then end the session as errored."""
        if self._lifecycle.is_terminal:
            return
        self._logger.error(
            "Session failed: %s", exc.message,
            extra={"error_code": exc.code},
        )
        self._emit(
            StreamEvent.of(
                self.backend,
                StreamError(code=exc.code, message=exc.message, details=exc.details, fatal=True),
            )
        )
        self._finish(
            SessionState.ERRORED,
            Closed(code=self._adapter.close_code, reason=exc.message),
            error=exc,
        )

    def _finish(
        self,
        state: SessionState,
        closed: Closed,
        error: Optional[SpeechBridgeError] = None,
    ) -> None:
        """Final transition and the ``close`` event, with no suspension between them."""
        if self._lifecycle.is_terminal:
            return
        self.error = error
        self._lifecycle.transition(state, closed.reason)
        if self._feed.publish(StreamEvent.of(self.backend, closed)):
            self.metrics.events_delivered += 1
        self.metrics.emit()
        self._settled.set()
        self._finished.set()
        if self._on_finished is not None:
            self._on_finished(self)

    async def _dispatch_handlers(
        self,
        handlers: StreamHandlers,
        queue: asyncio.Queue[Optional[StreamEvent]],
    ) -> None:
        while True:
            event = await self._feed.next(queue)
            if event is None:
                return
            await handlers.dispatch(event, self.id)

    async def _drain_handlers(self) -> None:
        task = self._tasks.get("dispatch")
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    # ── Outbound ──────────────────────────────────────────

    async def send_audio(self, chunk: Union[AudioChunk, bytes], is_last: bool = False) -> None:
        """Forward audio to the backend.  Only valid while the session is open."""
        if not isinstance(chunk, AudioChunk):
            chunk = AudioChunk(bytes(chunk), is_last=is_last)
        if not self._lifecycle.accepts_audio:
            raise AudioSendError(
                f"Cannot send audio while session {self.id} is {self._lifecycle.state.value}"
            )
        await self._guarded(self._adapter.send_audio(chunk))
        if chunk.data:
            self.metrics.record_chunk(len(chunk.data))

    async def update_configuration(self, **options: Any) -> None:
        """Change recognition options mid-session, where the backend allows it."""
        self._require_open("configuration updates")
        await self._guarded(self._adapter.update_configuration(options))

    async def force_endpoint(self) -> None:
        """Ask the backend to finalize the current utterance now."""
        self._require_open("forced endpoints")
        await self._guarded(self._adapter.force_endpoint())

    def _require_open(self, what: str) -> None:
        if self._lifecycle.state is not SessionState.OPEN:
            raise AudioSendError(
                f"Cannot send {what} while session {self.id} is {self._lifecycle.state.value}"
            )

    async def _guarded(self, operation: Any) -> None:
        try:
            await operation
        except TransportError as exc:
            if self._lifecycle.state is SessionState.OPEN:
                self._fail(exc)
                await self._adapter.abort()
            raise

    # ── Cleanup ───────────────────────────────────────────

    async def close(self) -> None:
        """Close the session.  Idempotent; returns once the session is terminal."""
        state = self._lifecycle.state
        if state is SessionState.CLOSING:
            await self._finished.wait()
        elif state is SessionState.CONNECTING:
            await self._cancel_run()
            await self._adapter.abort()
            self._finish(SessionState.CLOSED, Closed(reason="closed during handshake"))
        elif state is SessionState.OPEN:
            self._lifecycle.transition(SessionState.CLOSING, "closed by caller")
            self._feed.release()
            await self._adapter.close()
            await self._cancel_run()
            self._finish(
                SessionState.CLOSED,
                Closed(
                    code=self._adapter.close_code or NORMAL_CLOSURE,
                    reason=self._adapter.close_reason or "closed by caller",
                ),
            )
        await self._drain_handlers()

    async def _cancel_run(self) -> None:
        task = self._tasks.get("run")
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        results = await asyncio.gather(task, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self._logger.warning("Session task raised during cleanup: %s", result)

    async def __aenter__(self) -> Session:
        await self.wait_until_open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
