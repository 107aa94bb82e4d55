"""Ordered per-session event feed and the named-handler projection over it."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, fields
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from speech_bridge.errors import ConfigurationError
from speech_bridge.events import StreamEvent, StreamEventType
from speech_bridge.logging import get_logger

logger = get_logger("feed")

Handler = Callable[[StreamEvent], Union[None, Awaitable[None]]]

DEFAULT_MAX_PENDING = 1000

_END = None


class EventFeed:
    """Single ordered feed of ``StreamEvent`` for one session.

    ``publish`` is synchronous so an event is ordered exactly where it is
    published.  The feed ends after the ``close`` event; publishing after that
    is rejected.

    With ``replay=True``, events published before the first ``stream()``
    reader attaches are held and replayed to it, so nothing is lost between
    ``create_session`` returning and the caller starting to iterate.

    ``publish`` never drops an event.  Instead the producer awaits
    ``wait_writable()`` before each one, which blocks while the backlog or
    any subscriber queue holds ``max_pending`` undelivered events.  Once
    ``release()`` is called the bound no longer applies.
    """

    def __init__(
        self,
        session_id: str = "",
        *,
        replay: bool = True,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        self._session_id = session_id
        self._subscribers: list[asyncio.Queue[StreamEvent | None]] = []
        self._backlog: list[StreamEvent] | None = [] if replay else None
        self._max_pending = max_pending
        self._writable = asyncio.Event()
        self._writable.set()
        self._released = False
        self._closed = False
        self._published = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def published(self) -> int:
        return self._published

    @property
    def pending(self) -> int:
        """Undelivered events held for the slowest consumer."""
        sizes = [q.qsize() for q in self._subscribers]
        if self._backlog is not None:
            sizes.append(len(self._backlog))
        return max(sizes, default=0)

    def _refresh(self) -> None:
        if self._released or self._closed or self.pending < self._max_pending:
            self._writable.set()
        else:
            self._writable.clear()

    async def wait_writable(self) -> None:
        await self._writable.wait()

    def release(self) -> None:
        """Stop holding producers back; used once the session stops delivering."""
        self._released = True
        self._writable.set()

    def publish(self, event: StreamEvent) -> bool:
        if self._closed:
            logger.debug(
                "Dropping %s event published after close",
                event.type.value,
                extra={"session_id": self._session_id, "event": "feed_closed"},
            )
            return False
        self._published += 1
        if self._backlog is not None:
            self._backlog.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)
        if event.is_terminal:
            self._closed = True
            for queue in self._subscribers:
                queue.put_nowait(_END)
        self._refresh()
        return True

    def subscribe(self, *, replay: bool = False) -> asyncio.Queue[StreamEvent | None]:
        """Register a queue receiving every later event, then ``None`` at the end.

        Consumers should read it through ``next()`` so a drained queue
        releases a waiting producer.
        """
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        if replay and self._backlog is not None:
            for event in self._backlog:
                queue.put_nowait(event)
            self._backlog = None
        if self._closed:
            queue.put_nowait(_END)
        else:
            self._subscribers.append(queue)
        self._refresh()
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StreamEvent | None]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)
            self._refresh()

    async def next(self, queue: asyncio.Queue[StreamEvent | None]) -> StreamEvent | None:
        event = await queue.get()
        self._refresh()
        return event

    async def stream(self) -> AsyncIterator[StreamEvent]:
        """Iterate events until (and including) the ``close`` event."""
        queue = self.subscribe(replay=True)
        try:
            while True:
                event = await self.next(queue)
                if event is _END:
                    return
                yield event
        finally:
            self.unsubscribe(queue)


_HANDLER_BY_TYPE: dict[StreamEventType, str] = {
    StreamEventType.OPEN: "on_open",
    StreamEventType.TRANSCRIPT: "on_transcript",
    StreamEventType.UTTERANCE: "on_utterance",
    StreamEventType.SPEECH_START: "on_speech_start",
    StreamEventType.SPEECH_END: "on_speech_end",
    StreamEventType.TRANSLATION: "on_translation",
    StreamEventType.SENTIMENT: "on_sentiment",
    StreamEventType.ENTITY: "on_entity",
    StreamEventType.SUMMARIZATION: "on_summarization",
    StreamEventType.CHAPTERIZATION: "on_chapterization",
    StreamEventType.METADATA: "on_metadata",
    StreamEventType.ERROR: "on_error",
    StreamEventType.CLOSE: "on_close",
}


@dataclass
class StreamHandlers:
    """Named callbacks, each receiving the full ``StreamEvent``.

    Handlers may be plain functions or coroutine functions.  ``on_event``
    sees every event before the type-specific handler does.
    """

    on_open: Optional[Handler] = None
    on_transcript: Optional[Handler] = None
    on_utterance: Optional[Handler] = None
    on_speech_start: Optional[Handler] = None
    on_speech_end: Optional[Handler] = None
    on_translation: Optional[Handler] = None
    on_sentiment: Optional[Handler] = None
    on_entity: Optional[Handler] = None
    on_summarization: Optional[Handler] = None
    on_chapterization: Optional[Handler] = None
    on_metadata: Optional[Handler] = None
    on_error: Optional[Handler] = None
    on_close: Optional[Handler] = None
    on_event: Optional[Handler] = None

    @classmethod
    def from_mapping(cls, handlers: dict[str, Handler]) -> StreamHandlers:
        known = {f.name for f in fields(cls)}
        unknown = set(handlers) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown handler name(s): {', '.join(sorted(unknown))}",
                details={"known": sorted(known)},
            )
        return cls(**handlers)

    def for_event(self, event: StreamEvent) -> list[Handler]:
        selected = [self.on_event, getattr(self, _HANDLER_BY_TYPE[event.type])]
        return [h for h in selected if h is not None]

    async def dispatch(self, event: StreamEvent, session_id: str = "") -> None:
        """Invoke the matching handlers in order; handler failures are logged only."""
        for handler in self.for_event(event):
            try:
                result: Any = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception(
                    "Handler %s failed on %s event: %s",
                    getattr(handler, "__name__", repr(handler)),
                    event.type.value,
                    exc,
                    extra={"session_id": session_id, "event": "handler_error"},
                )
