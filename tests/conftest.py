"""Shared fixtures: scripted WebSocket connections and a fake HTTP session."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from speech_bridge.config import Settings
from speech_bridge.coordinator import SessionCoordinator
from speech_bridge.registry import build_default_registry

ABNORMAL = 1006


class _Terminal:
    """Queued marker: the next ``recv`` observes the connection closing."""

    def __init__(self, code: int, reason: str = "") -> None:
        self.code = code
        self.reason = reason

    def exception(self) -> Exception:
        if self.code == ABNORMAL:
            return ConnectionClosedError(None, None)
        if self.code in (1000, 1001):
            return ConnectionClosedOK(Close(self.code, self.reason), None)
        return ConnectionClosedError(Close(self.code, self.reason), None)


class FakeConnection:
    """Stands in for ``websockets.asyncio.client.ClientConnection``.

    Inbound messages are scripted with ``push``; ``respond`` queues replies
    whenever a matching frame is sent.
    """

    def __init__(self, url: str, headers: dict[str, str], options: dict[str, Any]) -> None:
        self.url = url
        self.headers = headers
        self.options = options
        self.sent: list[Any] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.fail_sends = False
        # Cleared to model a write buffer above the high-water mark
        self.drained = asyncio.Event()
        self.drained.set()
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._terminal: Optional[_Terminal] = None
        self._terminal_exc: Optional[Exception] = None
        self._responses: list[tuple[Callable[[Any], bool], tuple[Any, ...], Optional[int]]] = []

    # ── Scripting ─────────────────────────────────────────

    def push(self, *messages: Any) -> None:
        for message in messages:
            if isinstance(message, dict):
                message = json.dumps(message)
            self._inbox.put_nowait(message)

    def finish(self, code: int = 1000, reason: str = "") -> None:
        if self._terminal is None:
            self._terminal = _Terminal(code, reason)
            self._inbox.put_nowait(self._terminal)

    def drop(self) -> None:
        self.finish(ABNORMAL)

    def respond(
        self,
        trigger: Callable[[Any], bool],
        *messages: Any,
        close: Optional[int] = None,
    ) -> None:
        self._responses.append((trigger, messages, close))

    def sent_json(self) -> list[dict]:
        return [json.loads(f) for f in self.sent if isinstance(f, str)]

    def sent_binary(self) -> list[bytes]:
        return [f for f in self.sent if isinstance(f, bytes)]

    @property
    def unread(self) -> int:
        """Scripted inbound messages the adapter has not received yet."""
        return self._inbox.qsize()

    # ── Connection API used by the adapter ────────────────

    async def send(self, frame: Any) -> None:
        await asyncio.sleep(0)
        await self.drained.wait()
        if self.fail_sends:
            raise ConnectionClosedError(None, None)
        if self._terminal_exc is not None:
            raise self._terminal_exc
        self.sent.append(frame)
        for trigger, messages, close in self._responses:
            if trigger(frame):
                self.push(*messages)
                if close is not None:
                    self.finish(close)

    async def recv(self) -> Any:
        if self._terminal_exc is not None:
            raise self._terminal_exc
        item = await self._inbox.get()
        if isinstance(item, _Terminal):
            self.close_code = item.code
            self.close_reason = item.reason
            self._terminal_exc = item.exception()
            raise self._terminal_exc
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.finish(code, reason)
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason


def json_type(kind: str, field: str = "type") -> Callable[[Any], bool]:
    """Trigger matching a JSON text frame whose *field* equals *kind*."""

    def matches(frame: Any) -> bool:
        if not isinstance(frame, str):
            return False
        try:
            return json.loads(frame).get(field) == kind
        except ValueError:
            return False

    return matches


class FakeConnector:
    """Replaces ``websockets.connect``; records every connection it makes."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.on_connect: Optional[Callable[[FakeConnection], None]] = None
        self.error: Optional[Exception] = None
        self.calls = 0

    async def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls += 1
        if self.error is not None:
            raise self.error
        headers = dict(kwargs.pop("additional_headers", None) or {})
        conn = FakeConnection(url, headers, kwargs)
        if self.on_connect is not None:
            self.on_connect(conn)
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeResponse:
    def __init__(self, status: int, payload: Any, body: Optional[str] = None) -> None:
        self.status = status
        self._payload = payload
        self._body = body

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False

    async def text(self) -> str:
        return self._body if self._body is not None else json.dumps(self._payload)

    async def json(self, content_type: Any = None) -> Any:
        if self._body is not None:
            return json.loads(self._body)
        return self._payload


class FakeHttpSession:
    """Minimal ``aiohttp.ClientSession`` double for session-initiation calls."""

    def __init__(self, status: int = 201, payload: Any = None, body: Optional[str] = None) -> None:
        self.status = status
        self.body = body
        self.payload = payload if payload is not None else {
            "id": "live-123",
            "url": "wss://api.gladia.io/v2/live?token=abc",
        }
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.factory_kwargs: dict[str, Any] = {}

    def __call__(self, **kwargs: Any) -> FakeHttpSession:
        self.factory_kwargs = kwargs
        return self

    async def __aenter__(self) -> FakeHttpSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append((url, kwargs))
        return FakeResponse(self.status, self.payload, self.body)


async def collect(session: Any, timeout: float = 2.0) -> list:
    """Every event of *session*, through ``close``."""

    async def _drain() -> list:
        return [event async for event in session.events()]

    return await asyncio.wait_for(_drain(), timeout)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = dict(
        deepgram_api_key="dg-key",
        assemblyai_api_key="aai-key",
        gladia_api_key="gl-key",
        soniox_api_key="sx-key",
        speechmatics_api_key="sm-key",
        openai_api_key="oa-key",
        handshake_timeout_ms=1000,
        close_timeout_ms=500,
        default_backend="deepgram",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def http_session() -> FakeHttpSession:
    return FakeHttpSession()


@pytest.fixture
async def coordinator(settings, connector, http_session):
    coordinator = SessionCoordinator(
        build_default_registry(),
        settings,
        connect=connector,
        http_session_factory=http_session,
    )
    yield coordinator
    await coordinator.close_all()
