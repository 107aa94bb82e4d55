"""Session coordinator: backend selection, pre-flight checks and live-session tracking."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Mapping, Optional, Union

import aiohttp
import websockets

from speech_bridge.adapters.base import HttpSessionFactory
from speech_bridge.adapters.websocket import WebSocketSessionAdapter
from speech_bridge.config import Settings, get_settings
from speech_bridge.errors import CapabilityError, ConfigurationError, SessionLimitError
from speech_bridge.feed import Handler, StreamHandlers
from speech_bridge.logging import get_logger, setup_logging
from speech_bridge.registry import BackendRegistry
from speech_bridge.schemas import StreamingConfiguration, coerce_configuration
from speech_bridge.session import Session

logger = get_logger("coordinator")

HandlersArg = Union[StreamHandlers, Mapping[str, Handler], None]


class SessionCoordinator:
    """Creates streaming sessions and tracks the live ones, with a hard cap.

    Every check that can fail without touching the network (unknown backend,
    batch-only backend, bad configuration, missing credential, session cap)
    raises from ``create_session`` before any connection is attempted.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        settings: Optional[Settings] = None,
        *,
        connect: Callable[..., Any] = websockets.connect,
        http_session_factory: HttpSessionFactory = aiohttp.ClientSession,
        configure_logging: bool = False,
    ) -> None:
        self._registry = registry
        self._settings = settings or get_settings()
        if configure_logging:
            setup_logging(self._settings.log_level)
        self._connect = connect
        self._http_session_factory = http_session_factory
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._next_backend = 0

    @property
    def registry(self) -> BackendRegistry:
        return self._registry

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def select_backend(self, backend: Optional[str] = None) -> str:
        """Resolve the backend name using ``selection_strategy`` when none is given."""
        if backend:
            return backend
        strategy = self._settings.selection_strategy
        if strategy == "default":
            if not self._settings.default_backend:
                raise ConfigurationError(
                    "No backend given and no default_backend configured."
                )
            return self._settings.default_backend
        if strategy == "round-robin":
            candidates = self._registry.streaming_backends()
            if not candidates:
                raise ConfigurationError("No streaming backends are registered.")
            name = candidates[self._next_backend % len(candidates)]
            self._next_backend += 1
            return name
        raise ConfigurationError(
            "A backend name is required with the explicit selection strategy."
        )

    async def create_session(
        self,
        backend: Optional[str] = None,
        config: Union[StreamingConfiguration, Mapping[str, Any], None] = None,
        handlers: HandlersArg = None,
    ) -> Session:
        """Validate, register and start a session.  Does not wait for the handshake."""
        name = self.select_backend(backend)
        entry = self._registry.get(name)
        if not entry.streaming or entry.wire is None:
            raise CapabilityError(
                f"Backend '{name}' does not support streaming transcription.",
                details={"backend": name},
            )
        resolved = coerce_configuration(config)
        entry.wire.check_configuration(resolved)
        entry.wire.api_key(self._settings)
        if handlers is not None and not isinstance(handlers, StreamHandlers):
            handlers = StreamHandlers.from_mapping(dict(handlers))

        async with self._lock:
            if len(self._sessions) >= self._settings.max_concurrent_sessions:
                raise SessionLimitError(
                    f"Max concurrent sessions ({self._settings.max_concurrent_sessions}) reached.",
                    details={"active": len(self._sessions)},
                )

            session_id = uuid.uuid4().hex[:12]
            adapter = WebSocketSessionAdapter(
                entry.wire,
                resolved,
                self._settings,
                connect=self._connect,
                http_session_factory=self._http_session_factory,
                session_id=session_id,
            )
            session = Session(
                name,
                resolved,
                adapter,
                self._settings,
                handlers=handlers,
                session_id=session_id,
                on_finished=self._forget,
            )
            self._sessions[session.id] = session
            session.start()
            logger.info(
                "Session created: %s (%s)",
                session.id,
                name,
                extra={
                    "session_id": session.id,
                    "backend": name,
                    "event": "session_created",
                },
            )
            return session

    def _forget(self, session: Session) -> None:
        if self._sessions.pop(session.id, None) is not None:
            logger.info(
                "Session removed: %s (%s)",
                session.id,
                session.state.value,
                extra={
                    "session_id": session.id,
                    "backend": session.backend,
                    "state": session.state.value,
                    "event": "session_removed",
                },
            )

    async def close_all(self) -> None:
        """Close every live session (for graceful process exit)."""
        async with self._lock:
            sessions = list(self._sessions.values())
        results = await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Session %s close error: %s", session.id, result,
                    extra={"session_id": session.id, "backend": session.backend},
                )
        logger.info("All sessions closed", extra={"event": "all_sessions_closed"})

    async def __aenter__(self) -> SessionCoordinator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close_all()
