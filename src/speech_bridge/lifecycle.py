"""Session lifecycle state machine, independent of the backend behind it."""

from __future__ import annotations

from enum import Enum

from speech_bridge.logging import session_logger


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.ERRORED})

TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset(
        {SessionState.OPEN, SessionState.CLOSED, SessionState.ERRORED}
    ),
    SessionState.OPEN: frozenset({SessionState.CLOSING, SessionState.ERRORED}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED, SessionState.ERRORED}),
    SessionState.CLOSED: frozenset(),
    SessionState.ERRORED: frozenset(),
}


class IllegalTransitionError(RuntimeError):
    def __init__(self, current: SessionState, target: SessionState) -> None:
        super().__init__(f"Illegal session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def is_valid_path(states: list[SessionState]) -> bool:
    """True when *states* starts at ``connecting`` and follows legal edges only."""
    if not states or states[0] is not SessionState.CONNECTING:
        return False
    return all(b in TRANSITIONS[a] for a, b in zip(states, states[1:]))


class LifecycleStateMachine:
    """Tracks one session's state and rejects transitions off the graph."""

    def __init__(self, session_id: str = "", backend: str = "") -> None:
        self._session_id = session_id
        self._logger = session_logger("lifecycle", session_id, backend)
        self._state = SessionState.CONNECTING
        self._history: list[SessionState] = [SessionState.CONNECTING]

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> tuple[SessionState, ...]:
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def accepts_audio(self) -> bool:
        return self._state is SessionState.OPEN

    @property
    def delivers_events(self) -> bool:
        """Backend events reach the caller only before closing starts."""
        return self._state in (SessionState.CONNECTING, SessionState.OPEN)

    def can_transition(self, target: SessionState) -> bool:
        return target in TRANSITIONS[self._state]

    def transition(self, target: SessionState, reason: str = "") -> None:
        if not self.can_transition(target):
            raise IllegalTransitionError(self._state, target)
        previous = self._state
        self._state = target
        self._history.append(target)
        self._logger.info(
            "Session %s: %s -> %s%s",
            self._session_id,
            previous.value,
            target.value,
            f" ({reason})" if reason else "",
            extra={"state": target.value, "event": "state_transition"},
        )
