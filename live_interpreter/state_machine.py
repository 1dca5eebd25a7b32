"""
Connection state machine.

Pure bookkeeping: an explicit transition table, the current state and
the single error message. No I/O happens here; the connection manager
fires events as its I/O succeeds or fails.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class SessionEvent(str, Enum):
    CONNECT = "connect"
    HANDSHAKE_OK = "handshake_ok"
    FAIL = "fail"
    DISCONNECT = "disconnect"
    RETRY = "retry"


TRANSITIONS: Dict[Tuple[ConnectionState, SessionEvent], ConnectionState] = {
    (ConnectionState.IDLE, SessionEvent.CONNECT): ConnectionState.CONNECTING,
    # configuration rejected before any I/O
    (ConnectionState.IDLE, SessionEvent.FAIL): ConnectionState.ERROR,
    (ConnectionState.CONNECTING, SessionEvent.HANDSHAKE_OK): ConnectionState.CONNECTED,
    (ConnectionState.CONNECTING, SessionEvent.FAIL): ConnectionState.ERROR,
    (ConnectionState.CONNECTED, SessionEvent.FAIL): ConnectionState.ERROR,
    (ConnectionState.ERROR, SessionEvent.RETRY): ConnectionState.CONNECTING,
    (ConnectionState.IDLE, SessionEvent.DISCONNECT): ConnectionState.IDLE,
    (ConnectionState.CONNECTING, SessionEvent.DISCONNECT): ConnectionState.IDLE,
    (ConnectionState.CONNECTED, SessionEvent.DISCONNECT): ConnectionState.IDLE,
    (ConnectionState.ERROR, SessionEvent.DISCONNECT): ConnectionState.IDLE,
}

TransitionListener = Callable[[ConnectionState, ConnectionState, Optional[str]], None]


def next_state(state: ConnectionState, event: SessionEvent) -> ConnectionState:
    """
    Look up a transition.

    Raises:
        InvalidTransitionError: If the table has no entry for (state, event)
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Event '{event.value}' is not allowed in state '{state.value}'"
        ) from None


class ConnectionStateMachine:
    """
    The one ConnectionState of the process.

    ``error_message`` is set on every entry into ``error`` and cleared on
    every exit from it.
    """

    def __init__(self):
        self._state = ConnectionState.IDLE
        self._error_message: Optional[str] = None
        self._listeners: List[TransitionListener] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    def can_fire(self, event: SessionEvent) -> bool:
        return (self._state, event) in TRANSITIONS

    def add_listener(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def fire(self, event: SessionEvent, message: Optional[str] = None) -> ConnectionState:
        """
        Apply an event.

        Args:
            event: Event to apply
            message: Human-readable cause, used when entering ``error``

        Returns:
            The new state

        Raises:
            InvalidTransitionError: If the event is not allowed now
        """
        with self._lock:
            old = self._state
            new = next_state(old, event)
            if old is new:
                # idle + disconnect
                return new

            self._state = new
            if new is ConnectionState.ERROR:
                self._error_message = message or "Unknown error"
            else:
                self._error_message = None
            error_message = self._error_message

        if new is ConnectionState.ERROR:
            logger.error(f"Connection {old.value} -> {new.value}: {error_message}")
        else:
            logger.info(f"Connection {old.value} -> {new.value}")

        for listener in list(self._listeners):
            try:
                listener(old, new, error_message)
            except Exception as e:
                logger.error(f"Error in state listener: {e}", exc_info=True)
        return new
