"""
Observable session state.

One owned record, exposed as an immutable snapshot plus subscribe/notify.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, List, Optional

from .state_machine import ConnectionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    connection_state: ConnectionState = ConnectionState.IDLE
    is_muted: bool = False
    volume: float = 0.0
    error_message: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED


SnapshotListener = Callable[[SessionSnapshot], None]


class SessionStore:
    """Holds the current snapshot and notifies subscribers on change."""

    def __init__(self, initial: Optional[SessionSnapshot] = None):
        self._snapshot = initial or SessionSnapshot()
        self._listeners: List[SnapshotListener] = []
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """
        Register a listener called with each new snapshot.

        Returns:
            Function that unsubscribes the listener
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def update(self, **changes) -> SessionSnapshot:
        """Replace fields; listeners are notified only if something changed."""
        if "volume" in changes:
            changes["volume"] = min(1.0, max(0.0, float(changes["volume"])))

        with self._lock:
            new = replace(self._snapshot, **changes)
            if new == self._snapshot:
                return new
            self._snapshot = new

        for listener in list(self._listeners):
            try:
                listener(new)
            except Exception as e:
                logger.error(f"Error in state subscriber: {e}", exc_info=True)
        return new
