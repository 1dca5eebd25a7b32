"""
Push-to-talk speaker selector for split-audio sessions.

The microphone is shared by both speakers. While the hotkey is held the
audio belongs to Speaker B; on release it goes back to Speaker A. Key
events come from the optional ``keyboard`` library on its own hook thread.
"""

import logging
import threading
import time
from typing import Callable, List

from .duplex import SpeakerChannel

logger = logging.getLogger(__name__)

try:
    import keyboard
    KEYBOARD_AVAILABLE = True
except ImportError:
    KEYBOARD_AVAILABLE = False
    logger.warning("keyboard library not available - PTT disabled")

ChannelListener = Callable[[SpeakerChannel], None]


class PTTHandler:
    """
    Maps hotkey press/release to the active speaker channel.

    Auto-repeat presses and events inside the debounce window are ignored,
    so listeners only hear real changes.
    """

    def __init__(
        self,
        ptt_key: str = "F8",
        debounce_ms: int = 50,
        held_channel: SpeakerChannel = SpeakerChannel.B,
        idle_channel: SpeakerChannel = SpeakerChannel.A,
    ):
        self.ptt_key = ptt_key
        self.debounce_s = debounce_ms / 1000
        self.held_channel = held_channel
        self.idle_channel = idle_channel

        self._listeners: List[ChannelListener] = []
        self._guard = threading.Lock()
        self._held = False
        self._last_change = float("-inf")
        self._hooked = False

    @property
    def channel(self) -> SpeakerChannel:
        """Channel implied by the current key position."""
        return self.held_channel if self.is_pressed() else self.idle_channel

    def subscribe(self, listener: ChannelListener):
        """Register ``listener(channel)`` for every speaker change."""
        self._listeners.append(listener)
        logger.info(f"PTT listener registered on {self.ptt_key}")

    def _handle_key_event(self, event):
        now = time.monotonic()
        want_held = event.event_type == 'down'

        with self._guard:
            if want_held == self._held or now - self._last_change < self.debounce_s:
                return
            self._held = want_held
            self._last_change = now

        channel = self.held_channel if want_held else self.idle_channel
        logger.debug(f"PTT {self.ptt_key} {'down' if want_held else 'up'} -> speaker {channel.value}")
        for listener in list(self._listeners):
            try:
                listener(channel)
            except Exception as e:
                logger.error(f"PTT listener failed: {e}")

    def start(self) -> bool:
        """
        Hook the hotkey.

        Returns:
            False if the keyboard library is missing or refuses the hook
            (on Linux it needs root)
        """
        if not KEYBOARD_AVAILABLE:
            logger.error("Cannot start PTT - keyboard library not available")
            return False
        if self._hooked:
            return True

        try:
            keyboard.hook_key(self.ptt_key, self._handle_key_event)
        except Exception as e:
            logger.error(f"Cannot hook PTT key {self.ptt_key}: {e}")
            return False

        self._hooked = True
        logger.info(f"PTT active: hold {self.ptt_key} for speaker {self.held_channel.value}")
        return True

    def stop(self):
        """Unhook the hotkey; the selector falls back to the idle channel."""
        if not self._hooked:
            return
        self._hooked = False
        try:
            keyboard.unhook_key(self.ptt_key)
        except (KeyError, ValueError) as e:
            logger.warning(f"PTT key {self.ptt_key} was already unhooked: {e}")
        with self._guard:
            self._held = False
        logger.info("PTT stopped")

    def is_pressed(self) -> bool:
        with self._guard:
            return self._held

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
