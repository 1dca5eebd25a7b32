"""
Error taxonomy for the live session core.

Every failure surfaces as the session's ``error`` state; the message of the
exception becomes the user-visible ``error_message``.
"""


class LiveSessionError(Exception):
    """Base class for all session failures."""

    reason = "Session error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(LiveSessionError, ValueError):
    """Missing or invalid credential, or invalid language pair. No I/O is attempted."""

    reason = "Configuration error"


class DeviceError(LiveSessionError):
    """Microphone or output device could not be acquired."""

    reason = "Audio device error"


class HandshakeError(LiveSessionError):
    """Remote service rejected the session or did not answer in time."""

    reason = "Connection failed"


class StreamError(LiveSessionError):
    """Network or protocol failure after the session was established."""

    reason = "Connection lost"


class InvalidTransitionError(LiveSessionError):
    """An event was fired that the current connection state does not accept."""

    reason = "Invalid state transition"
