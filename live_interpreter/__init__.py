"""
Live Interpreter Package.

Real-time two-way speech interpretation between two languages over the
Gemini Live bidirectional streaming API, with an optional split-audio
mode for two speakers sharing one microphone.
"""

from .config import Config, SessionConfig
from .duplex import SpeakerChannel
from .languages import Language
from .ptt import PTTHandler
from .session import LiveSession
from .state import SessionSnapshot
from .state_machine import ConnectionState

__version__ = "0.1.0"
__all__ = [
    "Config",
    "SessionConfig",
    "Language",
    "LiveSession",
    "SessionSnapshot",
    "ConnectionState",
    "SpeakerChannel",
    "PTTHandler",
]
