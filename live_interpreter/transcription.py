"""
Transcription event pipeline and transcript log.

Inbound transcription arrives as fragments; the pipeline buffers them per
turn and, on the remote turn-complete boundary, hands each complete
utterance to the observer exactly once, in arrival order.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Tuple

from .protocol import ServerMessage

logger = logging.getLogger(__name__)

TranscriptionObserver = Callable[[str, bool], None]


@dataclass(frozen=True)
class TranscriptEntry:
    """One displayed utterance."""
    source: str  # "user" | "ai"
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_user(self) -> bool:
        return self.source == "user"

    @classmethod
    def from_utterance(cls, text: str, is_user: bool) -> "TranscriptEntry":
        return cls(source="user" if is_user else "ai", text=text)


class TranscriptLog:
    """Append-only conversation log; insertion order is display order."""

    def __init__(self):
        self._entries: List[TranscriptEntry] = []

    def append(self, entry: TranscriptEntry) -> TranscriptEntry:
        self._entries.append(entry)
        return entry

    def add(self, text: str, is_user: bool) -> TranscriptEntry:
        return self.append(TranscriptEntry.from_utterance(text, is_user))

    def entries(self) -> Tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(self.entries())


def _normalize(fragments: List[str]) -> str:
    return " ".join("".join(fragments).split())


class TranscriptionPipeline:
    """
    Coalesces transcription fragments into complete utterances.

    Args:
        observer: Called with ``(text, is_user)`` once per utterance
        is_active: Delivery gate; utterances completing while it returns
            False are dropped
    """

    def __init__(
        self,
        observer: Optional[TranscriptionObserver] = None,
        is_active: Callable[[], bool] = lambda: True,
    ):
        self.observer = observer
        self.is_active = is_active
        self._user: List[str] = []
        self._model: List[str] = []
        self.delivered = 0

    def reset(self):
        """Forget any partial turn (new session)."""
        self._user.clear()
        self._model.clear()

    @property
    def has_pending(self) -> bool:
        return bool(self._user or self._model)

    def process(self, message: ServerMessage) -> List[Tuple[str, bool]]:
        """
        Consume one inbound frame.

        Returns:
            Utterances delivered because of this frame, in delivery order
        """
        content = message.server_content
        if content is None:
            return []

        if content.input_transcription and content.input_transcription.text:
            self._user.append(content.input_transcription.text)
        if content.output_transcription and content.output_transcription.text:
            self._model.append(content.output_transcription.text)

        if content.interrupted:
            logger.debug("Remote turn interrupted")

        if not content.turn_complete:
            return []

        utterances = []
        for fragments, is_user in ((self._user, True), (self._model, False)):
            text = _normalize(fragments)
            fragments.clear()
            if text:
                utterances.append((text, is_user))

        delivered = []
        for text, is_user in utterances:
            if self._dispatch(text, is_user):
                delivered.append((text, is_user))
        return delivered

    def _dispatch(self, text: str, is_user: bool) -> bool:
        if not self.is_active():
            logger.debug("Dropping utterance: session not connected")
            return False

        logger.info(f"[{'user' if is_user else 'ai'}] {text}")
        self.delivered += 1
        if self.observer:
            try:
                self.observer(text, is_user)
            except Exception as e:
                logger.error(f"Error in transcription observer: {e}", exc_info=True)
        return True
