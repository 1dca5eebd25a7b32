"""
Session facade.

The single object the presentation layer holds. Commands are
fire-and-forget and are applied in call order; outcomes are observed
through the snapshot store, never through return values.

Usage:
    session = LiveSession(SessionConfig(language_a="Italian", language_b="English"),
                          credentials=provider_from_config(config),
                          on_transcription=lambda text, is_user: print(text))
    session.subscribe(lambda snap: print(snap.connection_state))
    session.connect()
    ...
    session.toggle_mute()
    session.disconnect()
"""

import asyncio
import logging
from typing import Callable, Optional

from .audio_devices import AudioInputStream, AudioOutputStream
from .config import Config, SessionConfig
from .connection import ChannelFactory, ConnectionManager
from .credentials import CredentialProvider, EnvCredentialProvider
from .duplex import AudioDuplex, SpeakerChannel
from .errors import InvalidTransitionError
from .meter import VolumeMeter
from .state import SessionSnapshot, SessionStore, SnapshotListener
from .state_machine import ConnectionState, ConnectionStateMachine
from .transcription import TranscriptEntry, TranscriptionObserver, TranscriptionPipeline, TranscriptLog

logger = logging.getLogger(__name__)


class LiveSession:
    """
    Live interpretation session: connect, disconnect, retry, mute, and
    observable connection state, mute flag, volume and error message.
    """

    def __init__(
        self,
        session_config: Optional[SessionConfig] = None,
        credentials: Optional[CredentialProvider] = None,
        config: Optional[Config] = None,
        on_transcription: Optional[TranscriptionObserver] = None,
        channel_factory: Optional[ChannelFactory] = None,
        input_factory: Callable[..., AudioInputStream] = AudioInputStream,
        output_factory: Callable[..., AudioOutputStream] = AudioOutputStream,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.config = config or Config()
        self.session_config = session_config or self.config.session
        self.credentials = credentials or EnvCredentialProvider()

        self.store = SessionStore()
        self.transcript = TranscriptLog()
        self._observer = on_transcription
        self._loop = loop
        self._commands = asyncio.Lock()

        self.machine = ConnectionStateMachine()
        self.machine.add_listener(self._on_transition)

        self.pipeline = TranscriptionPipeline(
            observer=self._on_utterance,
            is_active=lambda: self.machine.state is ConnectionState.CONNECTED,
        )
        self.duplex = AudioDuplex(
            self.config.audio,
            split_audio=self.session_config.split_audio,
            meter=VolumeMeter.from_config(self.config.meter),
            on_volume=self._on_volume,
            input_factory=input_factory,
            output_factory=output_factory,
        )
        self.connection = ConnectionManager(
            self.machine,
            self.duplex,
            self.pipeline,
            self.credentials,
            self.session_config,
            config=self.config,
            channel_factory=channel_factory,
        )

    # --- observable state ------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self.store.snapshot

    @property
    def connection_state(self) -> ConnectionState:
        return self.store.snapshot.connection_state

    @property
    def is_muted(self) -> bool:
        return self.store.snapshot.is_muted

    @property
    def volume(self) -> float:
        return self.store.snapshot.volume

    @property
    def error_message(self) -> Optional[str]:
        return self.store.snapshot.error_message

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def set_transcription_observer(self, observer: Optional[TranscriptionObserver]):
        self._observer = observer

    def entries(self):
        return self.transcript.entries()

    async def wait_for_state(self, *states: ConnectionState, timeout: Optional[float] = None) -> SessionSnapshot:
        """Wait until the connection state is one of ``states``."""
        if self.connection_state in states:
            return self.snapshot

        reached = asyncio.Event()
        unsubscribe = self.subscribe(
            lambda snap: reached.set() if snap.connection_state in states else None
        )
        try:
            await asyncio.wait_for(reached.wait(), timeout=timeout)
        finally:
            unsubscribe()
        return self.snapshot

    # --- commands ----------------------------------------------------------

    def configure(self, session_config: SessionConfig):
        """Swap the language pair / routing. Only allowed while idle."""
        if self.machine.state is not ConnectionState.IDLE:
            raise InvalidTransitionError("Disconnect before changing the session configuration")
        self.session_config = session_config
        self.connection.session_config = session_config
        self.duplex.split_audio = session_config.split_audio
        logger.info(
            f"Session configured: {session_config.language_a.value} <-> "
            f"{session_config.language_b.value} (split_audio={session_config.split_audio})"
        )

    def connect(self):
        """Start a session. Ignored (with a warning) unless idle."""
        return self._schedule(self._connect)

    def disconnect(self):
        """Stop the session from any state. Idempotent."""
        return self._schedule(self.connection.stop)

    def retry(self):
        """Explicit user retry after an error: full teardown, then reconnect."""
        return self._schedule(self._retry)

    def toggle_mute(self):
        self._call_soon(self._toggle_mute)

    def select_channel(self, channel: SpeakerChannel):
        """External speaker selector (push-to-talk) for split audio."""
        self._call_soon(self.duplex.select_channel, SpeakerChannel(channel))

    def toggle_channel_mute(self, channel: SpeakerChannel):
        self._call_soon(self.duplex.toggle_channel_mute, SpeakerChannel(channel))

    async def aclose(self):
        await self._wrap(self.disconnect())

    async def _connect(self):
        if self.machine.state is not ConnectionState.IDLE:
            logger.warning(f"connect() ignored while {self.machine.state.value}; disconnect first")
            return
        if not await self.connection.settle():
            logger.warning("connect() refused: previous session is still shutting down")
            return
        self.connection.start()

    async def _retry(self):
        if self.machine.state is not ConnectionState.ERROR:
            logger.warning(f"retry() ignored while {self.machine.state.value}")
            return
        await self.connection.retry()

    def _toggle_mute(self):
        muted = self.duplex.toggle_mute()
        changes = {"is_muted": muted}
        if muted:
            changes["volume"] = 0.0
        self.store.update(**changes)

    # --- scheduling ----------------------------------------------------------

    def _running_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _schedule(self, command):
        running = self._running_loop()
        if running is not None and (self._loop is None or running is self._loop):
            self._loop = running
            return running.create_task(self._serialized(command))
        if self._loop is None:
            raise RuntimeError("LiveSession needs an event loop: call from a coroutine or pass loop=")
        return asyncio.run_coroutine_threadsafe(self._serialized(command), self._loop)

    async def _serialized(self, command):
        async with self._commands:
            await command()

    def _call_soon(self, fn, *args):
        running = self._running_loop()
        if running is not None or self._loop is None:
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)

    @staticmethod
    async def _wrap(future):
        if isinstance(future, asyncio.Future):
            await future
        else:
            await asyncio.wrap_future(future)

    # --- events from the core ----------------------------------------------

    def _on_transition(self, old: ConnectionState, new: ConnectionState, error_message: Optional[str]):
        changes = {"connection_state": new, "error_message": error_message}
        if new is not ConnectionState.CONNECTED:
            changes["volume"] = 0.0
        self.store.update(**changes)

    def _on_volume(self, level: float):
        if self.duplex.is_muted or self.machine.state is not ConnectionState.CONNECTED:
            level = 0.0
        self.store.update(volume=level)

    def _on_utterance(self, text: str, is_user: bool):
        entry: TranscriptEntry = self.transcript.add(text, is_user)
        logger.debug(f"Transcript entry {entry.id} ({entry.source})")
        if self._observer:
            self._observer(text, is_user)
