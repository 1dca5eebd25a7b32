"""
Session connection lifecycle.

Binds the state machine to real I/O: acquires the devices, opens the
channel with a bounded handshake, runs the uplink/downlink/playback tasks
and tears everything down on failure, disconnect or retry.
"""

import asyncio
import logging
from typing import Callable, Optional

from .channel import LiveChannel, gemini_channel_factory
from .config import Config, SessionConfig
from .credentials import CredentialProvider
from .duplex import AudioDuplex
from .errors import ConfigurationError, HandshakeError, InvalidTransitionError, LiveSessionError, StreamError
from .protocol import build_setup_message, speaker_hint
from .state_machine import ConnectionState, ConnectionStateMachine, SessionEvent
from .transcription import TranscriptionPipeline
from .utils import LatencyStats, Timer

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[str], LiveChannel]


class ConnectionManager:
    """
    Owns the network channel and drives the connection state machine.

    At most one channel and one device binding exist at a time; every
    path out of a session (failure, disconnect, retry) goes through the
    same idempotent teardown.
    """

    def __init__(
        self,
        machine: ConnectionStateMachine,
        duplex: AudioDuplex,
        pipeline: TranscriptionPipeline,
        credentials: CredentialProvider,
        session_config: SessionConfig,
        config: Optional[Config] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self.machine = machine
        self.duplex = duplex
        self.pipeline = pipeline
        self.credentials = credentials
        self.session_config = session_config
        self.config = config or Config()
        self._channel_factory = channel_factory or gemini_channel_factory(
            self.config.remote, self.config.audio.send_sr
        )

        self._channel: Optional[LiveChannel] = None
        self._task: Optional[asyncio.Task] = None
        # cancelled session task still tearing down after close_timeout_s
        self._straggler: Optional[asyncio.Task] = None
        self.frames_sent = 0
        self.timing_handshake = LatencyStats("Handshake")

    @property
    def channel(self) -> Optional[LiveChannel]:
        return self._channel

    @property
    def is_running(self) -> bool:
        return any(t is not None and not t.done() for t in (self._task, self._straggler))

    async def settle(self) -> bool:
        """
        Give a session task that outlived its cancellation another
        ``close_timeout_s`` to finish.

        Returns:
            True once no earlier session task is left running
        """
        straggler = self._straggler
        if straggler is not None and not straggler.done():
            await asyncio.wait({straggler}, timeout=self.config.remote.close_timeout_s)
            if not straggler.done():
                return False
        self._straggler = None
        return True

    def _preflight(self) -> str:
        """
        Check everything that needs no I/O.

        Returns:
            The credential

        Raises:
            ConfigurationError: Missing credential or invalid language pair
        """
        api_key = self.credentials.get_credential()
        if not api_key:
            raise ConfigurationError("Missing API key: enter one or set GEMINI_API_KEY")
        self.session_config.check_language_pair()
        return api_key

    # --- public lifecycle -------------------------------------------------

    def start(self) -> Optional[asyncio.Task]:
        """
        Begin connecting (idle -> connecting).

        Returns:
            The session task, or None if the configuration was rejected

        Raises:
            InvalidTransitionError: If a session is already active
        """
        if self.machine.state is not ConnectionState.IDLE or self.is_running:
            raise InvalidTransitionError(
                f"Cannot connect while {self.machine.state.value}; disconnect first"
            )

        try:
            api_key = self._preflight()
        except ConfigurationError as e:
            self.machine.fire(SessionEvent.FAIL, str(e))
            return None

        self.machine.fire(SessionEvent.CONNECT)
        self._task = asyncio.create_task(self._run(api_key), name="live-session")
        return self._task

    async def retry(self) -> Optional[asyncio.Task]:
        """
        Full teardown, then reconnect (error -> connecting).

        Raises:
            InvalidTransitionError: If the session is not in ``error``
        """
        if self.machine.state is not ConnectionState.ERROR:
            raise InvalidTransitionError(
                f"Retry is only possible after an error (state is {self.machine.state.value})"
            )

        await self._cancel_task()
        await self._teardown()
        if not await self.settle():
            logger.warning("Retry refused: previous session is still shutting down")
            return None
        self.machine.fire(SessionEvent.RETRY)

        try:
            api_key = self._preflight()
        except ConfigurationError as e:
            self.machine.fire(SessionEvent.FAIL, str(e))
            return None

        self._task = asyncio.create_task(self._run(api_key), name="live-session")
        return self._task

    async def stop(self):
        """Abort whatever is pending, release everything, go idle. Idempotent."""
        if self.machine.state is ConnectionState.IDLE and not self.is_running:
            return

        await self._cancel_task()
        await self._teardown()
        self.machine.fire(SessionEvent.DISCONNECT)
        self.timing_handshake.log_summary()
        logger.info(f"Session stopped ({self.frames_sent} frames sent)")

    # --- session task -------------------------------------------------------

    async def _cancel_task(self):
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.config.remote.close_timeout_s)
        if not done:
            self._straggler = task
            logger.warning("Session task did not stop in time; forcing teardown")

    async def _run(self, api_key: str):
        error = None
        try:
            await self._open(api_key)
            self.machine.fire(SessionEvent.HANDSHAKE_OK)
            await self._stream()
        except asyncio.CancelledError:
            logger.info("Session task cancelled")
            raise
        except LiveSessionError as e:
            error = str(e)
        except Exception as e:
            logger.error(f"Unexpected session failure: {e}", exc_info=True)
            error = f"Unexpected error: {type(e).__name__}"
        finally:
            await self._teardown()

        # a superseded task (disconnect/retry already took over) stays silent
        if error and self._task is asyncio.current_task() and self.machine.can_fire(SessionEvent.FAIL):
            self.machine.fire(SessionEvent.FAIL, error)

    async def _open(self, api_key: str):
        self.frames_sent = 0
        self.pipeline.reset()
        await self.duplex.start()

        channel = self._channel_factory(api_key)
        self._channel = channel
        setup = build_setup_message(self.session_config, self.config.remote)
        timeout = self.config.remote.handshake_timeout_s

        with Timer("Handshake", self.timing_handshake):
            try:
                await asyncio.wait_for(channel.open(setup), timeout=timeout)
            except asyncio.TimeoutError:
                raise HandshakeError(f"No answer from remote service after {timeout:g} s") from None

    async def _stream(self):
        tasks = [
            asyncio.create_task(self._uplink(), name="uplink"),
            asyncio.create_task(self._downlink(), name="downlink"),
            asyncio.create_task(self.duplex.run_playback(), name="playback"),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        raise StreamError("Session ended unexpectedly")

    async def _uplink(self):
        channel = self._channel
        last_speaker = None
        while True:
            frame = await self.duplex.next_frame()
            if frame.channel is not None and frame.channel is not last_speaker:
                await channel.send_text(speaker_hint(frame.channel, self.session_config))
                last_speaker = frame.channel
            await channel.send_audio(frame)
            self.frames_sent += 1

    async def _downlink(self):
        channel = self._channel
        while True:
            message = await channel.receive()
            content = message.server_content
            if content is not None and content.interrupted:
                self.duplex.flush_playback()
            for chunk in message.audio_chunks():
                await self.duplex.play(chunk)
            self.pipeline.process(message)

    async def _teardown(self):
        """Release devices and channel. Never raises."""
        try:
            self.duplex.stop()
        except Exception as e:
            logger.error(f"Error releasing audio devices: {e}", exc_info=True)

        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await asyncio.shield(channel.close())
            except Exception as e:
                logger.error(f"Error closing channel: {e}", exc_info=True)
