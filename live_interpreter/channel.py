"""
Duplex streaming channel to the remote translation service.

The channel performs the handshake, sends frames in call order and
yields decoded inbound frames in arrival order. Transport failures are
mapped onto HandshakeError (before setup completes) and StreamError
(afterwards).
"""

import asyncio
import json
import logging
from typing import Protocol
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from .config import RemoteConfig
from .duplex import AudioFrame
from .errors import HandshakeError, StreamError
from .protocol import ServerMessage, decode_message, encode_audio, encode_text

logger = logging.getLogger(__name__)

REJECTED_STATUS = (401, 403)
# Close codes the service uses for a refused setup (bad key, bad model)
REJECTED_CLOSE_CODES = (1007, 1008)


class LiveChannel(Protocol):
    async def open(self, setup: dict) -> None:
        ...

    async def send_audio(self, frame: AudioFrame) -> None:
        ...

    async def send_text(self, text: str) -> None:
        ...

    async def receive(self) -> ServerMessage:
        ...

    async def close(self) -> None:
        ...


def _close_details(exc: ConnectionClosed) -> str:
    frame = exc.rcvd
    if frame is None:
        return "no close frame"
    return f"{frame.code}: {frame.reason}" if frame.reason else str(frame.code)


class GeminiLiveChannel:
    """
    Websocket channel to the Gemini Live API.

    Usage:
        channel = GeminiLiveChannel(remote_config, api_key, send_sr=16000)
        await channel.open(build_setup_message(session, remote_config))
        await channel.send_audio(frame)
        message = await channel.receive()
        await channel.close()
    """

    def __init__(self, remote: RemoteConfig, api_key: str, send_sr: int = 16000):
        """
        Args:
            remote: Endpoint, model and timeouts
            api_key: Credential, sent only as the ``key`` query parameter
            send_sr: Sample rate of outbound PCM
        """
        self.remote = remote
        self.send_sr = send_sr
        self._api_key = api_key
        self._ws = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def _uri(self) -> str:
        return f"{self.remote.url}?{urlencode({'key': self._api_key})}"

    async def open(self, setup: dict) -> None:
        """
        Connect and complete the session setup.

        Raises:
            HandshakeError: Connection refused, credential rejected or
                unexpected setup reply
        """
        logger.info(f"Connecting to {self.remote.url} (model={self.remote.model})")
        try:
            self._ws = await connect(
                self._uri(),
                max_size=None,
                close_timeout=self.remote.close_timeout_s,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in REJECTED_STATUS:
                raise HandshakeError("API key rejected by the remote service") from None
            raise HandshakeError(f"Remote service refused the connection (HTTP {status})") from None
        except (InvalidHandshake, OSError) as e:
            raise HandshakeError(f"Cannot reach remote service: {type(e).__name__}") from None

        try:
            await self._ws.send(json.dumps(setup))
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd else None
            if code in REJECTED_CLOSE_CODES:
                raise HandshakeError(f"Session setup rejected ({_close_details(e)})") from None
            raise HandshakeError(f"Connection closed during setup ({_close_details(e)})") from None

        try:
            message = decode_message(raw)
        except StreamError as e:
            raise HandshakeError(f"Invalid setup reply: {e}") from None

        if not message.is_setup_complete:
            raise HandshakeError("Remote service did not acknowledge session setup")

        logger.info("Session setup acknowledged")

    def _require_ws(self):
        if self._ws is None:
            raise StreamError("Channel is not open")
        return self._ws

    async def send_audio(self, frame: AudioFrame) -> None:
        await self._send(encode_audio(frame, self.send_sr))

    async def send_text(self, text: str) -> None:
        await self._send(encode_text(text))

    async def _send(self, payload: str) -> None:
        ws = self._require_ws()
        try:
            await ws.send(payload)
        except ConnectionClosed as e:
            raise StreamError(f"Connection lost while sending ({_close_details(e)})") from None

    async def receive(self) -> ServerMessage:
        """
        Next inbound frame.

        Raises:
            StreamError: On closure or an undecodable frame
        """
        ws = self._require_ws()
        try:
            raw = await ws.recv()
        except ConnectionClosed as e:
            raise StreamError(f"Remote service closed the session ({_close_details(e)})") from None

        message = decode_message(raw)
        if message.go_away is not None:
            logger.warning(f"Remote service will close the session soon (time left: {message.go_away.time_left})")
        return message

    async def close(self) -> None:
        """Close the socket. Never raises."""
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await asyncio.wait_for(ws.close(), timeout=self.remote.close_timeout_s)
        except Exception as e:
            logger.warning(f"Error closing channel: {type(e).__name__}: {e}")
        logger.info("Channel closed")


def gemini_channel_factory(remote: RemoteConfig, send_sr: int):
    """Factory used by the connection manager: ``factory(api_key) -> channel``."""
    def factory(api_key: str) -> GeminiLiveChannel:
        return GeminiLiveChannel(remote, api_key, send_sr=send_sr)
    return factory
