"""
Audio capture/playback duplex.

Owns the microphone and speaker streams for one connected session:
captured frames are gated (mute, speaker channel), metered, resampled and
queued for the network in capture order; received audio is played back in
arrival order.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np

from .audio_devices import AudioInputStream, AudioOutputStream, resolve_device
from .config import AudioConfig
from .errors import DeviceError
from .meter import VolumeMeter
from .resample import StreamResampler, bytes_to_pcm16, pcm16_to_bytes

logger = logging.getLogger(__name__)


class SpeakerChannel(str, Enum):
    """Logical speaker slot when split audio is on."""
    A = "A"
    B = "B"


@dataclass(frozen=True)
class AudioFrame:
    """One captured frame ready for the wire (pcm16le at the send rate)."""
    seq: int
    pcm: bytes
    channel: Optional[SpeakerChannel] = None


class AudioDuplex:
    """
    Microphone in, speaker out.

    ``feed`` is the capture entry point and may be called from the audio
    thread; everything else runs on the event loop.
    """

    def __init__(
        self,
        audio_config: AudioConfig,
        split_audio: bool = False,
        meter: Optional[VolumeMeter] = None,
        on_volume: Optional[Callable[[float], None]] = None,
        input_factory: Callable[..., AudioInputStream] = AudioInputStream,
        output_factory: Callable[..., AudioOutputStream] = AudioOutputStream,
    ):
        self.config = audio_config
        self.split_audio = split_audio
        self.meter = meter or VolumeMeter()
        self.on_volume = on_volume
        self._input_factory = input_factory
        self._output_factory = output_factory

        self._input = None
        self._output = None
        self._lock = threading.Lock()
        self._stopped = True
        self._generation = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._frames: Optional[asyncio.Queue] = None
        self._playback: Optional[asyncio.Queue] = None
        self._seq = 0
        self._uplink_resampler: Optional[StreamResampler] = None
        self._downlink_resampler: Optional[StreamResampler] = None

        self._muted = False
        self._active_channel = SpeakerChannel.A
        self._channel_muted = {SpeakerChannel.A: False, SpeakerChannel.B: False}

    # --- device lifecycle -------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._input is not None or self._output is not None

    async def start(self):
        """
        Acquire microphone and speaker.

        Raises:
            DeviceError: If either device is unavailable
        """
        self._loop = asyncio.get_running_loop()
        self._frames = asyncio.Queue(maxsize=self.config.queue_frames)
        self._playback = asyncio.Queue(maxsize=self.config.playback_queue_chunks)
        self._seq = 0
        self._uplink_resampler = StreamResampler(self.config.device_sr_in, self.config.send_sr)
        self._downlink_resampler = StreamResampler(self.config.receive_sr, self.config.device_sr_out)
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._stopped = False
        await asyncio.to_thread(self._open_devices, generation)

    def _open_devices(self, generation: int):
        mic_idx = resolve_device(self.config.mic_device, input_device=True)
        out_idx = resolve_device(self.config.output_device, input_device=False)

        output = self._output_factory(
            device=out_idx,
            samplerate=self.config.device_sr_out,
            channels=1
        )
        output.start()

        input_stream = self._input_factory(
            device=mic_idx,
            samplerate=self.config.device_sr_in,
            frame_ms=self.config.frame_ms,
            channels=1,
            callback=self._capture_callback(generation)
        )
        try:
            input_stream.start()
        except DeviceError:
            output.stop()
            raise

        with self._lock:
            if generation == self._generation and not self._stopped:
                self._input, self._output = input_stream, output
                logger.info("Audio devices acquired")
                return

        # stop() ran while we were opening, possibly followed by a newer start()
        input_stream.stop()
        output.stop()
        logger.info("Audio devices released (session stopped during acquisition)")

    def _capture_callback(self, generation: int) -> Callable[[np.ndarray], None]:
        """Capture callback that goes silent once its acquisition is superseded."""
        def on_frame(mono_int16: np.ndarray):
            if generation == self._generation:
                self.feed(mono_int16)
        return on_frame

    def stop(self):
        """Release both devices and drop queued audio. Safe to call repeatedly."""
        with self._lock:
            self._generation += 1
            self._stopped = True
            input_stream, self._input = self._input, None
            output, self._output = self._output, None

        for stream in (input_stream, output):
            if stream is None:
                continue
            try:
                stream.stop()
            except Exception as e:
                logger.warning(f"Error releasing audio device: {e}")

        self._drain(self._frames)
        self._drain(self._playback)
        self._publish_volume(self.meter.reset())

    @staticmethod
    def _drain(q: Optional[asyncio.Queue]):
        while q is not None and not q.empty():
            q.get_nowait()

    # --- mute and channel selection --------------------------------------

    @property
    def is_muted(self) -> bool:
        return self._muted

    def toggle_mute(self) -> bool:
        self.set_muted(not self._muted)
        return self._muted

    def set_muted(self, muted: bool):
        self._muted = bool(muted)
        if self._muted:
            self._publish_volume(self.meter.reset())
        logger.info(f"Microphone {'muted' if self._muted else 'unmuted'}")

    @property
    def active_channel(self) -> SpeakerChannel:
        return self._active_channel

    def select_channel(self, channel: SpeakerChannel):
        """Honour the external speaker selector (e.g. push-to-talk)."""
        channel = SpeakerChannel(channel)
        if channel is not self._active_channel:
            logger.debug(f"Active speaker channel: {channel.value}")
        self._active_channel = channel
        if self._gated():
            self._publish_volume(self.meter.reset())

    def is_channel_muted(self, channel: SpeakerChannel) -> bool:
        return self._channel_muted[SpeakerChannel(channel)]

    def toggle_channel_mute(self, channel: SpeakerChannel) -> bool:
        channel = SpeakerChannel(channel)
        self._channel_muted[channel] = not self._channel_muted[channel]
        if self._gated():
            self._publish_volume(self.meter.reset())
        logger.info(f"Speaker {channel.value} {'muted' if self._channel_muted[channel] else 'unmuted'}")
        return self._channel_muted[channel]

    def _gated(self) -> bool:
        if self._muted:
            return True
        return self.split_audio and self._channel_muted[self._active_channel]

    # --- capture path ------------------------------------------------------

    def feed(self, mono_int16: np.ndarray):
        """
        Capture callback. Discards audio while gated, otherwise hands the
        frame to the event loop.
        """
        loop = self._loop
        if loop is None or self._stopped or self._gated():
            return
        try:
            loop.call_soon_threadsafe(self._accept, mono_int16)
        except RuntimeError:
            # loop already closed
            pass

    def _accept(self, mono_int16: np.ndarray):
        # Re-check on the loop thread: mute may have flipped since feed()
        if self._stopped or self._frames is None:
            return
        if self._gated():
            self._publish_volume(self.meter.reset())
            return

        self._publish_volume(self.meter.update(mono_int16))

        pcm = self._uplink_resampler.process(mono_int16)
        if not len(pcm):
            # resampler still filling its delay line
            return
        channel = self._active_channel if self.split_audio else None
        frame = AudioFrame(seq=self._seq, pcm=pcm16_to_bytes(pcm), channel=channel)

        try:
            self._frames.put_nowait(frame)
            self._seq += 1
        except asyncio.QueueFull:
            logger.warning("Capture queue full, dropping frame")

    async def next_frame(self) -> AudioFrame:
        """Next captured frame in capture order."""
        if self._frames is None:
            raise DeviceError("Audio duplex not started")
        return await self._frames.get()

    def _publish_volume(self, level: float):
        if self.on_volume:
            self.on_volume(level)

    # --- playback path -----------------------------------------------------

    async def play(self, pcm: bytes):
        """Queue received pcm16le audio; waits while the playback queue is full."""
        if self._playback is None or self._stopped:
            return
        await self._playback.put(pcm)

    def flush_playback(self) -> int:
        """Drop audio queued but not yet played (remote turn interrupted)."""
        dropped = self._playback.qsize() if self._playback is not None else 0
        self._drain(self._playback)
        if self._downlink_resampler is not None:
            # forget the filter tail of the interrupted turn
            self._downlink_resampler = StreamResampler(self.config.receive_sr, self.config.device_sr_out)
        if dropped:
            logger.debug(f"Flushed {dropped} queued playback chunks")
        return dropped

    async def run_playback(self):
        """
        Write queued audio to the speaker in arrival order until cancelled.

        Raises:
            DeviceError: If the output device fails
        """
        if self._playback is None:
            raise DeviceError("Audio duplex not started")

        while True:
            pcm = await self._playback.get()
            output = self._output
            if output is None:
                raise DeviceError("Output device released")
            audio = self._downlink_resampler.process(bytes_to_pcm16(pcm))
            if len(audio):
                await asyncio.to_thread(output.write, audio)
