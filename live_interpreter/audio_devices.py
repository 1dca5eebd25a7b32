"""
Audio device enumeration and stream management using sounddevice.

Handles device queries, capture/playback streams and stereo→mono downmixing.
PortAudio failures are reported as DeviceError.
"""

import numpy as np
from typing import Optional, Callable, List, Tuple
import logging

from .errors import DeviceError

logger = logging.getLogger(__name__)

try:
    import sounddevice as sd
    SOUNDDEVICE_AVAILABLE = True
except (ImportError, OSError):
    # OSError: the PortAudio shared library is missing
    SOUNDDEVICE_AVAILABLE = False
    logger.warning("sounddevice/PortAudio not available - audio devices disabled")


def _require_sounddevice():
    if not SOUNDDEVICE_AVAILABLE:
        raise DeviceError("Audio backend unavailable: install PortAudio and sounddevice")


def list_audio_devices() -> List[dict]:
    """
    Enumerate all available audio devices.

    Returns:
        One dict per device: index, name, channel counts, default rate, host API

    Raises:
        DeviceError: If the audio backend is unavailable or enumeration fails
    """
    _require_sounddevice()
    try:
        raw = sd.query_devices()
        hostapis = [api['name'] for api in sd.query_hostapis()]
    except sd.PortAudioError as e:
        raise DeviceError(f"Cannot enumerate audio devices: {e}") from e

    return [
        {
            "index": idx,
            "name": dev['name'],
            "max_input_channels": dev['max_input_channels'],
            "max_output_channels": dev['max_output_channels'],
            "default_samplerate": dev['default_samplerate'],
            "hostapi": hostapis[dev['hostapi']],
        }
        for idx, dev in enumerate(raw)
    ]


def default_device_indices() -> Tuple[Optional[int], Optional[int]]:
    """System default (input, output) device indices; None where there is none."""
    _require_sounddevice()
    mic, speaker = sd.default.device
    return (
        mic if mic is not None and mic >= 0 else None,
        speaker if speaker is not None and speaker >= 0 else None,
    )


def find_device_by_name(name: str, input_device: bool = True) -> Optional[int]:
    """
    First device whose name contains ``name`` (case-insensitive) and that
    has channels in the requested direction, or None.
    """
    key = 'max_input_channels' if input_device else 'max_output_channels'
    needle = name.lower()
    return next(
        (dev['index'] for dev in list_audio_devices()
         if needle in dev['name'].lower() and dev[key] > 0),
        None,
    )


def resolve_device(name: Optional[str], input_device: bool = True) -> Optional[int]:
    """
    Resolve a configured device name to an index.

    Args:
        name: Name substring, or None for the system default
        input_device: True for input, False for output

    Raises:
        DeviceError: If a name was given and no device matches
    """
    if not name:
        return None
    idx = find_device_by_name(name, input_device=input_device)
    if idx is None:
        kind = "input" if input_device else "output"
        raise DeviceError(f"No {kind} device matching '{name}'")
    return idx


def downmix_stereo_to_mono_int16(stereo_frames: np.ndarray) -> np.ndarray:
    """
    Downmix stereo int16 PCM to mono using (L+R)/2 with overflow protection.

    Args:
        stereo_frames: Shape (frames, 2) int16 array

    Returns:
        Shape (frames,) int16 mono array
    """
    if stereo_frames.ndim == 1:
        return stereo_frames

    if stereo_frames.shape[1] == 1:
        return stereo_frames.flatten()

    # Convert to int32 to avoid overflow during addition
    left = stereo_frames[:, 0].astype(np.int32)
    right = stereo_frames[:, 1].astype(np.int32)

    return ((left + right) // 2).astype(np.int16)


class AudioInputStream:
    """
    Microphone capture stream delivering fixed-duration mono int16 frames.

    The callback runs on the PortAudio thread.
    """

    def __init__(
        self,
        device: Optional[int] = None,
        samplerate: int = 48000,
        frame_ms: int = 20,
        channels: int = 1,
        callback: Optional[Callable[[np.ndarray], None]] = None
    ):
        """
        Initialize audio input stream.

        Args:
            device: Device index (None for default)
            samplerate: Sample rate in Hz (default 48000)
            frame_ms: Frame duration in milliseconds (default 20)
            channels: Number of channels to request (1 or 2)
            callback: Function called with mono int16 frames
        """
        self.device = device
        self.samplerate = samplerate
        self.frame_ms = frame_ms
        self.blocksize = int(samplerate * frame_ms / 1000)
        self.channels = channels
        self.callback = callback
        self.stream = None

        logger.info(
            f"AudioInputStream: device={device}, sr={samplerate}, "
            f"frame_ms={frame_ms}, blocksize={self.blocksize}"
        )

    def _stream_callback(self, indata, frames, time_info, status):
        """Internal callback for sounddevice stream."""
        if status:
            logger.warning(f"Input stream status: {status}")

        mono = downmix_stereo_to_mono_int16(indata.copy())

        if self.callback:
            self.callback(mono)

    @property
    def active(self) -> bool:
        return self.stream is not None

    def start(self):
        """
        Open and start the input stream.

        Raises:
            DeviceError: If the microphone is unavailable or access is denied
        """
        if self.stream is not None:
            logger.warning("Input stream already started")
            return

        _require_sounddevice()
        try:
            stream = sd.InputStream(
                device=self.device,
                channels=self.channels,
                samplerate=self.samplerate,
                blocksize=self.blocksize,
                dtype=np.int16,
                callback=self._stream_callback
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceError(f"Microphone unavailable: {e}") from e

        self.stream = stream
        logger.info("Input stream started")

    def stop(self):
        """Stop and close the input stream."""
        if self.stream is not None:
            stream, self.stream = self.stream, None
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as e:
                logger.warning(f"Error closing input stream: {e}")
            logger.info("Input stream stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


class AudioOutputStream:
    """
    Speaker playback stream. ``write`` blocks while the device buffer is full.
    """

    def __init__(
        self,
        device: Optional[int] = None,
        samplerate: int = 48000,
        channels: int = 1
    ):
        """
        Initialize audio output stream.

        Args:
            device: Device index (None for default)
            samplerate: Sample rate in Hz (default 48000)
            channels: Number of output channels (default 1)
        """
        self.device = device
        self.samplerate = samplerate
        self.channels = channels
        self.stream = None

        logger.info(f"AudioOutputStream: device={device}, sr={samplerate}, ch={channels}")

    @property
    def active(self) -> bool:
        return self.stream is not None

    def start(self):
        """
        Open and start the output stream.

        Raises:
            DeviceError: If the output device is unavailable
        """
        if self.stream is not None:
            logger.warning("Output stream already started")
            return

        _require_sounddevice()
        try:
            stream = sd.OutputStream(
                device=self.device,
                channels=self.channels,
                samplerate=self.samplerate,
                dtype=np.int16
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise DeviceError(f"Output device unavailable: {e}") from e

        self.stream = stream
        logger.info("Output stream started")

    def write(self, audio_data: np.ndarray):
        """
        Write audio data to the stream.

        Args:
            audio_data: int16 PCM data (mono or multi-channel)

        Raises:
            DeviceError: If the stream is closed or the device failed
        """
        stream = self.stream
        if stream is None:
            raise DeviceError("Output stream not started")

        if audio_data.ndim == 1 and self.channels == 1:
            audio_data = audio_data.reshape(-1, 1)

        try:
            stream.write(audio_data)
        except sd.PortAudioError as e:
            raise DeviceError(f"Playback failed: {e}") from e

    def stop(self):
        """Stop and close the output stream."""
        if self.stream is not None:
            stream, self.stream = self.stream, None
            try:
                stream.abort()
                stream.close()
            except sd.PortAudioError as e:
                logger.warning(f"Error closing output stream: {e}")
            logger.info("Output stream stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
