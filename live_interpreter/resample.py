"""
Audio resampling and PCM conversion using pysoxr.

The microphone and speaker run at device rates; the remote service wants
16 kHz in and produces 24 kHz out.
"""

import numpy as np
import soxr
import logging

logger = logging.getLogger(__name__)


def resample_int16(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Resample mono int16 audio from source rate to target rate.

    Args:
        audio: Mono int16 PCM at source_rate
        source_rate: Source sample rate in Hz
        target_rate: Target sample rate in Hz

    Returns:
        Mono int16 PCM at target_rate
    """
    if source_rate == target_rate:
        return audio

    if len(audio) == 0:
        return np.array([], dtype=np.int16)

    if not validate_resample_ratio(source_rate, target_rate):
        raise ValueError(f"Unsupported resample ratio {source_rate} -> {target_rate} Hz")

    audio_float = audio.astype(np.float32) / 32768.0

    resampled = soxr.resample(
        audio_float,
        in_rate=source_rate,
        out_rate=target_rate,
        quality='HQ'
    )

    return _float_to_int16(resampled)


def _float_to_int16(audio: np.ndarray) -> np.ndarray:
    # Clip before the cast so filter overshoot cannot wrap around
    return np.clip(audio * 32767.0, -32768, 32767).astype(np.int16)


class StreamResampler:
    """
    Resampler for one continuous mono int16 stream delivered in frames.

    Keeps the soxr filter state between frames, so there are no edge
    artifacts at frame boundaries. The filter delay means the first frames
    can come out shorter (even empty); the total length converges to the
    rate ratio.

    Args:
        source_rate: Input sample rate in Hz
        target_rate: Output sample rate in Hz

    Raises:
        ValueError: If the ratio is unsupported
    """

    def __init__(self, source_rate: int, target_rate: int):
        self.source_rate = source_rate
        self.target_rate = target_rate
        self._stream = None
        if source_rate != target_rate:
            if not validate_resample_ratio(source_rate, target_rate):
                raise ValueError(f"Unsupported resample ratio {source_rate} -> {target_rate} Hz")
            self._stream = soxr.ResampleStream(
                source_rate, target_rate, 1, dtype='float32', quality='HQ'
            )

    @property
    def passthrough(self) -> bool:
        return self._stream is None

    def process(self, audio: np.ndarray, last: bool = False) -> np.ndarray:
        """Resample the next frame; ``last=True`` flushes the filter tail."""
        if self._stream is None:
            return audio
        chunk = audio.astype(np.float32) / 32768.0
        return _float_to_int16(self._stream.resample_chunk(chunk, last=last))


def validate_resample_ratio(source_rate: int, target_rate: int) -> bool:
    """
    Validate that resampling ratio is sensible.

    Args:
        source_rate: Source sample rate in Hz
        target_rate: Target sample rate in Hz

    Returns:
        True if ratio is valid
    """
    if source_rate <= 0 or target_rate <= 0:
        return False

    ratio = max(source_rate, target_rate) / min(source_rate, target_rate)

    # Allow ratios up to 8x
    return ratio <= 8.0


def pcm16_to_bytes(audio: np.ndarray) -> bytes:
    """Little-endian int16 bytes for the wire."""
    return audio.astype('<i2', copy=False).tobytes()


def bytes_to_pcm16(data: bytes) -> np.ndarray:
    """Decode little-endian int16 bytes; a trailing odd byte is dropped."""
    usable = len(data) - (len(data) % 2)
    return np.frombuffer(data[:usable], dtype='<i2').astype(np.int16)
