"""
Volume metering for the waveform display.

Turns a window of PCM samples into a loudness value in [0, 1] with a
short peak-hold decay so the visualisation does not flicker.
"""

import math
import numpy as np


def rms_level(samples: np.ndarray, gain: float = 1.0) -> float:
    """
    Normalised RMS of one window.

    Args:
        samples: int16 PCM, or float PCM in [-1, 1]
        gain: Multiplier applied before clipping to 1

    Returns:
        Level in [0, 1]; 0 for an empty window
    """
    if samples is None or len(samples) == 0:
        return 0.0

    if np.issubdtype(samples.dtype, np.integer):
        audio = samples.astype(np.float32) / 32768.0
    else:
        audio = samples.astype(np.float32)

    rms = float(np.sqrt(np.mean(np.square(audio))))
    if not math.isfinite(rms):
        return 0.0
    return min(1.0, max(0.0, rms * gain))


class VolumeMeter:
    """
    Smoothed loudness meter.

    The displayed level jumps up immediately and falls by ``decay`` per
    window; anything below ``floor`` is reported as silence, so a loud
    window decays to exactly 0 within ``windows_to_silence()`` windows.
    """

    def __init__(self, gain: float = 4.0, decay: float = 0.75, floor: float = 0.01):
        if not 0.0 < decay < 1.0:
            raise ValueError("decay must be between 0 and 1 (exclusive)")
        if not 0.0 < floor < 1.0:
            raise ValueError("floor must be between 0 and 1 (exclusive)")
        self.gain = gain
        self.decay = decay
        self.floor = floor
        self._level = 0.0

    @classmethod
    def from_config(cls, meter_config) -> "VolumeMeter":
        return cls(gain=meter_config.gain, decay=meter_config.decay, floor=meter_config.floor)

    @property
    def level(self) -> float:
        return self._level

    def update(self, samples: np.ndarray) -> float:
        """Feed one captured window and return the smoothed level."""
        raw = rms_level(samples, self.gain)
        level = max(raw, self._level * self.decay)
        if level < self.floor:
            level = 0.0
        self._level = level
        return level

    def reset(self) -> float:
        """Force silence (muted or disconnected)."""
        self._level = 0.0
        return 0.0

    def windows_to_silence(self) -> int:
        """Upper bound on silent windows needed to fall from full scale to 0."""
        return math.ceil(math.log(self.floor) / math.log(self.decay)) + 1
