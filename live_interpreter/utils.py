"""
Logging, latency statistics and device listing helpers.
"""

import logging
import re
import time
from collections import deque
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

import numpy as np

CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(filename)s:%(lineno)d] %(message)s"

_KEY_PARAM = re.compile(r"(\bkey=)[^&\s'\"]+")
_GOOGLE_KEY = re.compile(r"AIza[0-9A-Za-z_\-]{16,}")


def redact(text: str) -> str:
    """Mask API keys inside a log line (query parameters and bare keys)."""
    return _GOOGLE_KEY.sub("AIza***", _KEY_PARAM.sub(r"\1***", text))


class RedactingFilter(logging.Filter):
    """Rewrites records so credentials never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logger(
    name: str = "live_interpreter",
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the package logger with console output and optional file rotation.

    Every module logs through ``logging.getLogger(__name__)`` below ``name``,
    so one call covers the whole package. Both handlers redact credentials.

    Args:
        name: Package logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Path to a rotating log file (optional)
        max_bytes: Size at which the file rotates
        backup_count: Rotated files kept

    Returns:
        Configured logger instance

    Raises:
        ValueError: If the level name is unknown
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger(name)
    logger.setLevel(numeric)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    handlers = [console]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        rotating.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(rotating)

    redacting = RedactingFilter()
    for handler in handlers:
        handler.addFilter(redacting)
        logger.addHandler(handler)

    return logger


class LatencyStats:
    """
    Rolling window of latency samples in milliseconds.

    Args:
        name: Label used when logging the summary
        window: Number of most recent samples kept
    """

    def __init__(self, name: str, window: int = 500):
        self.name = name
        self._samples: deque = deque(maxlen=window)
        self._logger = logging.getLogger(__name__)

    def __len__(self):
        return len(self._samples)

    def add_sample(self, duration_ms: float):
        self._samples.append(float(duration_ms))

    def summary(self) -> dict:
        """count/min/max/mean/p50/p95, or an empty dict before the first sample."""
        if not self._samples:
            return {}
        data = np.fromiter(self._samples, dtype=np.float64)
        p50, p95 = np.percentile(data, [50, 95])
        return {
            "count": int(data.size),
            "min": float(data.min()),
            "max": float(data.max()),
            "mean": float(data.mean()),
            "p50": float(p50),
            "p95": float(p95),
        }

    def log_summary(self):
        stats = self.summary()
        if stats:
            self._logger.info(
                f"{self.name} latency over {stats['count']} run(s): "
                f"p50={stats['p50']:.0f}ms p95={stats['p95']:.0f}ms "
                f"(min {stats['min']:.0f}, max {stats['max']:.0f})"
            )


class Timer:
    """Times a block; the duration is recorded only if the block succeeds."""

    def __init__(self, name: str, stats: Optional[LatencyStats] = None):
        self.name = name
        self.stats = stats
        self.duration_ms = 0.0
        self._started = 0

    def __enter__(self):
        self._started = time.perf_counter_ns()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter_ns() - self._started) / 1e6
        if exc_type is None and self.stats is not None:
            self.stats.add_sample(self.duration_ms)
        logging.getLogger(__name__).debug(
            f"{self.name}: {self.duration_ms:.1f} ms{'' if exc_type is None else ' (failed)'}"
        )


def format_device_list(
    devices: Iterable[dict],
    default_input: Optional[int] = None,
    default_output: Optional[int] = None,
) -> str:
    """
    Render devices as a table; system defaults are flagged with ``*``.

    Args:
        devices: Dicts as returned by ``list_audio_devices``
        default_input: Index of the default microphone (optional)
        default_output: Index of the default speaker (optional)
    """
    lines = [
        "",
        f"{'idx':>4}  {'in':>3} {'out':>3}  {'rate':>7}  {'host API':<14} name",
        "-" * 78,
    ]
    for dev in devices:
        flags = ""
        if dev["index"] == default_input:
            flags += " *in"
        if dev["index"] == default_output:
            flags += " *out"
        lines.append(
            f"{dev['index']:>4}  {dev['max_input_channels']:>3} {dev['max_output_channels']:>3}  "
            f"{int(dev['default_samplerate']):>7}  {dev['hostapi'][:14]:<14} {dev['name']}{flags}"
        )
    lines.append("-" * 78)
    return "\n".join(lines)
