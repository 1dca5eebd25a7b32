"""
Configuration module for the live interpreter.

Loads configuration from .env and optional config.yaml using Pydantic models.
"""

import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from dotenv import load_dotenv
import yaml

from .errors import ConfigurationError
from .languages import Language


DEFAULT_LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
DEFAULT_LIVE_MODEL = "models/gemini-2.5-flash-native-audio-preview-09-2025"
CREDENTIAL_ENV_VARS = ("GEMINI_API_KEY", "API_KEY")


class AudioConfig(BaseModel):
    """Audio configuration parameters."""
    device_sr_in: int = Field(48000, description="Input device sample rate (Hz)")
    send_sr: int = Field(16000, description="Sample rate of audio sent to the remote service (Hz)")
    receive_sr: int = Field(24000, description="Sample rate of audio received from the remote service (Hz)")
    device_sr_out: int = Field(48000, description="Output device sample rate (Hz)")
    frame_ms: int = Field(20, description="Audio frame duration (ms)")
    mic_device: Optional[str] = Field(None, description="Microphone device name")
    output_device: Optional[str] = Field(None, description="Playback device name")
    queue_frames: int = Field(50, description="Max captured frames waiting to be sent")
    playback_queue_chunks: int = Field(200, description="Max received chunks waiting to be played")

    @field_validator("frame_ms", "queue_frames", "playback_queue_chunks")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


class RemoteConfig(BaseModel):
    """Remote translation service configuration."""
    url: str = Field(DEFAULT_LIVE_URL, description="Bidirectional streaming endpoint")
    model: str = Field(DEFAULT_LIVE_MODEL, description="Remote model name")
    voice: Optional[str] = Field(None, description="Prebuilt voice for synthesized speech")
    handshake_timeout_s: float = Field(10.0, description="Max wait for session setup (s)")
    close_timeout_s: float = Field(2.0, description="Max wait for teardown (s)")

    @field_validator("handshake_timeout_s", "close_timeout_s")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("timeout must be greater than zero")
        return v


class MeterConfig(BaseModel):
    """Volume meter tuning."""
    gain: float = Field(4.0, description="Multiplier applied to RMS before clipping to 1")
    decay: float = Field(0.75, description="Per-window decay of the displayed level")
    floor: float = Field(0.01, description="Levels below this are reported as silence")

    @field_validator("decay")
    @classmethod
    def validate_decay(cls, v):
        if not 0.0 < v < 1.0:
            raise ValueError("decay must be between 0 and 1 (exclusive)")
        return v

    @field_validator("floor")
    @classmethod
    def validate_floor(cls, v):
        if not 0.0 < v < 1.0:
            raise ValueError("floor must be between 0 and 1 (exclusive)")
        return v


class PTTConfig(BaseModel):
    """Push-to-Talk configuration (selects Speaker B while held)."""
    enabled: bool = Field(False, description="Drive the speaker channel from a hotkey")
    ptt_key: str = Field("F8", description="PTT hotkey")
    debounce_ms: int = Field(50, description="Debounce duration (ms)")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    log_level: str = Field("INFO", description="Logging level")
    log_file: Optional[str] = Field("logs/run.log", description="Log file path")
    transcript_file: Optional[str] = Field("logs/transcript.log", description="Interactive run transcript (rotated)")


class SessionConfig(BaseModel):
    """
    Language pair and audio routing for one connected session.

    Immutable: changing it requires disconnect + reconnect. An equal pair
    is accepted here and rejected by ``check_language_pair`` at connect time.
    """
    model_config = ConfigDict(frozen=True)

    language_a: Language = Field(Language.ITALIAN, description="Speaker A language")
    language_b: Language = Field(Language.ENGLISH, description="Speaker B language")
    split_audio: bool = Field(False, description="Route input into two muteable speaker channels")

    @field_validator("language_a", "language_b", mode="before")
    @classmethod
    def parse_language(cls, v):
        return Language.parse(v)

    def check_language_pair(self) -> None:
        """
        Raises:
            ConfigurationError: If both speakers use the same language
        """
        if self.language_a is self.language_b:
            raise ConfigurationError(
                f"Speaker A and Speaker B must use different languages "
                f"(both are {self.language_a.value})"
            )


class Config(BaseModel):
    """Main configuration model."""
    audio: AudioConfig = AudioConfig()
    remote: RemoteConfig = RemoteConfig()
    meter: MeterConfig = MeterConfig()
    ptt: PTTConfig = PTTConfig()
    logging: LoggingConfig = LoggingConfig()
    session: SessionConfig = SessionConfig()
    api_key: Optional[str] = Field(None, description="Default credential; absence only blocks connect()")


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(env_file: Optional[str] = None, yaml_file: Optional[str] = None) -> Config:
    """
    Load configuration from environment and optional YAML file.

    Args:
        env_file: Path to .env file (default: .env in project root)
        yaml_file: Path to config.yaml (optional)

    Returns:
        Config: Validated configuration object

    Raises:
        ValueError: If configuration is invalid
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    config_dict = {
        "remote": {
            "url": os.getenv("LIVE_URL", DEFAULT_LIVE_URL),
            "model": os.getenv("LIVE_MODEL", DEFAULT_LIVE_MODEL),
        },
        "session": {
            "language_a": os.getenv("LANGUAGE_A", Language.ITALIAN.value),
            "language_b": os.getenv("LANGUAGE_B", Language.ENGLISH.value),
            "split_audio": _env_flag(os.getenv("SPLIT_AUDIO", "")),
        },
        "logging": {
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
        },
    }

    for name in CREDENTIAL_ENV_VARS:
        value = os.getenv(name, "").strip()
        if value:
            config_dict["api_key"] = value
            break

    # Override with YAML if provided
    if yaml_file and Path(yaml_file).exists():
        with open(yaml_file, 'r') as f:
            yaml_config = yaml.safe_load(f) or {}
            # Deep merge
            for key, value in yaml_config.items():
                if key in config_dict and isinstance(value, dict):
                    config_dict[key].update(value)
                else:
                    config_dict[key] = value

    try:
        return Config(**config_dict)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")


def validate_environment() -> list[str]:
    """
    Validate environment prerequisites.

    Returns:
        List of validation errors (empty if all OK)
    """
    errors = []

    if not any(os.getenv(name, "").strip() for name in CREDENTIAL_ENV_VARS):
        errors.append(
            f"No API key found: set {' or '.join(CREDENTIAL_ENV_VARS)} "
            f"(connect() will fail without one)"
        )

    return errors
