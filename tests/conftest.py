"""
Pytest configuration and fixtures.

Devices and the network channel are replaced by in-memory fakes so the
session core runs without PortAudio or network access.
"""

import asyncio
import os

import numpy as np
import pytest

from live_interpreter.config import AudioConfig, Config, RemoteConfig, SessionConfig
from live_interpreter.credentials import StaticCredentialProvider
from live_interpreter.errors import DeviceError
from live_interpreter.protocol import ServerMessage
from live_interpreter.session import LiveSession


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Keep real credentials out of the tests."""
    for name in ("GEMINI_API_KEY", "API_KEY"):
        os.environ.pop(name, None)


@pytest.fixture
def mock_config():
    """Configuration with no resampling and short timeouts."""
    return Config(
        audio=AudioConfig(device_sr_in=16000, send_sr=16000, receive_sr=24000, device_sr_out=24000),
        remote=RemoteConfig(handshake_timeout_s=1.0, close_timeout_s=0.5),
        logging={"log_file": None},
    )


class FakeInputStream:
    """Stands in for AudioInputStream; tests push frames through ``emit``."""

    def __init__(self, device=None, samplerate=48000, frame_ms=20, channels=1, callback=None, fail=False, gate=None):
        self.device = device
        self.samplerate = samplerate
        self.frame_ms = frame_ms
        self.channels = channels
        self.callback = callback
        self.fail = fail
        self.gate = gate
        self.started = False
        self.stopped = False

    def start(self):
        if self.gate is not None:
            # hold the acquisition thread, as a slow PortAudio open would
            self.gate.wait(timeout=5)
        if self.fail:
            raise DeviceError("Microphone unavailable: permission denied")
        self.started = True

    def stop(self):
        self.stopped = True

    @property
    def active(self):
        return self.started and not self.stopped

    def emit(self, samples):
        self.callback(samples)


class FakeOutputStream:
    """Stands in for AudioOutputStream; records written audio."""

    def __init__(self, device=None, samplerate=48000, channels=1):
        self.device = device
        self.samplerate = samplerate
        self.channels = channels
        self.started = False
        self.stopped = False
        self.written = []

    def start(self):
        self.started = True

    def write(self, audio_data):
        if self.stopped:
            raise DeviceError("Output stream not started")
        self.written.append(np.array(audio_data, copy=True))

    def stop(self):
        self.stopped = True

    @property
    def active(self):
        return self.started and not self.stopped


class FakeDevices:
    """Factories for fake streams, remembering every stream handed out."""

    def __init__(self, fail_input=False):
        self.fail_input = fail_input
        # threading.Event per upcoming input stream; start() blocks until set
        self.input_gates = []
        self.inputs = []
        self.outputs = []

    def input_factory(self, **kwargs):
        gate = self.input_gates.pop(0) if self.input_gates else None
        stream = FakeInputStream(fail=self.fail_input, gate=gate, **kwargs)
        self.inputs.append(stream)
        return stream

    def output_factory(self, **kwargs):
        stream = FakeOutputStream(**kwargs)
        self.outputs.append(stream)
        return stream

    @property
    def mic(self):
        return self.inputs[-1]

    @property
    def speaker(self):
        return self.outputs[-1]

    def leaked(self):
        """Streams started but never stopped."""
        return [s for s in self.inputs + self.outputs if s.started and not s.stopped]


class FakeChannel:
    """In-memory LiveChannel with scripted inbound frames."""

    def __init__(self, api_key, open_error=None, hang=False, close_gate=None):
        self.api_key = api_key
        self.open_error = open_error
        self.hang = hang
        self.close_gate = close_gate
        self.setup = None
        self.opened = False
        self.closed = False
        self.sent_audio = []
        self.sent_text = []
        self.inbound = asyncio.Queue()

    async def open(self, setup):
        self.setup = setup
        if self.hang:
            await asyncio.Event().wait()
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    async def send_audio(self, frame):
        self.sent_audio.append(frame)

    async def send_text(self, text):
        self.sent_text.append(text)

    async def receive(self):
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True
        if self.close_gate is not None:
            await self.close_gate.wait()

    def push(self, payload: dict):
        self.inbound.put_nowait(ServerMessage.model_validate(payload))

    def fail(self, error: Exception):
        self.inbound.put_nowait(error)


class FakeChannelFactory:
    """``factory(api_key) -> FakeChannel``; per-call behaviour can be queued."""

    def __init__(self):
        self.channels = []
        self.behaviours = []

    def __call__(self, api_key):
        kwargs = self.behaviours.pop(0) if self.behaviours else {}
        channel = FakeChannel(api_key, **kwargs)
        self.channels.append(channel)
        return channel

    @property
    def last(self):
        return self.channels[-1]


@pytest.fixture
def devices():
    return FakeDevices()


@pytest.fixture
def channels():
    return FakeChannelFactory()


@pytest.fixture
def transcripts():
    return []


@pytest.fixture
def make_session(mock_config, devices, channels, transcripts):
    """Build a LiveSession wired to the fakes."""
    def _make(api_key="test-key", session_config=None, config=None):
        return LiveSession(
            session_config or SessionConfig(language_a="Italian", language_b="English"),
            credentials=StaticCredentialProvider(api_key),
            config=config or mock_config,
            on_transcription=lambda text, is_user: transcripts.append((text, is_user)),
            channel_factory=channels,
            input_factory=devices.input_factory,
            output_factory=devices.output_factory,
        )
    return _make


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


def tone(samples: int = 320, amplitude: int = 8000) -> np.ndarray:
    """Constant-amplitude int16 frame (loud enough to move the meter)."""
    return np.full(samples, amplitude, dtype=np.int16)
