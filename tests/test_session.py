"""
End-to-end tests for LiveSession with fake devices and channel.
"""

import asyncio
import base64
import threading

import numpy as np
import pytest

from conftest import tone, wait_until
from live_interpreter.config import SessionConfig
from live_interpreter.duplex import SpeakerChannel
from live_interpreter.errors import HandshakeError, InvalidTransitionError, StreamError
from live_interpreter.state_machine import ConnectionState

IDLE = ConnectionState.IDLE
CONNECTING = ConnectionState.CONNECTING
CONNECTED = ConnectionState.CONNECTED
ERROR = ConnectionState.ERROR


def record_states(session):
    """Distinct connection states in the order the store published them."""
    states = [session.connection_state]

    def on_change(snap):
        if snap.connection_state != states[-1]:
            states.append(snap.connection_state)
    session.subscribe(on_change)
    return states


async def connected_session(make_session, **kwargs):
    session = make_session(**kwargs)
    session.connect()
    await session.wait_for_state(CONNECTED, ERROR, timeout=2)
    assert session.connection_state is CONNECTED, session.error_message
    return session


@pytest.mark.asyncio
async def test_connect_without_credential(make_session, devices, channels):
    """Empty credential: error state, no device or network activity."""
    session = make_session(api_key="   ")
    states = record_states(session)

    session.connect()
    await session.wait_for_state(ERROR, timeout=1)

    assert "API key" in session.error_message
    assert devices.inputs == []
    assert devices.outputs == []
    assert channels.channels == []
    assert states == [IDLE, ERROR]


@pytest.mark.asyncio
async def test_credential_not_in_error_message(make_session, channels):
    channels.behaviours.append({"open_error": HandshakeError("API key rejected by the remote service")})
    session = make_session(api_key="AIzaSECRET1234567890")

    session.connect()
    await session.wait_for_state(ERROR, timeout=1)

    assert session.error_message == "API key rejected by the remote service"
    assert "AIzaSECRET" not in session.error_message
    await session.aclose()


@pytest.mark.asyncio
async def test_same_language_rejected_at_connect(make_session, channels):
    session = make_session(session_config=SessionConfig(language_a="English", language_b="en-US"))

    session.connect()
    await session.wait_for_state(ERROR, timeout=1)

    assert "different languages" in session.error_message
    assert channels.channels == []


@pytest.mark.asyncio
async def test_connect_and_receive_transcription(make_session, channels, transcripts):
    """Inbound user transcription at turn end reaches the observer once."""
    session = await connected_session(make_session)
    channel = channels.last

    assert channel.api_key == "test-key"
    setup = channel.setup["setup"]
    assert setup["inputAudioTranscription"] == {}
    assert "Italian" in setup["systemInstruction"]["parts"][0]["text"]

    channel.push({"serverContent": {"inputTranscription": {"text": "Buongiorno"}, "turnComplete": True}})
    await wait_until(lambda: transcripts)
    await asyncio.sleep(0.02)

    assert transcripts == [("Buongiorno", True)]
    assert [e.text for e in session.entries()] == ["Buongiorno"]
    assert session.entries()[0].is_user
    await session.aclose()


@pytest.mark.asyncio
async def test_turn_delivers_user_then_model(make_session, channels, transcripts):
    session = await connected_session(make_session)
    channel = channels.last

    channel.push({"serverContent": {"inputTranscription": {"text": "Dove "}}})
    channel.push({"serverContent": {"outputTranscription": {"text": "Where is"}}})
    channel.push({"serverContent": {"inputTranscription": {"text": "è la stazione?"}}})
    channel.push({"serverContent": {"outputTranscription": {"text": " the station?"}, "turnComplete": True}})
    await wait_until(lambda: len(transcripts) == 2)

    assert transcripts == [("Dove è la stazione?", True), ("Where is the station?", False)]
    await session.aclose()


@pytest.mark.asyncio
async def test_stream_failure_releases_everything(make_session, devices, channels):
    """A mid-stream failure ends in error with devices and channel released."""
    session = await connected_session(make_session)
    channel = channels.last

    channel.fail(StreamError("Remote service closed the session (1011)"))
    await session.wait_for_state(ERROR, timeout=2)

    assert session.error_message == "Remote service closed the session (1011)"
    assert channel.closed
    assert devices.leaked() == []
    assert session.volume == 0.0


@pytest.mark.asyncio
async def test_muted_microphone_sends_nothing(make_session, devices, channels):
    session = await connected_session(make_session)
    channel = channels.last

    session.toggle_mute()
    assert session.is_muted

    for _ in range(5):
        devices.mic.emit(tone())
    await asyncio.sleep(0.05)

    assert channel.sent_audio == []
    assert session.volume == 0.0
    await session.aclose()


@pytest.mark.asyncio
async def test_unmuted_microphone_streams_in_order(make_session, devices, channels):
    session = await connected_session(make_session)
    channel = channels.last

    for _ in range(3):
        devices.mic.emit(tone())
    await wait_until(lambda: len(channel.sent_audio) == 3)

    assert [f.seq for f in channel.sent_audio] == [0, 1, 2]
    assert all(f.channel is None for f in channel.sent_audio)
    assert len(channel.sent_audio[0].pcm) == 320 * 2
    assert 0.0 < session.volume <= 1.0
    await session.aclose()


@pytest.mark.asyncio
async def test_mute_toggle_parity(make_session):
    session = make_session()
    for n in range(1, 6):
        session.toggle_mute()
        assert session.is_muted is (n % 2 == 1)


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(make_session, devices, channels):
    session = await connected_session(make_session)
    states = record_states(session)

    session.disconnect()
    session.disconnect()
    await session.wait_for_state(IDLE, timeout=1)
    await session.aclose()

    assert states == [CONNECTED, IDLE]
    assert channels.last.closed
    assert devices.leaked() == []
    assert session.volume == 0.0
    assert session.error_message is None


@pytest.mark.asyncio
async def test_disconnect_while_idle_is_noop(make_session):
    session = make_session()
    states = record_states(session)

    await session.aclose()

    assert states == [IDLE]


@pytest.mark.asyncio
async def test_handshake_timeout(make_session, mock_config, devices, channels):
    mock_config.remote.handshake_timeout_s = 0.1
    channels.behaviours.append({"hang": True})
    session = make_session()

    session.connect()
    await session.wait_for_state(ERROR, timeout=2)

    assert "No answer" in session.error_message
    assert channels.last.closed
    assert devices.leaked() == []


@pytest.mark.asyncio
async def test_device_failure_skips_network(make_session, devices, channels):
    devices.fail_input = True
    session = make_session()

    session.connect()
    await session.wait_for_state(ERROR, timeout=2)

    assert "Microphone unavailable" in session.error_message
    assert channels.channels == []
    assert devices.leaked() == []


@pytest.mark.asyncio
async def test_retry_after_error(make_session, devices, channels):
    channels.behaviours.append({"open_error": HandshakeError("Cannot reach remote service: OSError")})
    session = make_session()
    states = record_states(session)

    session.connect()
    await session.wait_for_state(ERROR, timeout=2)
    first = channels.last

    session.retry()
    await session.wait_for_state(CONNECTED, timeout=2)

    assert first.closed
    assert channels.last is not first
    assert len(devices.inputs) == 2
    assert not devices.inputs[0].active
    assert session.error_message is None
    assert states == [IDLE, CONNECTING, ERROR, CONNECTING, CONNECTED]
    await session.aclose()


@pytest.mark.asyncio
async def test_retry_ignored_unless_error(make_session, channels):
    session = await connected_session(make_session)

    session.retry()
    await asyncio.sleep(0.02)

    assert session.connection_state is CONNECTED
    assert len(channels.channels) == 1
    await session.aclose()


@pytest.mark.asyncio
async def test_connect_ignored_while_connected(make_session, channels):
    session = await connected_session(make_session)

    session.connect()
    await asyncio.sleep(0.02)

    assert session.connection_state is CONNECTED
    assert len(channels.channels) == 1
    await session.aclose()


@pytest.mark.asyncio
async def test_disconnect_then_connect_applied_in_order(make_session, channels, devices):
    session = await connected_session(make_session)

    session.disconnect()
    session.connect()
    await wait_until(lambda: len(channels.channels) == 2)
    await session.wait_for_state(CONNECTED, timeout=2)

    assert channels.channels[0].closed
    assert not channels.channels[1].closed
    assert len(devices.leaked()) == 2
    await session.aclose()


@pytest.mark.asyncio
async def test_received_audio_is_played(make_session, devices, channels):
    session = await connected_session(make_session)
    pcm = np.arange(480, dtype=np.int16)

    channels.last.push({
        "serverContent": {
            "modelTurn": {
                "parts": [{"inlineData": {"mimeType": "audio/pcm;rate=24000",
                                          "data": base64.b64encode(pcm.tobytes()).decode()}}]
            }
        }
    })
    await wait_until(lambda: devices.speaker.written)

    np.testing.assert_array_equal(devices.speaker.written[0], pcm)
    await session.aclose()


@pytest.mark.asyncio
async def test_split_audio_tags_frames_and_announces_speaker(make_session, devices, channels):
    session = await connected_session(
        make_session,
        session_config=SessionConfig(language_a="Italian", language_b="English", split_audio=True),
    )
    channel = channels.last

    devices.mic.emit(tone())
    await wait_until(lambda: len(channel.sent_audio) == 1)
    session.select_channel(SpeakerChannel.B)
    devices.mic.emit(tone())
    await wait_until(lambda: len(channel.sent_audio) == 2)

    assert [f.channel for f in channel.sent_audio] == [SpeakerChannel.A, SpeakerChannel.B]
    assert channel.sent_text == [
        "[Speaker A is now speaking Italian]",
        "[Speaker B is now speaking English]",
    ]
    await session.aclose()


@pytest.mark.asyncio
async def test_split_audio_channel_mute(make_session, devices, channels):
    session = await connected_session(
        make_session,
        session_config=SessionConfig(language_a="Italian", language_b="English", split_audio=True),
    )
    channel = channels.last

    session.toggle_channel_mute(SpeakerChannel.B)
    session.select_channel(SpeakerChannel.B)
    devices.mic.emit(tone())
    await asyncio.sleep(0.05)

    assert channel.sent_audio == []
    assert session.volume == 0.0

    session.select_channel(SpeakerChannel.A)
    devices.mic.emit(tone())
    await wait_until(lambda: len(channel.sent_audio) == 1)
    assert channel.sent_audio[0].channel is SpeakerChannel.A
    await session.aclose()


@pytest.mark.asyncio
async def test_configure_requires_idle(make_session):
    session = await connected_session(make_session)

    with pytest.raises(InvalidTransitionError):
        session.configure(SessionConfig(language_a="Spanish", language_b="German"))

    await session.aclose()
    session.configure(SessionConfig(language_a="Spanish", language_b="German"))
    assert session.session_config.language_a.value == "Spanish"


@pytest.mark.asyncio
async def test_volume_always_in_range(make_session, devices, channels):
    session = await connected_session(make_session)
    volumes = []
    session.subscribe(lambda snap: volumes.append(snap.volume))

    for amplitude in (0, 100, 32767, -32768, 5000):
        devices.mic.emit(tone(amplitude=amplitude))
    await wait_until(lambda: len(channels.last.sent_audio) == 5)
    await session.aclose()

    assert volumes
    assert all(0.0 <= v <= 1.0 for v in volumes)
    assert session.volume == 0.0


@pytest.mark.asyncio
async def test_disconnect_aborts_pending_handshake(make_session, mock_config, devices, channels):
    mock_config.remote.handshake_timeout_s = 5.0
    channels.behaviours.append({"hang": True})
    session = make_session()

    session.connect()
    await wait_until(lambda: channels.channels and channels.last.setup is not None)
    loop = asyncio.get_running_loop()
    started = loop.time()
    await session.disconnect()
    elapsed = loop.time() - started

    assert session.connection_state is IDLE
    assert session.error_message is None
    assert channels.last.closed
    assert devices.leaked() == []
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_disconnect_during_device_acquisition_then_reconnect(make_session, devices, channels):
    """A slow device open from an abandoned session never binds to the next one."""
    gate = threading.Event()
    devices.input_gates.append(gate)
    session = make_session()

    session.connect()
    await wait_until(lambda: devices.inputs)
    await session.disconnect()
    assert session.connection_state is IDLE

    session.connect()
    await session.wait_for_state(CONNECTED, ERROR, timeout=2)
    assert session.connection_state is CONNECTED
    stale_mic, live_mic = devices.inputs

    gate.set()
    await wait_until(lambda: stale_mic.stopped and devices.outputs[0].stopped)
    assert devices.leaked() == [live_mic, devices.outputs[1]]

    stale_mic.emit(tone())
    live_mic.emit(tone())
    await wait_until(lambda: len(channels.last.sent_audio) == 1)
    await asyncio.sleep(0.02)
    assert len(channels.last.sent_audio) == 1

    await session.aclose()
    assert devices.leaked() == []


@pytest.mark.asyncio
async def test_connect_waits_for_session_still_closing(make_session, mock_config, channels):
    mock_config.remote.close_timeout_s = 0.1
    release = asyncio.Event()
    channels.behaviours.append({"hang": True, "close_gate": release})
    session = make_session()

    session.connect()
    await wait_until(lambda: channels.channels and channels.last.setup is not None)
    await session.disconnect()
    assert session.connection_state is IDLE
    assert session.connection.is_running

    await session.connect()
    assert session.connection_state is IDLE
    assert len(channels.channels) == 1

    release.set()
    await wait_until(lambda: not session.connection.is_running)
    await session.connect()
    await session.wait_for_state(CONNECTED, timeout=2)
    assert len(channels.channels) == 2
    await session.aclose()
