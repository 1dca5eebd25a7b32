"""
Wire codec for the Gemini Live bidirectional streaming API.

Outbound: one ``setup`` message, then ``realtimeInput`` audio chunks and
occasional text hints. Inbound: ``setupComplete``, ``serverContent``
(transcription fragments, synthesized audio, turn boundaries) and ``goAway``.
"""

import base64
import binascii
import json
import logging
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import RemoteConfig, SessionConfig
from .duplex import AudioFrame, SpeakerChannel
from .errors import StreamError

logger = logging.getLogger(__name__)


def build_system_instruction(session: SessionConfig) -> str:
    """Interpreter prompt for the configured language pair."""
    a = session.language_a.value
    b = session.language_b.value
    lines = [
        f"You are a professional simultaneous interpreter between {a} and {b}.",
        f"When you hear {a}, say the translation in {b}.",
        f"When you hear {b}, say the translation in {a}.",
        "Only ever speak the translation. Do not answer questions, add "
        "commentary or explain what you are doing.",
    ]
    if session.split_audio:
        lines.append(
            f"Two people share the microphone: Speaker A speaks {a} and "
            f"Speaker B speaks {b}. Short text notes tell you which speaker "
            "is talking; never translate or read out those notes."
        )
    return "\n".join(lines)


def build_setup_message(session: SessionConfig, remote: RemoteConfig) -> dict:
    """
    First message of the session.

    Args:
        session: Language pair and split-audio flag
        remote: Model and voice selection
    """
    generation_config = {"responseModalities": ["AUDIO"]}
    if remote.voice:
        generation_config["speechConfig"] = {
            "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": remote.voice}}
        }

    return {
        "setup": {
            "model": remote.model,
            "generationConfig": generation_config,
            "systemInstruction": {"parts": [{"text": build_system_instruction(session)}]},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def encode_audio(frame: AudioFrame, sample_rate: int) -> str:
    """realtimeInput message carrying one pcm16le frame."""
    return json.dumps({
        "realtimeInput": {
            "audio": {
                "data": base64.b64encode(frame.pcm).decode("ascii"),
                "mimeType": f"audio/pcm;rate={sample_rate}",
            }
        }
    })


def speaker_hint(channel: SpeakerChannel, session: SessionConfig) -> str:
    language = session.language_a if channel is SpeakerChannel.A else session.language_b
    return f"[Speaker {channel.value} is now speaking {language.value}]"


def encode_text(text: str) -> str:
    """realtimeInput message carrying a text note."""
    return json.dumps({"realtimeInput": {"text": text}})


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Blob(_Wire):
    mime_type: str = Field("", alias="mimeType")
    data: str = ""


class Part(_Wire):
    text: Optional[str] = None
    inline_data: Optional[Blob] = Field(None, alias="inlineData")


class Content(_Wire):
    parts: List[Part] = Field(default_factory=list)


class Transcription(_Wire):
    text: str = ""


class ServerContent(_Wire):
    model_turn: Optional[Content] = Field(None, alias="modelTurn")
    input_transcription: Optional[Transcription] = Field(None, alias="inputTranscription")
    output_transcription: Optional[Transcription] = Field(None, alias="outputTranscription")
    turn_complete: bool = Field(False, alias="turnComplete")
    generation_complete: bool = Field(False, alias="generationComplete")
    interrupted: bool = False


class GoAway(_Wire):
    time_left: Optional[str] = Field(None, alias="timeLeft")


class ServerMessage(_Wire):
    """One decoded inbound frame."""
    setup_complete: Optional[dict] = Field(None, alias="setupComplete")
    server_content: Optional[ServerContent] = Field(None, alias="serverContent")
    go_away: Optional[GoAway] = Field(None, alias="goAway")

    @property
    def is_setup_complete(self) -> bool:
        return self.setup_complete is not None

    def audio_chunks(self) -> List[bytes]:
        """
        Synthesized audio carried by this frame, in part order.

        Raises:
            StreamError: If a chunk is not valid base64
        """
        content = self.server_content
        if content is None or content.model_turn is None:
            return []

        chunks = []
        for part in content.model_turn.parts:
            blob = part.inline_data
            if blob is None or not blob.mime_type.startswith("audio/"):
                continue
            try:
                chunks.append(base64.b64decode(blob.data, validate=True))
            except (binascii.Error, ValueError) as e:
                raise StreamError(f"Malformed audio from remote service: {e}") from e
        return chunks


def decode_message(raw: Union[str, bytes]) -> ServerMessage:
    """
    Parse one inbound frame (text or binary JSON).

    Raises:
        StreamError: If the frame is not a valid server message
    """
    try:
        return ServerMessage.model_validate_json(raw)
    except ValidationError as e:
        logger.debug(f"Undecodable frame ({len(raw)} bytes): {e}")
        raise StreamError("Malformed message from remote service") from e
