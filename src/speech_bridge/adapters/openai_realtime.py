"""OpenAI Realtime transcription-session wire contract and normalizer.

Audio travels inside JSON ``input_audio_buffer.append`` messages as base64;
committing the buffer ends the stream.  Transcripts arrive as per-item
deltas followed by one ``completed`` message.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from speech_bridge.adapters.base import (
    BackendWire,
    Capabilities,
    ConnectionTarget,
    HttpSessionFactory,
    normalize_guarded,
    provider_error,
)
from speech_bridge.codec import JsonAudioFrameCodec, WireFrame, control_message
from speech_bridge.config import Settings
from speech_bridge.errors import ConfigurationError, ErrorCode
from speech_bridge.events import (
    Metadata,
    SpeechEnd,
    SpeechStart,
    StreamEvent,
    Transcript,
    Utterance,
    ms_to_seconds,
)
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

NAME = "openai-realtime"

DEFAULT_MODEL = "gpt-4o-transcribe"
PCM16_SAMPLE_RATE = 24000
G711_SAMPLE_RATE = 8000

ENCODINGS = {
    AudioEncoding.LINEAR16: "pcm16",
    AudioEncoding.MULAW: "g711_ulaw",
    AudioEncoding.ALAW: "g711_alaw",
}

INFO_MESSAGES = frozenset(
    {
        "transcription_session.created",
        "transcription_session.updated",
        "input_audio_buffer.committed",
        "input_audio_buffer.cleared",
        "conversation.item.created",
    }
)

_TRANSCRIPTION = "conversation.item.input_audio_transcription"


def validate(config: StreamingConfiguration) -> None:
    if config.channels not in (None, 1):
        raise ConfigurationError("OpenAI Realtime accepts mono audio only.")
    expected = PCM16_SAMPLE_RATE if config.encoding is AudioEncoding.LINEAR16 else G711_SAMPLE_RATE
    if config.sample_rate != expected:
        raise ConfigurationError(
            f"OpenAI Realtime requires {expected} Hz for '{config.encoding.value}' audio, "
            f"got {config.sample_rate}.",
            details={"sample_rate": expected},
        )


async def build_target(
    config: StreamingConfiguration,
    settings: Settings,
    http_session_factory: HttpSessionFactory,
) -> ConnectionTarget:
    key = WIRE.api_key(settings)
    return ConnectionTarget(
        url=f"{settings.openai_realtime_url}?intent=transcription",
        headers={"Authorization": f"Bearer {key}", "OpenAI-Beta": "realtime=v1"},
    )


def config_message(config: StreamingConfiguration, settings: Settings) -> dict:
    transcription: dict[str, Any] = {"model": config.model or DEFAULT_MODEL}
    if config.language:
        transcription["language"] = config.language
    if config.custom_vocabulary:
        transcription["prompt"] = ", ".join(config.custom_vocabulary)
    turn_detection: dict[str, Any] = {"type": "server_vad"}
    if config.endpointing_ms is not None:
        turn_detection["silence_duration_ms"] = config.endpointing_ms
    session: dict[str, Any] = {
        "input_audio_format": ENCODINGS[config.encoding or AudioEncoding.LINEAR16],
        "input_audio_transcription": transcription,
        "turn_detection": turn_detection,
    }
    session.update(config.options)
    return {"type": "transcription_session.update", "session": session}


def is_ack(message: dict) -> bool:
    return message.get("type") == "transcription_session.updated"


def end_of_stream(frames_sent: int) -> WireFrame:
    return control_message({"type": "input_audio_buffer.commit"})


def update_message(options: Mapping[str, Any]) -> dict:
    return {"type": "transcription_session.update", "session": dict(options)}


class OpenAIRealtimeNormalizer:
    """Maps realtime server events by ``type``.

    Deltas are accumulated per conversation item so every interim transcript
    carries the full text so far; VAD boundaries give the utterance times.
    """

    def __init__(self) -> None:
        self._partial: dict[str, str] = {}
        self._spans: dict[str, list[Optional[float]]] = {}

    def normalize(self, raw: WireFrame) -> list[StreamEvent]:
        return normalize_guarded(NAME, raw, self._dispatch)

    def _dispatch(self, msg: dict) -> Optional[list[StreamEvent]]:
        kind = msg.get("type")
        if kind in INFO_MESSAGES:
            return [StreamEvent.of(NAME, Metadata(kind=kind, data=msg), raw=msg)]
        if kind == "input_audio_buffer.speech_started":
            start = ms_to_seconds(msg.get("audio_start_ms"))
            self._spans[msg["item_id"]] = [start, None]
            return [StreamEvent.of(NAME, SpeechStart(timestamp=start), raw=msg)]
        if kind == "input_audio_buffer.speech_stopped":
            end = ms_to_seconds(msg.get("audio_end_ms"))
            self._spans.setdefault(msg["item_id"], [None, None])[1] = end
            return [StreamEvent.of(NAME, SpeechEnd(timestamp=end), raw=msg)]
        if kind == f"{_TRANSCRIPTION}.delta":
            item_id = msg["item_id"]
            text = self._partial.get(item_id, "") + msg["delta"]
            self._partial[item_id] = text
            return [StreamEvent.of(NAME, Transcript(text=text, is_final=False), raw=msg)]
        if kind == f"{_TRANSCRIPTION}.completed":
            return self._completed(msg)
        if kind == f"{_TRANSCRIPTION}.failed":
            item_id = msg.get("item_id", "")
            self._partial.pop(item_id, None)
            self._spans.pop(item_id, None)
            error = msg.get("error") or {}
            return [
                provider_error(
                    NAME,
                    str(error.get("message") or "Transcription failed"),
                    details=error,
                    fatal=False,
                    code=ErrorCode.TRANSCRIPTION_ERROR,
                    raw=msg,
                )
            ]
        if kind == "error":
            error = msg.get("error") or {}
            return [
                provider_error(
                    NAME,
                    str(error.get("message") or "OpenAI Realtime error"),
                    details=error,
                    fatal=False,
                    raw=msg,
                )
            ]
        return None

    def _completed(self, msg: dict) -> list[StreamEvent]:
        item_id = msg["item_id"]
        text = str(msg["transcript"]).strip()
        self._partial.pop(item_id, None)
        start, end = self._spans.pop(item_id, [None, None])
        events = [
            StreamEvent.of(
                NAME, Transcript(text=text, is_final=True, start=start, end=end), raw=msg
            )
        ]
        if text:
            utterance = Utterance(text=text, start=start or 0.0, end=end or start or 0.0)
            events.append(StreamEvent.of(NAME, utterance, raw=msg))
        return events


WIRE = BackendWire(
    name=NAME,
    capabilities=Capabilities(streaming=True, mid_session_update=True),
    credential="openai_api_key",
    encodings=ENCODINGS,
    build_target=build_target,
    codec=JsonAudioFrameCodec("input_audio_buffer.append", end_of_stream),
    normalizer_factory=lambda config: OpenAIRealtimeNormalizer(),
    config_message=config_message,
    is_ack=is_ack,
    validate=validate,
    update_message=update_message,
    endpoint_message={"type": "input_audio_buffer.commit"},
)
