"""AssemblyAI Universal Streaming (v3) wire contract and normalizer.

The session is ready once the server sends ``Begin``.  AssemblyAI rejects
audio frames shorter than 50 ms or longer than 1000 ms, so caller chunks are
regrouped before framing.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from pydantic import BaseModel

from speech_bridge.adapters.base import (
    BackendWire,
    Capabilities,
    ConnectionTarget,
    HttpSessionFactory,
    normalize_guarded,
    provider_error,
    query_value,
)
from speech_bridge.audio import AudioRebuffer, bytes_for_duration
from speech_bridge.codec import BinaryFrameCodec, WireFrame, control_message
from speech_bridge.config import Settings
from speech_bridge.errors import ConfigurationError
from speech_bridge.events import (
    Metadata,
    StreamEvent,
    Transcript,
    Utterance,
    Word,
    clamp_confidence,
    ms_to_seconds,
)
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

NAME = "assemblyai"

MIN_FRAME_MS = 50
MAX_FRAME_MS = 1000

ENCODINGS = {
    AudioEncoding.LINEAR16: "pcm_s16le",
    AudioEncoding.MULAW: "pcm_mulaw",
}


def validate(config: StreamingConfiguration) -> None:
    if config.channels not in (None, 1):
        raise ConfigurationError("AssemblyAI streaming accepts mono audio only.")


def query_params(config: StreamingConfiguration) -> dict[str, str]:
    params: dict[str, Any] = {
        "sample_rate": config.sample_rate or 16000,
        "encoding": ENCODINGS[config.encoding or AudioEncoding.LINEAR16],
    }
    if config.model:
        params["speech_model"] = config.model
    if config.endpointing_ms is not None:
        params["min_end_of_turn_silence_when_confident"] = config.endpointing_ms
    if config.custom_vocabulary:
        params["keyterms_prompt"] = json.dumps(list(config.custom_vocabulary))
    if config.language_detection:
        params["language_detection"] = True
    params.update(config.options)
    return {key: query_value(value) for key, value in params.items()}


async def build_target(
    config: StreamingConfiguration,
    settings: Settings,
    http_session_factory: HttpSessionFactory,
) -> ConnectionTarget:
    key = WIRE.api_key(settings)
    url = f"{settings.assemblyai_ws_url}?{urlencode(query_params(config))}"
    return ConnectionTarget(url=url, headers={"Authorization": key})


def rebuffer(config: StreamingConfiguration) -> Optional[AudioRebuffer]:
    low = bytes_for_duration(config, MIN_FRAME_MS)
    high = bytes_for_duration(config, MAX_FRAME_MS)
    if low is None or high is None:
        return None
    return AudioRebuffer(low, high)


def end_of_stream(frames_sent: int) -> WireFrame:
    return control_message({"type": "Terminate"})


def update_message(options: Mapping[str, Any]) -> dict:
    return {"type": "UpdateConfiguration", **options}


def is_ack(message: dict) -> bool:
    return message.get("type") == "Begin"


# ── Inbound message schemas ──────────────────────────────


class _Word(BaseModel):
    text: str
    start: float
    end: float
    confidence: Optional[float] = None
    word_is_final: bool = True


class _Turn(BaseModel):
    transcript: str = ""
    turn_order: int = 0
    end_of_turn: bool = False
    end_of_turn_confidence: Optional[float] = None
    turn_is_formatted: bool = False
    language_code: Optional[str] = None
    words: list[_Word] = []


class AssemblyAINormalizer:
    """Maps v3 messages by ``type``; errors arrive as ``{"error": ...}``.

    When turn formatting is requested AssemblyAI repeats the final turn in
    formatted form, and only that repeat becomes the ``utterance``.
    """

    def __init__(self, format_turns: bool = False) -> None:
        self._format_turns = format_turns

    def normalize(self, raw: WireFrame) -> list[StreamEvent]:
        return normalize_guarded(NAME, raw, self._dispatch)

    def _dispatch(self, msg: dict) -> Optional[list[StreamEvent]]:
        if "error" in msg and "type" not in msg:
            return [provider_error(NAME, str(msg["error"]), raw=msg)]
        kind = msg.get("type")
        if kind == "Begin":
            return [
                StreamEvent.of(
                    NAME,
                    Metadata(kind="Begin", data={"id": msg["id"], "expires_at": msg.get("expires_at")}),
                    raw=msg,
                )
            ]
        if kind == "Turn":
            return self._turn(_Turn.model_validate(msg), msg)
        if kind == "Termination":
            return [
                StreamEvent.of(
                    NAME,
                    Metadata(
                        kind="Termination",
                        data={
                            "audio_duration_seconds": msg.get("audio_duration_seconds"),
                            "session_duration_seconds": msg.get("session_duration_seconds"),
                        },
                    ),
                    raw=msg,
                )
            ]
        if kind == "SpeechStarted":
            return [StreamEvent.of(NAME, Metadata(kind="SpeechStarted", data=msg), raw=msg)]
        return None

    def _turn(self, turn: _Turn, msg: dict) -> list[StreamEvent]:
        words = tuple(
            Word(
                text=w.text,
                start=ms_to_seconds(w.start) or 0.0,
                end=ms_to_seconds(w.end) or 0.0,
                confidence=clamp_confidence(w.confidence),
            )
            for w in turn.words
        )
        confidence = clamp_confidence(turn.end_of_turn_confidence) if turn.end_of_turn else None
        transcript = Transcript(
            text=turn.transcript,
            is_final=turn.end_of_turn,
            confidence=confidence,
            words=words,
            language=turn.language_code,
            start=words[0].start if words else None,
            end=words[-1].end if words else None,
        )
        events = [StreamEvent.of(NAME, transcript, raw=msg)]
        completes = turn.end_of_turn and (turn.turn_is_formatted or not self._format_turns)
        if completes and turn.transcript:
            word_confidences = [w.confidence for w in words if w.confidence is not None]
            utterance = Utterance(
                text=turn.transcript,
                start=transcript.start or 0.0,
                end=transcript.end or 0.0,
                confidence=(
                    sum(word_confidences) / len(word_confidences) if word_confidences else confidence
                ),
                words=words,
                language=turn.language_code,
            )
            events.append(StreamEvent.of(NAME, utterance, raw=msg))
        return events


def _normalizer(config: StreamingConfiguration) -> AssemblyAINormalizer:
    return AssemblyAINormalizer(format_turns=bool(config.options.get("format_turns")))


WIRE = BackendWire(
    name=NAME,
    capabilities=Capabilities(
        streaming=True,
        language_detection=True,
        mid_session_update=True,
    ),
    credential="assemblyai_api_key",
    encodings=ENCODINGS,
    build_target=build_target,
    codec=BinaryFrameCodec(end_of_stream),
    normalizer_factory=_normalizer,
    is_ack=is_ack,
    rebuffer=rebuffer,
    validate=validate,
    update_message=update_message,
    endpoint_message={"type": "ForceEndpoint"},
)
