"""Speechmatics real-time (v2) wire contract and normalizer.

``StartRecognition`` configures the session and ``RecognitionStarted``
acknowledges it.  Every binary audio frame is numbered by the server
(``AudioAdded.seq_no``), and ``EndOfStream`` must name the last one.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel

from speech_bridge.adapters.base import (
    BackendWire,
    Capabilities,
    ConnectionTarget,
    HttpSessionFactory,
    normalize_guarded,
    provider_error,
)
from speech_bridge.codec import BinaryFrameCodec, WireFrame, control_message
from speech_bridge.config import Settings
from speech_bridge.errors import ConfigurationError
from speech_bridge.events import (
    Metadata,
    SpeechEnd,
    StreamEvent,
    Transcript,
    Utterance,
    Word,
    as_seconds,
    clamp_confidence,
)
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

NAME = "speechmatics"

DEFAULT_LANGUAGE = "en"
DEFAULT_END_OF_UTTERANCE_S = 0.5

ENCODINGS = {
    AudioEncoding.LINEAR16: "pcm_s16le",
    AudioEncoding.PCM_F32LE: "pcm_f32le",
    AudioEncoding.MULAW: "mulaw",
}

INFO_MESSAGES = frozenset(
    {"RecognitionStarted", "AudioAdded", "Info", "Warning", "EndOfTranscript"}
)


async def build_target(
    config: StreamingConfiguration,
    settings: Settings,
    http_session_factory: HttpSessionFactory,
) -> ConnectionTarget:
    key = WIRE.api_key(settings)
    return ConnectionTarget(
        url=settings.speechmatics_ws_url,
        headers={"Authorization": f"Bearer {key}"},
    )


def transcription_config(config: StreamingConfiguration) -> dict[str, Any]:
    silence = (
        config.endpointing_ms / 1000.0
        if config.endpointing_ms is not None
        else DEFAULT_END_OF_UTTERANCE_S
    )
    tc: dict[str, Any] = {
        "language": config.language or DEFAULT_LANGUAGE,
        "enable_partials": config.interim_results,
        "conversation_config": {"end_of_utterance_silence_trigger": min(silence, 2.0)},
    }
    if config.model:
        tc["operating_point"] = config.model
    if config.diarization:
        tc["diarization"] = "speaker"
    if config.entity_detection:
        tc["enable_entities"] = True
    if config.custom_vocabulary:
        tc["additional_vocab"] = [{"content": word} for word in config.custom_vocabulary]
    tc.update(config.options)
    return tc


def config_message(config: StreamingConfiguration, settings: Settings) -> dict:
    if config.encoding is None:
        raise ConfigurationError("Speechmatics requires an explicit audio encoding.")
    return {
        "message": "StartRecognition",
        "audio_format": {
            "type": "raw",
            "encoding": ENCODINGS[config.encoding],
            "sample_rate": config.sample_rate,
        },
        "transcription_config": transcription_config(config),
    }


def is_ack(message: dict) -> bool:
    return message.get("message") == "RecognitionStarted"


def end_of_stream(frames_sent: int) -> WireFrame:
    return control_message({"message": "EndOfStream", "last_seq_no": frames_sent})


def update_message(options: Mapping[str, Any]) -> dict:
    return {"message": "SetRecognitionConfig", "transcription_config": dict(options)}


# ── Inbound message schemas ──────────────────────────────


class _Alternative(BaseModel):
    content: str
    confidence: Optional[float] = None
    language: Optional[str] = None
    speaker: Optional[str] = None


class _Result(BaseModel):
    type: str = "word"
    start_time: float
    end_time: float
    alternatives: list[_Alternative] = []


class _TranscriptMetadata(BaseModel):
    transcript: str = ""
    start_time: float = 0.0
    end_time: float = 0.0


class _AddTranscript(BaseModel):
    metadata: _TranscriptMetadata
    results: list[_Result] = []


class SpeechmaticsNormalizer:
    """Maps Speechmatics messages by the ``message`` field.

    Final transcripts since the last ``EndOfUtterance`` form the utterance
    emitted when that boundary arrives.
    """

    def __init__(self) -> None:
        self._finals: list[Transcript] = []

    def normalize(self, raw: WireFrame) -> list[StreamEvent]:
        return normalize_guarded(NAME, raw, self._dispatch)

    def _dispatch(self, msg: dict) -> Optional[list[StreamEvent]]:
        kind = msg.get("message")
        if kind in ("AddPartialTranscript", "AddTranscript"):
            return self._transcript(
                _AddTranscript.model_validate(msg), kind == "AddTranscript", msg
            )
        if kind == "EndOfUtterance":
            meta = msg.get("metadata") or {}
            events = [
                StreamEvent.of(NAME, SpeechEnd(timestamp=as_seconds(meta.get("end_time"))), raw=msg)
            ]
            events.extend(self._flush(msg))
            return events
        if kind == "EndOfTranscript":
            events = self._flush(msg)
            events.append(StreamEvent.of(NAME, Metadata(kind=kind, data=msg), raw=msg))
            return events
        if kind in INFO_MESSAGES:
            return [StreamEvent.of(NAME, Metadata(kind=kind, data=msg), raw=msg)]
        if kind == "Error":
            return [
                provider_error(
                    NAME,
                    str(msg.get("reason") or "Speechmatics error"),
                    details={"type": msg.get("type")},
                    raw=msg,
                )
            ]
        return None

    def _transcript(self, message: _AddTranscript, is_final: bool, msg: dict) -> list[StreamEvent]:
        words = tuple(
            Word(
                text=r.alternatives[0].content,
                start=r.start_time,
                end=r.end_time,
                confidence=clamp_confidence(r.alternatives[0].confidence),
                speaker=r.alternatives[0].speaker,
            )
            for r in message.results
            if r.type == "word" and r.alternatives
        )
        confidences = [w.confidence for w in words if w.confidence is not None]
        first = next((r.alternatives[0] for r in message.results if r.alternatives), None)
        transcript = Transcript(
            text=message.metadata.transcript.strip(),
            is_final=is_final,
            confidence=sum(confidences) / len(confidences) if confidences else None,
            words=words,
            speaker=first.speaker if first else None,
            language=first.language if first else None,
            start=message.metadata.start_time,
            end=message.metadata.end_time,
        )
        if is_final and transcript.text:
            self._finals.append(transcript)
        return [StreamEvent.of(NAME, transcript, raw=msg)]

    def _flush(self, msg: dict) -> list[StreamEvent]:
        finals, self._finals = self._finals, []
        if not finals:
            return []
        words = tuple(w for t in finals for w in t.words)
        confidences = [w.confidence for w in words if w.confidence is not None]
        utterance = Utterance(
            text=" ".join(t.text for t in finals),
            start=finals[0].start or 0.0,
            end=finals[-1].end or 0.0,
            confidence=sum(confidences) / len(confidences) if confidences else None,
            speaker=finals[0].speaker,
            words=words,
            language=finals[0].language,
        )
        return [StreamEvent.of(NAME, utterance, raw=msg)]


WIRE = BackendWire(
    name=NAME,
    capabilities=Capabilities(
        streaming=True,
        diarization=True,
        entity_detection=True,
        mid_session_update=True,
    ),
    credential="speechmatics_api_key",
    encodings=ENCODINGS,
    build_target=build_target,
    codec=BinaryFrameCodec(end_of_stream),
    normalizer_factory=lambda config: SpeechmaticsNormalizer(),
    config_message=config_message,
    is_ack=is_ack,
    update_message=update_message,
)
