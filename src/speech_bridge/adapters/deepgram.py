"""Deepgram live transcription (``/v1/listen``) wire contract and normalizer.

Options travel in the query string, auth in ``Authorization: Token``.
Audio is sent as binary frames; ``CloseStream`` ends the stream and
``Finalize`` flushes the current utterance.
"""

from __future__ import annotations

from typing import Optional
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
from speech_bridge.codec import BinaryFrameCodec, WireFrame, control_message
from speech_bridge.config import Settings
from speech_bridge.events import (
    Metadata,
    SpeechEnd,
    SpeechStart,
    StreamEvent,
    Transcript,
    Utterance,
    Word,
    as_seconds,
    clamp_confidence,
)
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

NAME = "deepgram"

ENCODINGS = {
    AudioEncoding.LINEAR16: "linear16",
    AudioEncoding.MULAW: "mulaw",
    AudioEncoding.ALAW: "alaw",
    AudioEncoding.FLAC: "flac",
    AudioEncoding.OPUS: "opus",
    AudioEncoding.SPEEX: "speex",
    AudioEncoding.AMR_NB: "amr-nb",
    AudioEncoding.AMR_WB: "amr-wb",
    AudioEncoding.G729: "g729",
}


def query_params(config: StreamingConfiguration) -> dict[str, str]:
    params: dict[str, object] = {}
    if config.encoding is not None:
        params["encoding"] = ENCODINGS[config.encoding]
    if config.sample_rate:
        params["sample_rate"] = config.sample_rate
    if config.channels:
        params["channels"] = config.channels
        if config.channels > 1:
            params["multichannel"] = True
    if config.model:
        params["model"] = config.model
    if config.language:
        params["language"] = config.language
    if config.language_detection:
        params["detect_language"] = True
    if config.diarization:
        params["diarize"] = True
    if config.interim_results:
        params["interim_results"] = True
        params["utterance_end_ms"] = 1000
    if config.endpointing_ms is not None:
        params["endpointing"] = config.endpointing_ms
    if config.sentiment_analysis:
        params["sentiment"] = True
    if config.entity_detection:
        params["detect_entities"] = True
    if config.summarization:
        params["summarize"] = "v2"
    if config.custom_vocabulary:
        params["keywords"] = ",".join(config.custom_vocabulary)
    params["punctuate"] = True
    params["smart_format"] = True
    params["vad_events"] = True
    params.update(config.options)
    return {key: query_value(value) for key, value in params.items()}


async def build_target(
    config: StreamingConfiguration,
    settings: Settings,
    http_session_factory: HttpSessionFactory,
) -> ConnectionTarget:
    key = WIRE.api_key(settings)
    url = f"{settings.deepgram_ws_url}?{urlencode(query_params(config))}"
    return ConnectionTarget(url=url, headers={"Authorization": f"Token {key}"})


def end_of_stream(frames_sent: int) -> WireFrame:
    return control_message({"type": "CloseStream"})


# ── Inbound message schemas ──────────────────────────────


class _Word(BaseModel):
    word: str
    start: float
    end: float
    confidence: Optional[float] = None
    speaker: Optional[int] = None
    punctuated_word: Optional[str] = None


class _Alternative(BaseModel):
    transcript: str = ""
    confidence: Optional[float] = None
    words: list[_Word] = []
    languages: list[str] = []


class _Channel(BaseModel):
    alternatives: list[_Alternative]


class _Results(BaseModel):
    channel: _Channel
    channel_index: list[int] = [0]
    start: float = 0.0
    duration: float = 0.0
    is_final: bool = False
    speech_final: bool = False


def _speaker(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


class DeepgramNormalizer:
    """Maps Deepgram messages by ``type``.

    Final ``Results`` segments are accumulated per channel and emitted as one
    ``utterance`` when Deepgram marks ``speech_final`` or sends
    ``UtteranceEnd``.
    """

    def __init__(self) -> None:
        self._segments: dict[int, list[Transcript]] = {}

    def normalize(self, raw: WireFrame) -> list[StreamEvent]:
        return normalize_guarded(NAME, raw, lambda msg: self._dispatch(msg, raw))

    def _dispatch(self, msg: dict, raw: WireFrame) -> Optional[list[StreamEvent]]:
        if "err_code" in msg or "err_msg" in msg:
            return [
                provider_error(
                    NAME,
                    str(msg.get("err_msg") or msg.get("err_code")),
                    details={"code": msg.get("err_code"), "request_id": msg.get("request_id")},
                    raw=msg,
                )
            ]
        kind = msg.get("type")
        if kind == "Results":
            return self._results(_Results.model_validate(msg), msg)
        if kind == "SpeechStarted":
            return [
                StreamEvent.of(
                    NAME,
                    SpeechStart(timestamp=as_seconds(msg.get("timestamp")), channel=_first(msg.get("channel"))),
                    raw=msg,
                )
            ]
        if kind == "UtteranceEnd":
            channel = _first(msg.get("channel"))
            events = [
                StreamEvent.of(
                    NAME,
                    SpeechEnd(timestamp=as_seconds(msg.get("last_word_end")), channel=channel),
                    raw=msg,
                )
            ]
            events.extend(self._flush(channel or 0, msg))
            return events
        if kind == "Metadata":
            return [StreamEvent.of(NAME, Metadata(kind="Metadata", data=msg), raw=msg)]
        if kind == "Error":
            return [
                provider_error(
                    NAME,
                    str(msg.get("description") or msg.get("message") or "Deepgram error"),
                    details=msg,
                    raw=msg,
                )
            ]
        return None

    def _results(self, results: _Results, msg: dict) -> list[StreamEvent]:
        if not results.channel.alternatives:
            return []
        best = results.channel.alternatives[0]
        channel = results.channel_index[0] if results.channel_index else 0
        words = tuple(
            Word(
                text=w.punctuated_word or w.word,
                start=w.start,
                end=w.end,
                confidence=clamp_confidence(w.confidence),
                speaker=_speaker(w.speaker),
            )
            for w in best.words
        )
        transcript = Transcript(
            text=best.transcript,
            is_final=results.is_final,
            confidence=clamp_confidence(best.confidence),
            words=words,
            speaker=words[0].speaker if words else None,
            language=best.languages[0] if best.languages else None,
            channel=channel,
            start=results.start,
            end=results.start + results.duration,
        )
        events = [StreamEvent.of(NAME, transcript, raw=msg)]
        if results.is_final and transcript.text:
            self._segments.setdefault(channel, []).append(transcript)
        if results.speech_final:
            events.extend(self._flush(channel, msg))
        return events

    def _flush(self, channel: int, msg: dict) -> list[StreamEvent]:
        segments = self._segments.pop(channel, [])
        if not segments:
            return []
        confidences = [s.confidence for s in segments if s.confidence is not None]
        words = tuple(w for s in segments for w in s.words)
        utterance = Utterance(
            text=" ".join(s.text for s in segments),
            start=segments[0].start or 0.0,
            end=segments[-1].end or 0.0,
            confidence=sum(confidences) / len(confidences) if confidences else None,
            speaker=segments[0].speaker,
            words=words,
            language=segments[0].language,
            channel=channel,
        )
        return [StreamEvent.of(NAME, utterance, raw=msg)]


def _first(value: object) -> Optional[int]:
    if isinstance(value, list) and value and isinstance(value[0], int):
        return value[0]
    return None


WIRE = BackendWire(
    name=NAME,
    capabilities=Capabilities(
        streaming=True,
        diarization=True,
        language_detection=True,
        sentiment_analysis=True,
        entity_detection=True,
        summarization=True,
    ),
    credential="deepgram_api_key",
    encodings=ENCODINGS,
    build_target=build_target,
    codec=BinaryFrameCodec(end_of_stream),
    normalizer_factory=lambda config: DeepgramNormalizer(),
    endpoint_message={"type": "Finalize"},
    requires_encoding=False,
)
