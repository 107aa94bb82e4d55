"""Gladia live (v2) wire contract and normalizer.

Gladia is configured over HTTP: ``POST /v2/live`` with the full session
configuration returns a one-time WebSocket URL.  Audio is then streamed as
binary frames and ``stop_recording`` ends the stream.  Gladia reports times
in seconds already.
"""

from __future__ import annotations

from typing import Any, Optional

import aiohttp
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
from speech_bridge.errors import ConfigurationError, ErrorCode, HandshakeError
from speech_bridge.events import (
    Chapter,
    Chapterization,
    Entity,
    Metadata,
    Sentiment,
    SpeechEnd,
    SpeechStart,
    StreamEvent,
    Summarization,
    Transcript,
    Translation,
    Utterance,
    Word,
    as_seconds,
    clamp_confidence,
)
from speech_bridge.logging import get_logger
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

logger = get_logger("adapters.gladia")

NAME = "gladia"

ENCODINGS = {
    AudioEncoding.LINEAR16: "wav/pcm",
    AudioEncoding.MULAW: "wav/ulaw",
    AudioEncoding.ALAW: "wav/alaw",
}

SAMPLE_RATES = (8000, 16000, 32000, 44100, 48000)
BIT_DEPTHS = (8, 16, 24, 32)

LIFECYCLE_MESSAGES = frozenset(
    {"start_session", "start_recording", "end_recording", "end_session", "metadata"}
)


def validate(config: StreamingConfiguration) -> None:
    if config.sample_rate is not None and config.sample_rate not in SAMPLE_RATES:
        raise ConfigurationError(
            f"Gladia does not support sample rate {config.sample_rate}.",
            details={"supported": list(SAMPLE_RATES)},
        )
    if config.bit_depth is not None and config.bit_depth not in BIT_DEPTHS:
        raise ConfigurationError(
            f"Gladia does not support bit depth {config.bit_depth}.",
            details={"supported": list(BIT_DEPTHS)},
        )


def streaming_request(config: StreamingConfiguration) -> dict[str, Any]:
    """Body of the ``POST /v2/live`` session-initiation call."""
    body: dict[str, Any] = {}
    if config.encoding is not None:
        body["encoding"] = ENCODINGS[config.encoding]
        width = config.encoding.sample_width
        body["bit_depth"] = config.bit_depth or (width * 8 if width else 16)
    if config.sample_rate:
        body["sample_rate"] = config.sample_rate
    if config.channels:
        body["channels"] = config.channels
    if config.model:
        body["model"] = config.model
    if config.endpointing_ms is not None:
        body["endpointing"] = config.endpointing_ms / 1000.0
    if config.language or config.language_detection:
        language_config: dict[str, Any] = {"code_switching": config.language_detection}
        if config.language:
            language_config["languages"] = [config.language]
        body["language_config"] = language_config

    realtime: dict[str, Any] = {}
    if config.custom_vocabulary:
        realtime["custom_vocabulary"] = True
        realtime["custom_vocabulary_config"] = {"vocabulary": list(config.custom_vocabulary)}
    if config.translation_language:
        realtime["translation"] = True
        realtime["translation_config"] = {"target_languages": [config.translation_language]}
    if config.sentiment_analysis:
        realtime["sentiment_analysis"] = True
    if config.entity_detection:
        realtime["named_entity_recognition"] = True
    if realtime:
        body["realtime_processing"] = realtime
    if config.summarization:
        body["post_processing"] = {"summarization": True}
    body["messages_config"] = {
        "receive_partial_transcripts": config.interim_results,
        "receive_final_transcripts": True,
        "receive_speech_events": True,
        "receive_realtime_processing_events": True,
        "receive_post_processing_events": True,
        "receive_lifecycle_events": True,
    }
    body.update(config.options)
    return body


async def build_target(
    config: StreamingConfiguration,
    settings: Settings,
    http_session_factory: HttpSessionFactory,
) -> ConnectionTarget:
    """Initiate the live session over HTTP and return the WebSocket URL it yields."""
    key = WIRE.api_key(settings)
    url = f"{settings.gladia_base_url.rstrip('/')}/v2/live"
    params = {"region": settings.gladia_region} if settings.gladia_region else None
    try:
        async with http_session_factory(
            timeout=aiohttp.ClientTimeout(total=settings.http_timeout_s)
        ) as http:
            async with http.post(
                url,
                json=streaming_request(config),
                headers={"X-Gladia-Key": key},
                params=params,
            ) as resp:
                if resp.status >= 400:
                    error_text = await resp.text()
                    raise HandshakeError(
                        f"Gladia session initiation failed: HTTP {resp.status}",
                        details={"status": resp.status, "body": error_text},
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise HandshakeError(
                        "Gladia session initiation returned a non-JSON body",
                        details={"status": resp.status},
                    ) from exc
    except aiohttp.ClientError as exc:
        raise HandshakeError(f"Gladia session initiation failed: {exc}") from exc

    if not isinstance(data, dict) or not data.get("url"):
        raise HandshakeError("Gladia session initiation returned no WebSocket URL", details=data)
    logger.info(
        "Gladia live session %s initiated", data.get("id"),
        extra={"backend": NAME, "event": "session_initiated"},
    )
    return ConnectionTarget(url=data["url"])


def end_of_stream(frames_sent: int) -> WireFrame:
    return control_message({"type": "stop_recording"})


# ── Inbound message schemas ──────────────────────────────


class _Word(BaseModel):
    word: str
    start: float
    end: float
    confidence: Optional[float] = None


class _Utterance(BaseModel):
    text: str = ""
    start: float = 0.0
    end: float = 0.0
    confidence: Optional[float] = None
    language: Optional[str] = None
    channel: Optional[int] = None
    speaker: Optional[int] = None
    words: list[_Word] = []


def _words(utterance: _Utterance) -> tuple[Word, ...]:
    speaker = None if utterance.speaker is None else str(utterance.speaker)
    return tuple(
        Word(
            text=w.word.strip(),
            start=w.start,
            end=w.end,
            confidence=clamp_confidence(w.confidence),
            speaker=speaker,
        )
        for w in utterance.words
    )


def _error_text(error: Any, fallback: str) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return fallback


class GladiaNormalizer:
    """Maps Gladia messages by ``type``.

    Real-time and post-processing messages carry either ``data`` or an
    ``error``; a sub-feature error is reported as a non-fatal
    ``TRANSCRIPTION_ERROR``.
    """

    def normalize(self, raw: WireFrame) -> list[StreamEvent]:
        return normalize_guarded(NAME, raw, self._dispatch)

    def _sub_feature_error(self, msg: dict, what: str) -> list[StreamEvent]:
        return [
            provider_error(
                NAME,
                f"{what} failed",
                details=msg["error"],
                fatal=False,
                code=ErrorCode.TRANSCRIPTION_ERROR,
                raw=msg,
            )
        ]

    def _dispatch(self, msg: dict) -> Optional[list[StreamEvent]]:
        kind = msg.get("type")
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is not None:
            return handler(self, msg)
        if kind in LIFECYCLE_MESSAGES:
            return [StreamEvent.of(NAME, Metadata(kind=kind, data=msg), raw=msg)]
        return None

    def _transcript(self, msg: dict) -> list[StreamEvent]:
        data = msg["data"]
        utterance = _Utterance.model_validate(data["utterance"])
        words = _words(utterance)
        transcript = Transcript(
            text=utterance.text.strip(),
            is_final=bool(data.get("is_final")),
            confidence=clamp_confidence(utterance.confidence),
            words=words,
            speaker=None if utterance.speaker is None else str(utterance.speaker),
            language=utterance.language,
            channel=utterance.channel,
            start=utterance.start,
            end=utterance.end,
        )
        return [StreamEvent.of(NAME, transcript, raw=msg)]

    def _utterance(self, msg: dict) -> list[StreamEvent]:
        utterance = _Utterance.model_validate(msg["data"]["utterance"])
        payload = Utterance(
            text=utterance.text.strip(),
            start=utterance.start,
            end=utterance.end,
            confidence=clamp_confidence(utterance.confidence),
            speaker=None if utterance.speaker is None else str(utterance.speaker),
            words=_words(utterance),
            language=utterance.language,
            channel=utterance.channel,
        )
        return [StreamEvent.of(NAME, payload, raw=msg)]

    def _post_transcript(self, msg: dict) -> list[StreamEvent]:
        data = msg.get("data") or {}
        text = data.get("full_transcript") or ""
        return [StreamEvent.of(NAME, Transcript(text=text, is_final=True), raw=msg)]

    def _post_final_transcript(self, msg: dict) -> list[StreamEvent]:
        data = msg.get("data") or {}
        text = (data.get("transcription") or {}).get("full_transcript") or ""
        return [StreamEvent.of(NAME, Transcript(text=text, is_final=True), raw=msg)]

    def _speech_start(self, msg: dict) -> list[StreamEvent]:
        data = msg["data"]
        boundary = SpeechStart(timestamp=as_seconds(data.get("time")), channel=data.get("channel"))
        return [StreamEvent.of(NAME, boundary, raw=msg)]

    def _speech_end(self, msg: dict) -> list[StreamEvent]:
        data = msg["data"]
        boundary = SpeechEnd(timestamp=as_seconds(data.get("time")), channel=data.get("channel"))
        return [StreamEvent.of(NAME, boundary, raw=msg)]

    def _translation(self, msg: dict) -> list[StreamEvent]:
        if msg.get("error"):
            return self._sub_feature_error(msg, "Translation")
        data = msg["data"]
        translation = Translation(
            text=data["translated_utterance"]["text"].strip(),
            target_language=data["target_language"],
            original=(data.get("utterance") or {}).get("text"),
            utterance_id=data.get("utterance_id"),
        )
        return [StreamEvent.of(NAME, translation, raw=msg)]

    def _sentiment(self, msg: dict) -> list[StreamEvent]:
        if msg.get("error"):
            return self._sub_feature_error(msg, "Sentiment analysis")
        data = msg["data"]
        return [
            StreamEvent.of(
                NAME,
                Sentiment(
                    sentiment=result["sentiment"],
                    utterance_id=data.get("utterance_id"),
                    text=result.get("text"),
                ),
                raw=msg,
            )
            for result in data["results"]
        ]

    def _entities(self, msg: dict) -> list[StreamEvent]:
        if msg.get("error"):
            return self._sub_feature_error(msg, "Named entity recognition")
        data = msg["data"]
        return [
            StreamEvent.of(
                NAME,
                Entity(
                    text=result["text"],
                    entity_type=result["entity_type"],
                    utterance_id=data.get("utterance_id"),
                    start=as_seconds(result.get("start")),
                    end=as_seconds(result.get("end")),
                ),
                raw=msg,
            )
            for result in data["results"]
        ]

    def _summarization(self, msg: dict) -> list[StreamEvent]:
        if msg.get("error"):
            payload = Summarization(summary="", error=_error_text(msg["error"], "Summarization failed"))
        else:
            payload = Summarization(summary=str(msg["data"]["results"]))
        return [StreamEvent.of(NAME, payload, raw=msg)]

    def _chapterization(self, msg: dict) -> list[StreamEvent]:
        if msg.get("error"):
            payload = Chapterization(error=_error_text(msg["error"], "Chapterization failed"))
        else:
            chapters = tuple(
                Chapter(
                    headline=ch.get("headline", ""),
                    summary=(
                        ch.get("summary")
                        or ch.get("abstractive_summary")
                        or ch.get("extractive_summary")
                        or ""
                    ),
                    start=float(ch["start"]),
                    end=float(ch["end"]),
                )
                for ch in msg["data"]["results"]
            )
            payload = Chapterization(chapters=chapters)
        return [StreamEvent.of(NAME, payload, raw=msg)]

    def _audio_chunk_ack(self, msg: dict) -> list[StreamEvent]:
        if msg.get("error"):
            return self._sub_feature_error(msg, "Audio chunk acknowledgement")
        data = msg.get("data") or {}
        ack = Metadata(
            kind="audio_chunk_ack",
            data={"byte_range": data.get("byte_range"), "time_range": data.get("time_range")},
        )
        return [StreamEvent.of(NAME, ack, raw=msg)]

    def _stop_recording_ack(self, msg: dict) -> list[StreamEvent]:
        if msg.get("error"):
            return self._sub_feature_error(msg, "Stop recording")
        return [StreamEvent.of(NAME, Metadata(kind="stop_recording_ack", data=msg), raw=msg)]

    def _error(self, msg: dict) -> list[StreamEvent]:
        error = msg.get("error") or {}
        return [
            provider_error(
                NAME,
                _error_text(error, "Unknown streaming error"),
                details=msg,
                fatal=False,
                raw=msg,
            )
        ]

    _handlers = {
        "transcript": _transcript,
        "utterance": _utterance,
        "post_transcript": _post_transcript,
        "post_final_transcript": _post_final_transcript,
        "speech_start": _speech_start,
        "speech_end": _speech_end,
        "translation": _translation,
        "sentiment_analysis": _sentiment,
        "named_entity_recognition": _entities,
        "post_summarization": _summarization,
        "post_chapterization": _chapterization,
        "audio_chunk_ack": _audio_chunk_ack,
        "stop_recording_ack": _stop_recording_ack,
        "error": _error,
    }


WIRE = BackendWire(
    name=NAME,
    capabilities=Capabilities(
        streaming=True,
        diarization=True,
        language_detection=True,
        translation=True,
        sentiment_analysis=True,
        entity_detection=True,
        summarization=True,
    ),
    credential="gladia_api_key",
    encodings=ENCODINGS,
    build_target=build_target,
    codec=BinaryFrameCodec(end_of_stream),
    normalizer_factory=lambda config: GladiaNormalizer(),
    validate=validate,
)
