"""Soniox real-time wire contract and normalizer.

The first frame on the socket is a JSON configuration (including the API
key); audio follows as binary frames and an empty binary frame ends the
stream.  Responses have no type tag: they carry either an error pair or a
``tokens`` list, and ``finished: true`` marks the last one.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, field_validator

from speech_bridge.adapters.base import (
    BackendWire,
    Capabilities,
    ConnectionTarget,
    HttpSessionFactory,
    normalize_guarded,
    provider_error,
)
from speech_bridge.codec import BinaryFrameCodec, WireFrame
from speech_bridge.config import Settings
from speech_bridge.events import (
    Metadata,
    StreamEvent,
    Transcript,
    Translation,
    Utterance,
    Word,
    clamp_confidence,
    ms_to_seconds,
)
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

NAME = "soniox"

DEFAULT_MODEL = "stt-rt-preview"
ENDPOINT_TOKEN = "<end>"
# translation_status of tokens carrying translated text; spoken tokens are "original" or "none"
TRANSLATED = "translation"

ENCODINGS = {
    AudioEncoding.LINEAR16: "pcm_s16le",
    AudioEncoding.PCM_F32LE: "pcm_f32le",
    AudioEncoding.MULAW: "mulaw",
    AudioEncoding.ALAW: "alaw",
    AudioEncoding.FLAC: "flac",
    AudioEncoding.OPUS: "ogg",
}


async def build_target(
    config: StreamingConfiguration,
    settings: Settings,
    http_session_factory: HttpSessionFactory,
) -> ConnectionTarget:
    WIRE.api_key(settings)
    return ConnectionTarget(url=settings.soniox_ws_url)


def config_message(config: StreamingConfiguration, settings: Settings) -> dict:
    message: dict[str, Any] = {
        "api_key": WIRE.api_key(settings),
        "model": config.model or DEFAULT_MODEL,
        "audio_format": ENCODINGS[config.encoding] if config.encoding else "auto",
        "enable_endpoint_detection": True,
    }
    if config.encoding is not None and config.encoding.is_raw:
        message["sample_rate"] = config.sample_rate
        message["num_channels"] = config.channels
    if config.language:
        message["language_hints"] = [config.language]
    if config.diarization:
        message["enable_speaker_diarization"] = True
    if config.language_detection:
        message["enable_language_identification"] = True
    if config.custom_vocabulary:
        message["context"] = {"terms": list(config.custom_vocabulary)}
    if config.translation_language:
        message["translation"] = {"type": "one_way", "target_language": config.translation_language}
    message.update(config.options)
    return message


def end_of_stream(frames_sent: int) -> WireFrame:
    return b""


class _Token(BaseModel):
    text: str
    start_ms: Optional[float] = None
    end_ms: Optional[float] = None
    confidence: Optional[float] = None
    is_final: bool = False
    speaker: Optional[str] = None
    language: Optional[str] = None
    source_language: Optional[str] = None
    translation_status: Optional[str] = None

    @field_validator("speaker", mode="before")
    @classmethod
    def _speaker_label(cls, v: Any) -> Any:
        return None if v is None else str(v)


def _word(token: _Token) -> Word:
    return Word(
        text=token.text,
        start=ms_to_seconds(token.start_ms) or 0.0,
        end=ms_to_seconds(token.end_ms) or 0.0,
        confidence=clamp_confidence(token.confidence),
        speaker=token.speaker,
    )


class SonioxNormalizer:
    """Maps Soniox responses by field combination.

    Final spoken tokens accumulate into the current utterance, which is
    emitted on the ``<end>`` endpoint token, when the speaker changes, or when
    the stream finishes.  Translated tokens never enter transcripts; each
    response carrying them yields one ``translation`` event.
    """

    def __init__(self, target_language: Optional[str] = None) -> None:
        self._target_language = target_language
        self._final: list[_Token] = []

    def normalize(self, raw: WireFrame) -> list[StreamEvent]:
        return normalize_guarded(NAME, raw, self._dispatch)

    def _dispatch(self, msg: dict) -> Optional[list[StreamEvent]]:
        if "error_code" in msg or "error_message" in msg:
            return [
                provider_error(
                    NAME,
                    str(msg.get("error_message") or "Soniox error"),
                    details={"error_code": msg.get("error_code")},
                    raw=msg,
                )
            ]
        if "tokens" not in msg and "finished" not in msg:
            return None
        tokens = [_Token.model_validate(t) for t in msg.get("tokens") or []]
        spoken = [t for t in tokens if t.translation_status != TRANSLATED]
        translated = [
            t for t in tokens if t.translation_status == TRANSLATED and t.text != ENDPOINT_TOKEN
        ]
        events = self._tokens(spoken, msg) if spoken else []
        if translated:
            events.extend(self._translation(translated, spoken, msg))
        if msg.get("finished"):
            events.extend(self._flush(msg))
            data = {
                key: msg[key]
                for key in ("final_audio_proc_ms", "total_audio_proc_ms")
                if key in msg
            }
            events.append(StreamEvent.of(NAME, Metadata(kind="finished", data=data), raw=msg))
        return events

    def _tokens(self, tokens: list[_Token], msg: dict) -> list[StreamEvent]:
        spoken = [t for t in tokens if t.text != ENDPOINT_TOKEN]
        events: list[StreamEvent] = []
        if spoken:
            words = tuple(_word(t) for t in spoken)
            confidences = [w.confidence for w in words if w.confidence is not None]
            transcript = Transcript(
                text="".join(t.text for t in spoken).strip(),
                is_final=all(t.is_final for t in spoken),
                confidence=sum(confidences) / len(confidences) if confidences else None,
                words=words,
                speaker=spoken[0].speaker,
                language=spoken[0].language,
                start=words[0].start,
                end=words[-1].end,
            )
            events.append(StreamEvent.of(NAME, transcript, raw=msg))

        for token in tokens:
            if not token.is_final:
                continue
            if token.text == ENDPOINT_TOKEN:
                events.extend(self._flush(msg))
                continue
            if self._final and token.speaker != self._final[-1].speaker:
                events.extend(self._flush(msg))
            self._final.append(token)
        return events

    def _translation(
        self, translated: list[_Token], spoken: list[_Token], msg: dict
    ) -> list[StreamEvent]:
        text = "".join(t.text for t in translated).strip()
        if not text:
            return []
        original = "".join(t.text for t in spoken if t.text != ENDPOINT_TOKEN).strip()
        translation = Translation(
            text=text,
            target_language=translated[0].language or self._target_language or "",
            original=original or None,
            is_final=all(t.is_final for t in translated),
        )
        return [StreamEvent.of(NAME, translation, raw=msg)]

    def _flush(self, msg: dict) -> list[StreamEvent]:
        tokens, self._final = self._final, []
        text = "".join(t.text for t in tokens).strip()
        if not text:
            return []
        words = tuple(_word(t) for t in tokens)
        confidences = [w.confidence for w in words if w.confidence is not None]
        utterance = Utterance(
            text=text,
            start=words[0].start,
            end=words[-1].end,
            confidence=sum(confidences) / len(confidences) if confidences else None,
            speaker=tokens[0].speaker,
            words=words,
            language=tokens[0].language,
        )
        return [StreamEvent.of(NAME, utterance, raw=msg)]


WIRE = BackendWire(
    name=NAME,
    capabilities=Capabilities(
        streaming=True,
        diarization=True,
        language_detection=True,
        translation=True,
    ),
    credential="soniox_api_key",
    encodings=ENCODINGS,
    build_target=build_target,
    codec=BinaryFrameCodec(end_of_stream),
    normalizer_factory=lambda config: SonioxNormalizer(config.translation_language),
    config_message=config_message,
    requires_encoding=False,
)
