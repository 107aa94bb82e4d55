"""Tests for the Gladia live wire contract and normalizer."""

import json

import pytest

from speech_bridge.adapters import gladia
from speech_bridge.errors import ConfigurationError, ErrorCode, HandshakeError
from speech_bridge.events import StreamEventType
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

from conftest import FakeHttpSession, make_settings

PCM16 = StreamingConfiguration(encoding=AudioEncoding.LINEAR16, sample_rate=16000, channels=1)


def _utterance(text="Bonjour à tous", **extra):
    return {
        "text": text,
        "start": 0.5,
        "end": 1.7,
        "confidence": 0.88,
        "language": "fr",
        "channel": 0,
        "speaker": 1,
        "words": [{"word": " Bonjour", "start": 0.5, "end": 0.9, "confidence": 0.9}],
        **extra,
    }


class TestSessionInitiation:
    def test_request_body(self):
        config = PCM16.model_copy(
            update={
                "language": "fr",
                "translation_language": "en",
                "sentiment_analysis": True,
                "summarization": True,
                "endpointing_ms": 300,
            }
        )
        body = gladia.streaming_request(config)
        assert body["encoding"] == "wav/pcm"
        assert body["bit_depth"] == 16
        assert body["endpointing"] == 0.3
        assert body["language_config"] == {"code_switching": False, "languages": ["fr"]}
        assert body["realtime_processing"]["translation_config"] == {"target_languages": ["en"]}
        assert body["realtime_processing"]["sentiment_analysis"] is True
        assert body["post_processing"] == {"summarization": True}

    async def test_returns_websocket_url(self):
        http = FakeHttpSession()
        target = await gladia.build_target(PCM16, make_settings(gladia_region="eu-west"), http)
        assert target.url == "wss://api.gladia.io/v2/live?token=abc"
        url, kwargs = http.requests[0]
        assert url == "https://api.gladia.io/v2/live"
        assert kwargs["headers"] == {"X-Gladia-Key": "gl-key"}
        assert kwargs["params"] == {"region": "eu-west"}
        assert http.factory_kwargs["timeout"].total == 10.0

    async def test_http_error_is_handshake_error(self):
        http = FakeHttpSession(status=401, payload={"message": "bad key"})
        with pytest.raises(HandshakeError) as err:
            await gladia.build_target(PCM16, make_settings(), http)
        assert err.value.details["status"] == 401

    async def test_non_json_body_is_handshake_error(self):
        http = FakeHttpSession(status=200, body="<html>gateway</html>")
        with pytest.raises(HandshakeError) as err:
            await gladia.build_target(PCM16, make_settings(), http)
        assert err.value.details == {"status": 200}

    async def test_missing_url_is_handshake_error(self):
        http = FakeHttpSession(payload={"id": "x"})
        with pytest.raises(HandshakeError):
            await gladia.build_target(PCM16, make_settings(), http)

    def test_rejects_unsupported_sample_rate(self):
        config = PCM16.model_copy(update={"sample_rate": 22050})
        with pytest.raises(ConfigurationError):
            gladia.WIRE.check_configuration(config)


class TestNormalizer:
    @pytest.fixture
    def normalizer(self):
        return gladia.GladiaNormalizer()

    def test_final_transcript(self, normalizer):
        (event,) = normalizer.normalize(
            json.dumps({"type": "transcript", "data": {"is_final": True, "utterance": _utterance()}})
        )
        assert event.type is StreamEventType.TRANSCRIPT
        assert event.payload.is_final
        assert event.payload.speaker == "1"
        assert event.payload.words[0].text == "Bonjour"

    def test_utterance(self, normalizer):
        (event,) = normalizer.normalize(
            json.dumps({"type": "utterance", "data": {"utterance": _utterance()}})
        )
        assert event.type is StreamEventType.UTTERANCE
        assert event.payload.language == "fr"

    def test_translation(self, normalizer):
        (event,) = normalizer.normalize(
            json.dumps(
                {
                    "type": "translation",
                    "error": None,
                    "data": {
                        "utterance_id": "u1",
                        "utterance": _utterance(),
                        "target_language": "en",
                        "translated_utterance": _utterance("Hello everyone"),
                    },
                }
            )
        )
        assert event.type is StreamEventType.TRANSLATION
        assert event.payload.text == "Hello everyone"
        assert event.payload.original == "Bonjour à tous"

    def test_sentiment_fans_out(self, normalizer):
        events = normalizer.normalize(
            json.dumps(
                {
                    "type": "sentiment_analysis",
                    "data": {
                        "utterance_id": "u1",
                        "results": [
                            {"sentiment": "positive", "text": "great"},
                            {"sentiment": "neutral", "text": "ok"},
                        ],
                    },
                }
            )
        )
        assert [e.payload.sentiment for e in events] == ["positive", "neutral"]

    def test_entities(self, normalizer):
        (event,) = normalizer.normalize(
            json.dumps(
                {
                    "type": "named_entity_recognition",
                    "data": {
                        "utterance_id": "u2",
                        "results": [{"text": "Paris", "entity_type": "LOCATION", "start": 1, "end": 2}],
                    },
                }
            )
        )
        assert event.type is StreamEventType.ENTITY
        assert event.payload.entity_type == "LOCATION"

    def test_sub_feature_error_is_not_fatal(self, normalizer):
        (event,) = normalizer.normalize(
            json.dumps({"type": "translation", "error": {"message": "quota"}, "data": None})
        )
        assert event.payload.code == ErrorCode.TRANSCRIPTION_ERROR
        assert not event.is_fatal_error

    def test_summarization_error_stays_in_payload(self, normalizer):
        (event,) = normalizer.normalize(
            json.dumps({"type": "post_summarization", "error": {"message": "too short"}})
        )
        assert event.type is StreamEventType.SUMMARIZATION
        assert event.payload.error == "too short"

    def test_chapterization(self, normalizer):
        (event,) = normalizer.normalize(
            json.dumps(
                {
                    "type": "post_chapterization",
                    "data": {
                        "results": [
                            {"headline": "Intro", "abstractive_summary": "Hi", "start": 0, "end": 5}
                        ]
                    },
                }
            )
        )
        assert event.payload.chapters[0].summary == "Hi"

    def test_speech_boundaries(self, normalizer):
        start = normalizer.normalize(
            json.dumps({"type": "speech_start", "data": {"time": 1.25, "channel": 0}})
        )
        end = normalizer.normalize(json.dumps({"type": "speech_end", "data": {"time": 2.0}}))
        assert start[0].type is StreamEventType.SPEECH_START
        assert end[0].payload.timestamp == 2.0

    @pytest.mark.parametrize("kind", sorted(gladia.LIFECYCLE_MESSAGES))
    def test_lifecycle_messages(self, normalizer, kind):
        (event,) = normalizer.normalize(json.dumps({"type": kind, "session_id": "s"}))
        assert event.type is StreamEventType.METADATA
        assert event.payload.kind == kind

    def test_stream_error_is_not_fatal(self, normalizer):
        (event,) = normalizer.normalize(json.dumps({"type": "error", "error": {"message": "slow"}}))
        assert event.type is StreamEventType.ERROR
        assert not event.is_fatal_error
