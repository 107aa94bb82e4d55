"""Tests for the WebSocket session adapter against scripted connections."""

import asyncio
import json

import pytest

from speech_bridge.adapters import assemblyai, deepgram, openai_realtime, speechmatics
from speech_bridge.adapters.websocket import WebSocketSessionAdapter
from speech_bridge.audio import AudioChunk
from speech_bridge.errors import (
    AudioSendError,
    CapabilityError,
    ErrorCode,
    HandshakeError,
    HandshakeTimeout,
    TransportError,
)
from speech_bridge.events import StreamEventType
from speech_bridge.schemas import AudioEncoding, StreamingConfiguration

from conftest import FakeConnector, make_settings

PCM16 = StreamingConfiguration(encoding=AudioEncoding.LINEAR16, sample_rate=16000, channels=1)


def _adapter(wire, connector, config=PCM16, **settings):
    return WebSocketSessionAdapter(wire, config, make_settings(**settings), connect=connector)


async def _drain(adapter) -> list:
    batches = []
    async for events in adapter.events():
        batches.extend(events)
    return batches


class TestHandshake:
    async def test_connect_options_come_from_settings(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector, write_limit_bytes=4096)
        await adapter.open()
        options = connector.last.options
        assert options["write_limit"] == 4096
        assert options["open_timeout"] == 1.0
        assert connector.last.headers == {"Authorization": "Token dg-key"}

    async def test_config_message_then_ack(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.push({"message": "RecognitionStarted", "id": "r1"})
        adapter = _adapter(speechmatics.WIRE, connector)
        await adapter.open()
        assert connector.last.sent_json()[0]["message"] == "StartRecognition"
        events = adapter._pending
        assert events[0].payload.kind == "RecognitionStarted"

    async def test_messages_before_ack_are_kept(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.push(
            {"message": "Info", "type": "quality"},
            {"message": "RecognitionStarted"},
        )
        adapter = _adapter(speechmatics.WIRE, connector)
        await adapter.open()
        connector.last.finish()
        events = await _drain(adapter)
        assert [e.payload.kind for e in events] == ["Info", "RecognitionStarted"]

    async def test_error_before_ack_fails_handshake(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.push({"error": "Invalid API key"})
        adapter = _adapter(assemblyai.WIRE, connector)
        with pytest.raises(HandshakeError) as err:
            await adapter.open()
        assert err.value.message == "Invalid API key"

    async def test_close_before_ack_fails_handshake(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.finish(4001, "Not Authorized")
        adapter = _adapter(assemblyai.WIRE, connector)
        with pytest.raises(HandshakeError) as err:
            await adapter.open()
        assert err.value.details == {"close_code": 4001, "reason": "Not Authorized"}

    async def test_connect_failure(self, connector: FakeConnector):
        connector.error = OSError("connection refused")
        with pytest.raises(HandshakeError):
            await _adapter(deepgram.WIRE, connector).open()

    async def test_connect_timeout(self, connector: FakeConnector):
        connector.error = asyncio.TimeoutError()
        with pytest.raises(HandshakeTimeout):
            await _adapter(deepgram.WIRE, connector).open()


class TestOutbound:
    async def test_audio_before_open_rejected(self, connector: FakeConnector):
        with pytest.raises(AudioSendError):
            await _adapter(deepgram.WIRE, connector).send_audio(AudioChunk(b"x"))

    async def test_concurrent_sends_keep_call_order(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector)
        await adapter.open()
        chunks = [bytes([i]) * 10 for i in range(20)]
        await asyncio.gather(*(adapter.send_audio(AudioChunk(c)) for c in chunks))
        assert connector.last.sent_binary() == chunks
        assert adapter.frames_sent == 20
        assert adapter.bytes_sent == 200

    async def test_last_chunk_ends_stream_once(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector)
        await adapter.open()
        await adapter.send_audio(AudioChunk(b"ab", is_last=True))
        assert connector.last.sent[-1] == json.dumps({"type": "CloseStream"}, separators=(",", ":"))
        with pytest.raises(AudioSendError):
            await adapter.send_audio(AudioChunk(b"cd"))
        await adapter.close()
        assert connector.last.sent_json().count({"type": "CloseStream"}) == 1

    async def test_sequence_number_counts_frames(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.push({"message": "RecognitionStarted"})
        adapter = _adapter(speechmatics.WIRE, connector)
        await adapter.open()
        await adapter.send_audio(AudioChunk(b"\x00" * 320))
        await adapter.send_audio(AudioChunk(b"\x00" * 320, is_last=True))
        assert connector.last.sent_json()[-1] == {"message": "EndOfStream", "last_seq_no": 2}

    async def test_rebuffered_frames(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.push({"type": "Begin", "id": "b1"})
        adapter = _adapter(assemblyai.WIRE, connector)
        await adapter.open()
        await adapter.send_audio(AudioChunk(b"\x00" * 800))
        assert connector.last.sent_binary() == []
        await adapter.send_audio(AudioChunk(b"\x00" * 900))
        await adapter.send_audio(AudioChunk(b"\x00" * 100, is_last=True))
        assert [len(f) for f in connector.last.sent_binary()] == [1700, 100]
        assert connector.last.sent_json()[-1] == {"type": "Terminate"}

    async def test_json_audio_frames(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.push({"type": "transcription_session.updated"})
        config = StreamingConfiguration(encoding=AudioEncoding.LINEAR16, sample_rate=24000, channels=1)
        adapter = _adapter(openai_realtime.WIRE, connector, config=config)
        await adapter.open()
        await adapter.send_audio(AudioChunk(b"\x01\x02", is_last=True))
        kinds = [m["type"] for m in connector.last.sent_json()]
        assert kinds == [
            "transcription_session.update",
            "input_audio_buffer.append",
            "input_audio_buffer.commit",
        ]

    async def test_write_failure_is_transport_error(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector)
        await adapter.open()
        connector.last.fail_sends = True
        with pytest.raises(TransportError) as err:
            await adapter.send_audio(AudioChunk(b"x"))
        assert err.value.code == ErrorCode.SEND_ERROR

    async def test_controls(self, connector: FakeConnector):
        connector.on_connect = lambda conn: conn.push({"type": "Begin", "id": "b1"})
        adapter = _adapter(assemblyai.WIRE, connector)
        await adapter.open()
        await adapter.update_configuration({"max_turn_silence": 1500})
        await adapter.force_endpoint()
        assert connector.last.sent_json()[-2:] == [
            {"type": "UpdateConfiguration", "max_turn_silence": 1500},
            {"type": "ForceEndpoint"},
        ]

    async def test_unsupported_update(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector)
        await adapter.open()
        with pytest.raises(CapabilityError):
            await adapter.update_configuration({"model": "nova-3"})


class TestInbound:
    async def test_clean_close_ends_iteration(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector)
        await adapter.open()
        connector.last.push({"type": "Metadata", "request_id": "r"})
        connector.last.finish(1000, "bye")
        events = await _drain(adapter)
        assert [e.type for e in events] == [StreamEventType.METADATA]
        assert (adapter.close_code, adapter.close_reason) == (1000, "bye")

    async def test_abnormal_close_raises(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector)
        await adapter.open()
        connector.last.drop()
        with pytest.raises(TransportError):
            await _drain(adapter)
        assert adapter.close_code == 1006

    async def test_close_sends_owed_end_of_stream(self, connector: FakeConnector):
        adapter = _adapter(deepgram.WIRE, connector)
        await adapter.open()
        await adapter.close()
        await adapter.close()
        assert connector.last.sent_json() == [{"type": "CloseStream"}]
        assert adapter.close_code == 1000
