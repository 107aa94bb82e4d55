"""Tests for the backend registry."""

import pytest

from speech_bridge.adapters import deepgram
from speech_bridge.adapters.base import Capabilities
from speech_bridge.errors import ErrorCode, UnknownBackendError
from speech_bridge.registry import BATCH_ONLY, BackendEntry, BackendRegistry, build_default_registry

STREAMING = ["deepgram", "assemblyai", "gladia", "soniox", "speechmatics", "openai-realtime"]


class TestDefaultRegistry:
    def test_streaming_backends_in_registration_order(self):
        assert build_default_registry().streaming_backends() == STREAMING

    def test_batch_only_backends_are_known_but_not_streaming(self):
        registry = build_default_registry()
        for name in BATCH_ONLY:
            assert name in registry
            assert not registry.get(name).streaming
            assert not registry.capabilities(name).streaming

    def test_capabilities(self):
        registry = build_default_registry()
        assert registry.capabilities("gladia").translation
        assert registry.capabilities("assemblyai").mid_session_update
        assert not registry.capabilities("deepgram").mid_session_update

    def test_unknown_backend(self):
        with pytest.raises(UnknownBackendError) as err:
            build_default_registry().get("whisper-live")
        assert err.value.code == ErrorCode.UNKNOWN_BACKEND
        assert "deepgram" in err.value.details["registered"]

    def test_registries_are_independent(self):
        first, second = build_default_registry(), build_default_registry()
        first.register(BackendEntry("custom-batch", Capabilities()))
        assert "custom-batch" in first
        assert "custom-batch" not in second
        assert len(second) == len(STREAMING) + len(BATCH_ONLY)


class TestRegistration:
    def test_duplicate_name_rejected(self):
        registry = BackendRegistry()
        registry.register_wire(deepgram.WIRE)
        with pytest.raises(ValueError):
            registry.register_wire(deepgram.WIRE)

    def test_streaming_entry_needs_wire(self):
        with pytest.raises(ValueError):
            BackendRegistry().register(BackendEntry("x", Capabilities(streaming=True)))

    def test_iteration(self):
        registry = BackendRegistry()
        registry.register_wire(deepgram.WIRE)
        assert [entry.name for entry in registry] == ["deepgram"]
