"""Backend registry: name -> capability descriptor and (for streaming) wire contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

from speech_bridge.adapters import assemblyai, deepgram, gladia, openai_realtime, soniox, speechmatics
from speech_bridge.adapters.base import BackendWire, Capabilities
from speech_bridge.errors import UnknownBackendError

# Batch-only integrations: known to the registry so callers get a clear
# CapabilityError rather than an unknown-backend error.
BATCH_ONLY = {
    "azure-stt": Capabilities(diarization=True, language_detection=True),
    "openai-whisper": Capabilities(language_detection=True),
}


@dataclass(frozen=True)
class BackendEntry:
    name: str
    capabilities: Capabilities
    wire: Optional[BackendWire] = None

    @property
    def streaming(self) -> bool:
        return self.capabilities.streaming and self.wire is not None


class BackendRegistry:
    """Explicit, per-coordinator mapping of backend names to entries."""

    def __init__(self) -> None:
        self._entries: dict[str, BackendEntry] = {}

    def register(self, entry: BackendEntry) -> None:
        if entry.name in self._entries:
            raise ValueError(f"Backend '{entry.name}' is already registered")
        if entry.capabilities.streaming and entry.wire is None:
            raise ValueError(f"Streaming backend '{entry.name}' needs a wire contract")
        self._entries[entry.name] = entry

    def register_wire(self, wire: BackendWire) -> None:
        self.register(BackendEntry(name=wire.name, capabilities=wire.capabilities, wire=wire))

    def get(self, name: str) -> BackendEntry:
        try:
            return self._entries[name]
        except KeyError:
            raise UnknownBackendError(
                f"Backend '{name}' is not registered.",
                details={"registered": self.registered_backends()},
            ) from None

    def capabilities(self, name: str) -> Capabilities:
        return self.get(name).capabilities

    def registered_backends(self) -> list[str]:
        return list(self._entries)

    def streaming_backends(self) -> list[str]:
        return [name for name, entry in self._entries.items() if entry.streaming]

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[BackendEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


def build_default_registry() -> BackendRegistry:
    """Fresh registry with every built-in backend."""
    registry = BackendRegistry()
    for wire in (
        deepgram.WIRE,
        assemblyai.WIRE,
        gladia.WIRE,
        soniox.WIRE,
        speechmatics.WIRE,
        openai_realtime.WIRE,
    ):
        registry.register_wire(wire)
    for name, capabilities in BATCH_ONLY.items():
        registry.register(BackendEntry(name=name, capabilities=capabilities))
    return registry
