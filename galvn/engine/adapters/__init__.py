"""Adapter interfaces and default implementations for pluggable session backends.

- KeyValueStore: durable JSON-string storage (cache, saves, records)
- GenerationBackend / VoiceBackend: story and speech generation boundary
- IAudio: voice clip playback
"""
from __future__ import annotations

from .storage import KeyValueStore, MemoryStore, FileKeyValueStore  # noqa: F401
from .generation import (  # noqa: F401
    GenerationBackend, VoiceBackend, NullVoiceBackend, StaticGenerationBackend, as_batch,
)
from .audio import IAudio, NullAudio, PygameAudio  # noqa: F401
