"""Storage interface for promoted memories."""

from __future__ import annotations

from typing import Protocol

from promotion_pipeline.models import Memory


class MemoryStore(Protocol):
    def migrate(self) -> None: ...

    def save_memory(self, memory: Memory) -> None: ...

    def load_memory(self, memory_id: str) -> Memory | None: ...

    def list_memories(self, *, agent_id: str | None = None, limit: int = 100) -> list[Memory]: ...
