"""In-memory memory store for tests and single-process runs."""

from __future__ import annotations

import threading

from promotion_pipeline.models import Memory


class InMemoryMemoryStore:
    """Keeps copies of saved memories so callers cannot mutate stored state."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._memories: dict[str, Memory] = {}

    def migrate(self) -> None:
        return None

    def save_memory(self, memory: Memory) -> None:
        with self._lock:
            self._memories[memory.memory_id] = memory.model_copy(deep=True)

    def load_memory(self, memory_id: str) -> Memory | None:
        with self._lock:
            memory = self._memories.get(memory_id)
        return memory.model_copy(deep=True) if memory is not None else None

    def list_memories(self, *, agent_id: str | None = None, limit: int = 100) -> list[Memory]:
        with self._lock:
            memories = list(self._memories.values())
        if agent_id is not None:
            memories = [memory for memory in memories if memory.agent_id == agent_id]
        memories.sort(key=lambda memory: memory.updated_at, reverse=True)
        return [memory.model_copy(deep=True) for memory in memories[:limit]]
