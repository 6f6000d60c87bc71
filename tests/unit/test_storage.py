from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from promotion_pipeline.models import ConclusionRecord, Memory, SourceValidation, TrustedSource
from promotion_pipeline.storage.memory import InMemoryMemoryStore
from promotion_pipeline.storage.postgres import PostgresMemoryStore


def _memory(memory_id: str, agent_id: str = "agent-1", minutes: int = 0) -> Memory:
    stamp = datetime(2026, 4, 1, tzinfo=UTC) + timedelta(minutes=minutes)
    return Memory(
        memory_id=memory_id,
        agent_id=agent_id,
        task_id=f"task-{memory_id}",
        conclusions=[ConclusionRecord(task_id=f"task-{memory_id}", stage=1, confidence=0.5)],
        source_validation=SourceValidation(
            claim="claim",
            sources=[TrustedSource(name="docs", trust_weight=0.9)],
        ),
        created_at=stamp,
        updated_at=stamp,
    )


def test_in_memory_store_round_trip_returns_copies() -> None:
    store = InMemoryMemoryStore()
    memory = _memory("m1")
    store.save_memory(memory)

    loaded = store.load_memory("m1")
    assert loaded == memory

    loaded.conclusions.clear()
    assert len(store.load_memory("m1").conclusions) == 1


def test_in_memory_store_missing_memory_is_none() -> None:
    assert InMemoryMemoryStore().load_memory("missing") is None


def test_in_memory_store_upserts_and_lists_newest_first() -> None:
    store = InMemoryMemoryStore()
    store.save_memory(_memory("m1", minutes=1))
    store.save_memory(_memory("m2", agent_id="agent-2", minutes=2))
    store.save_memory(_memory("m3", minutes=3))
    store.save_memory(_memory("m1", minutes=4).model_copy(update={"promotion_level": "valuable"}))

    assert [memory.memory_id for memory in store.list_memories()] == ["m1", "m3", "m2"]
    newest = store.list_memories(agent_id="agent-1", limit=1)
    assert [memory.memory_id for memory in newest] == ["m1"]
    assert store.load_memory("m1").promotion_level == "valuable"


def test_postgres_store_requires_database_url() -> None:
    with pytest.raises(ValueError):
        PostgresMemoryStore("")


def test_postgres_row_payload_is_parsed() -> None:
    memory = _memory("m1")
    row = {"payload_json": memory.model_dump_json()}
    assert PostgresMemoryStore._row_to_memory(row) == memory
