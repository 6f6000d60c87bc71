"""PostgreSQL-backed memory store with automatic table migration."""

from __future__ import annotations

import json
import threading
from typing import Any

from promotion_pipeline.models import Memory


class PostgresMemoryStore:
    """Persist promoted memories as JSONB documents keyed by memory id."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("PROMOTION_PIPELINE_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    memory_id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    promotion_level TEXT NOT NULL,
                    reward DOUBLE PRECISION NOT NULL DEFAULT 0,
                    economic_impact_usd_per_day DOUBLE PRECISION,
                    payload_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_agent_id
                ON memories(agent_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_updated_at
                ON memories(updated_at DESC)
                """)
            conn.commit()

    def save_memory(self, memory: Memory) -> None:
        payload = self._json_wrapper(memory.model_dump(mode="json"))
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO memories (
                    memory_id,
                    agent_id,
                    task_id,
                    promotion_level,
                    reward,
                    economic_impact_usd_per_day,
                    payload_json,
                    created_at,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (memory_id) DO UPDATE SET
                    promotion_level = EXCLUDED.promotion_level,
                    reward = EXCLUDED.reward,
                    economic_impact_usd_per_day = EXCLUDED.economic_impact_usd_per_day,
                    payload_json = EXCLUDED.payload_json,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    memory.memory_id,
                    memory.agent_id,
                    memory.task_id,
                    memory.promotion_level,
                    memory.reward,
                    memory.economic_impact_usd_per_day,
                    payload,
                    memory.created_at,
                    memory.updated_at,
                ),
            )
            conn.commit()

    def load_memory(self, memory_id: str) -> Memory | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM memories WHERE memory_id = %s",
                (memory_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_memory(row)

    def list_memories(self, *, agent_id: str | None = None, limit: int = 100) -> list[Memory]:
        query = "SELECT payload_json FROM memories"
        params: list[Any] = []
        if agent_id is not None:
            query += " WHERE agent_id = %s"
            params.append(agent_id)
        query += " ORDER BY updated_at DESC LIMIT %s"
        params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_memory(row) for row in rows]

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _row_to_memory(row: Any) -> Memory:
        raw = row["payload_json"]
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            raise TypeError(f"Unsupported memory payload: {type(raw)!r}")
        return Memory.model_validate(raw)
