"""Memory storage backends."""

from promotion_pipeline.storage.base import MemoryStore
from promotion_pipeline.storage.memory import InMemoryMemoryStore
from promotion_pipeline.storage.postgres import PostgresMemoryStore

__all__ = [
    "InMemoryMemoryStore",
    "MemoryStore",
    "PostgresMemoryStore",
]
