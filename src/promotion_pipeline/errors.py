"""Exceptions raised across the promotion pipeline."""

from __future__ import annotations


class UnknownTaskError(KeyError):
    """Raised when an operation references a task the orchestrator never started."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task {self.task_id} does not exist"


class UnknownMemoryError(KeyError):
    """Raised when a memory id cannot be loaded from the store."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(memory_id)
        self.memory_id = memory_id

    def __str__(self) -> str:
        return f"Memory {self.memory_id} does not exist"


class TransientLedgerError(RuntimeError):
    """Ledger I/O failure that is worth retrying."""


class FactCheckError(RuntimeError):
    """Fact-check capability failed or is unavailable."""
