"""Interfaces for collaborators that live outside the promotion pipeline."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from promotion_pipeline.models import ConclusionRecord, ProofReceipt, RewardEvent, TrustedSource


class ConclusionAgent(Protocol):
    """Agent that owns a task and answers checkpoint requests."""

    def request_conclusion(self, agent_id: str, task_id: str, stage: int) -> ConclusionRecord: ...


class LedgerProofSource(Protocol):
    """Ledger-backed lookup of realized strategy outcomes."""

    def query_proofs(self, strategy_description: str) -> list[ProofReceipt]: ...


class FactChecker(Protocol):
    """External fact-check/search capability."""

    def corroborates(self, claim: str, source: TrustedSource) -> bool: ...


class RewardSink(Protocol):
    """Learning component that consumes rewards (policy/value updates)."""

    def apply_reward(self, agent_id: str, event: RewardEvent) -> None: ...


@runtime_checkable
class BufferedConclusionAgent(ConclusionAgent, Protocol):
    """Agent that holds submissions until a checkpoint asks for them."""

    def discard(self, task_id: str) -> int: ...
