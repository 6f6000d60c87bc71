"""Pydantic models shared by the scheduler, evidence engines, classifier, and storage."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

# Task lifecycle states driven by the orchestrator state machine.
TaskStatus = Literal["pending", "active", "validating", "concluded", "cancelled"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"concluded", "cancelled"})

PromotionLevel = Literal["standard", "valuable", "legendary"]
LEVEL_ORDER: dict[str, int] = {"standard": 0, "valuable": 1, "legendary": 2}

Stage = Literal[1, 2, 3]
STAGES: tuple[int, int, int] = (1, 2, 3)

PROOF_WEIGHT = 0.9
PROFIT_PROOF_BONUS = 2.0
VALIDATION_BONUS_FACTOR = 10.0


def utc_now() -> datetime:
    return datetime.now(UTC)


def max_level(left: PromotionLevel, right: PromotionLevel) -> PromotionLevel:
    return left if LEVEL_ORDER[left] >= LEVEL_ORDER[right] else right


class Task(BaseModel):
    """One agent task tracked through the promotion pipeline."""

    task_id: str
    agent_id: str
    task_type: str
    description: str
    expected_duration_ms: int = Field(ge=0)
    started_at: datetime
    status: TaskStatus = "pending"
    memory_id: str | None = None


class ConclusionRecord(BaseModel):
    """Conclusion captured at one checkpoint. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    stage: Stage
    text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    effort_weight: int = 0
    captured_at: datetime = Field(default_factory=utc_now)
    # Placeholder recorded when the agent did not answer in time.
    skipped: bool = False
    # Stage-3 payload: factual claim for source validation and
    # strategy descriptions for ledger verification.
    claim: str | None = None
    strategies: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _effort_weight_is_stage(cls, data: Any) -> Any:
        if isinstance(data, dict) and "stage" in data:
            return {**data, "effort_weight": data["stage"]}
        return data

    @classmethod
    def placeholder(cls, task_id: str, stage: int) -> ConclusionRecord:
        return cls(task_id=task_id, stage=stage, text="", confidence=0.0, skipped=True)

    def validation_claim(self) -> str | None:
        if self.skipped:
            return None
        claim = (self.claim or self.text).strip()
        return claim or None


class TrustedSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    trust_weight: float = Field(ge=0.0, le=1.0)
    source_type: str = "web_search"
    url: str | None = None


class SourceValidation(BaseModel):
    """Trust-weighted corroboration result for one claim."""

    claim: str
    sources: list[TrustedSource] = Field(default_factory=list)
    eligible_for_valuable: bool = False
    error: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def source_count(self) -> int:
        return len(self.sources)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def validation_score(self) -> float:
        return sum(source.trust_weight for source in self.sources)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reward_bonus(self) -> float:
        return self.validation_score * VALIDATION_BONUS_FACTOR


class ProofReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_hash: str = Field(min_length=1)
    profit_amount: float
    verified_at: datetime = Field(default_factory=utc_now)


class BlockchainProof(BaseModel):
    """Ledger receipts matching one strategy description."""

    strategy_id: str
    proofs: list[ProofReceipt] = Field(default_factory=list)
    eligible_for_legendary: bool = False
    error: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def proof_count(self) -> int:
        return len(self.proofs)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def profitable_proof_count(self) -> int:
        return sum(1 for proof in self.proofs if proof.profit_amount > 0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_profit_usd(self) -> float:
        return sum(proof.profit_amount for proof in self.proofs)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def proof_score(self) -> float:
        bonus = PROFIT_PROOF_BONUS if self.total_profit_usd > 0 else 0.0
        return self.proof_count * PROOF_WEIGHT + bonus

    @computed_field  # type: ignore[prop-decorator]
    @property
    def eligible_for_valuable(self) -> bool:
        return self.profitable_proof_count > 0


class Memory(BaseModel):
    """Unit of reward computation and long-term retention."""

    memory_id: str
    agent_id: str
    task_id: str
    conclusions: list[ConclusionRecord] = Field(default_factory=list)
    source_validation: SourceValidation | None = None
    blockchain_proofs: list[BlockchainProof] = Field(default_factory=list)
    promotion_level: PromotionLevel = "standard"
    economic_impact_usd_per_day: float | None = None
    # Cumulative reward already handed to learners for this memory.
    reward: float = Field(default=0.0, ge=0.0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def highest_stage_reached(self) -> int:
        reached = [record.stage for record in self.conclusions if not record.skipped]
        return max(reached, default=0)

    def best_confidence(self) -> float:
        return max((record.confidence for record in self.conclusions), default=0.0)


class RewardEvent(BaseModel):
    """Payload handed to reward-consuming learners."""

    model_config = ConfigDict(frozen=True)

    reward: float = Field(ge=0.0)
    level: PromotionLevel
    memory_id: str
    task_id: str
    stage: int = Field(ge=0, le=3)
    incremental: bool = False


class GoalContribution(BaseModel):
    memory_id: str
    agent_id: str
    daily_profit_usd: float
    weekly_contribution: float
    goal_progress: float


class GoalSnapshot(BaseModel):
    weekly_goal_usd: float
    window_days: int
    tracked_memories: int
    weekly_total_usd: float
    goal_progress: float
