"""Pure mapping from a memory's evidence to a promotion level and reward."""

from __future__ import annotations

from dataclasses import dataclass, field

from promotion_pipeline.config.settings import Settings
from promotion_pipeline.models import LEVEL_ORDER, Memory, PromotionLevel, max_level

EFFORT_BONUS_PER_STAGE = 0.5
CONFIDENCE_BONUS_FACTOR = 2.0


@dataclass(frozen=True)
class RewardTable:
    base_reward: float = 10.0
    level_multipliers: dict[str, float] = field(
        default_factory=lambda: {"standard": 1.0, "valuable": 2.5, "legendary": 5.0}
    )
    min_corroborating_sources: int = 2
    legendary_profit_usd: float = 100.0
    legendary_daily_impact_usd: float = 100.0

    def __post_init__(self) -> None:
        missing = set(LEVEL_ORDER) - set(self.level_multipliers)
        if missing:
            raise ValueError(f"Missing level multipliers: {sorted(missing)}")
        if any(value < 0 for value in self.level_multipliers.values()) or self.base_reward < 0:
            raise ValueError("Reward table values must be non-negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> RewardTable:
        return cls(
            base_reward=settings.base_reward,
            level_multipliers=settings.level_multipliers(),
            min_corroborating_sources=settings.min_corroborating_sources,
            legendary_profit_usd=settings.legendary_profit_usd,
            legendary_daily_impact_usd=settings.legendary_daily_impact_usd,
        )


@dataclass(frozen=True)
class Classification:
    level: PromotionLevel
    reward: float
    breakdown: dict[str, float]
    reasons: list[str]


class PromotionClassifier:
    """Deterministic classifier with no I/O."""

    def __init__(self, table: RewardTable | None = None) -> None:
        self.table = table or RewardTable()

    def classify(self, memory: Memory, *, floor: PromotionLevel | None = None) -> Classification:
        level, reasons = self._level(memory)
        if floor is not None and LEVEL_ORDER[floor] > LEVEL_ORDER[level]:
            reasons.append(f"kept_previous_level:{floor}")
            level = max_level(level, floor)

        validation = memory.source_validation
        validation_bonus = validation.reward_bonus if validation is not None else 0.0
        breakdown = {
            "base": self.table.base_reward * self.table.level_multipliers[level],
            "effort_bonus": EFFORT_BONUS_PER_STAGE * memory.highest_stage_reached(),
            "confidence_bonus": CONFIDENCE_BONUS_FACTOR * memory.best_confidence(),
            "validation_bonus": validation_bonus,
            "proof_bonus": sum(proof.proof_score for proof in memory.blockchain_proofs),
        }
        return Classification(
            level=level,
            reward=sum(breakdown.values()),
            breakdown=breakdown,
            reasons=reasons,
        )

    def _level(self, memory: Memory) -> tuple[PromotionLevel, list[str]]:
        table = self.table
        reasons: list[str] = []
        impact = memory.economic_impact_usd_per_day
        if impact is not None and impact >= table.legendary_daily_impact_usd:
            reasons.append("economic_impact_threshold")
        proofs = memory.blockchain_proofs
        aggregate_profit = sum(proof.total_profit_usd for proof in proofs)
        if aggregate_profit > table.legendary_profit_usd or any(
            proof.total_profit_usd > table.legendary_profit_usd for proof in proofs
        ):
            reasons.append("ledger_profit_threshold")
        if reasons:
            return "legendary", reasons

        validation = memory.source_validation
        if validation is not None and validation.source_count >= table.min_corroborating_sources:
            reasons.append("corroborating_sources")
        if any(proof.profitable_proof_count > 0 for proof in proofs):
            reasons.append("profitable_proofs")
        if reasons:
            return "valuable", reasons
        return "standard", reasons
