"""Task checkpoints, promotion, rewards, and goal tracking."""

from promotion_pipeline.pipeline.agents import InboxConclusionAgent
from promotion_pipeline.pipeline.classifier import Classification, PromotionClassifier, RewardTable
from promotion_pipeline.pipeline.goals import EconomicGoalTracker
from promotion_pipeline.pipeline.orchestrator import MemoryPromotionOrchestrator
from promotion_pipeline.pipeline.rewards import (
    CallbackRewardSink,
    RecordingRewardSink,
    RewardDistributor,
)
from promotion_pipeline.pipeline.scheduler import TaskConclusionScheduler, threading_timer

__all__ = [
    "CallbackRewardSink",
    "Classification",
    "EconomicGoalTracker",
    "InboxConclusionAgent",
    "MemoryPromotionOrchestrator",
    "PromotionClassifier",
    "RecordingRewardSink",
    "RewardDistributor",
    "RewardTable",
    "TaskConclusionScheduler",
    "threading_timer",
]
