from __future__ import annotations

from collections.abc import Iterator

import pytest

from promotion_pipeline.evidence.proofs import BlockchainProofVerifier
from promotion_pipeline.evidence.registry import TrustedSourceRegistry
from promotion_pipeline.evidence.validation import SourceValidationEngine
from promotion_pipeline.pipeline.classifier import PromotionClassifier
from promotion_pipeline.pipeline.goals import EconomicGoalTracker
from promotion_pipeline.pipeline.orchestrator import MemoryPromotionOrchestrator
from promotion_pipeline.pipeline.rewards import RecordingRewardSink, RewardDistributor
from promotion_pipeline.pipeline.scheduler import TaskConclusionScheduler
from promotion_pipeline.storage.memory import InMemoryMemoryStore
from tests.fakes import (
    TEST_SOURCES,
    FakeFactChecker,
    FakeLedger,
    ManualTimerFactory,
    PipelineHarness,
    ScriptedAgent,
)


@pytest.fixture
def harness() -> Iterator[PipelineHarness]:
    agent = ScriptedAgent()
    timers = ManualTimerFactory()
    ledger = FakeLedger()
    fact_checker = FakeFactChecker()
    rewards = RecordingRewardSink()
    store = InMemoryMemoryStore()
    counter = iter(range(1, 10_000))

    orchestrator = MemoryPromotionOrchestrator(
        scheduler=TaskConclusionScheduler(
            agent,
            conclusion_timeout_s=2.0,
            timer_factory=timers,
            max_workers=4,
        ),
        registry=TrustedSourceRegistry(TEST_SOURCES),
        validation_engine=SourceValidationEngine(fact_checker),
        proof_verifier=BlockchainProofVerifier(ledger, backoff_s=0.0, sleep=lambda _: None),
        classifier=PromotionClassifier(),
        distributor=RewardDistributor([rewards]),
        goal_tracker=EconomicGoalTracker(),
        store=store,
        evidence_workers=4,
        id_factory=lambda: f"mem-{next(counter)}",
    )
    yield PipelineHarness(
        orchestrator=orchestrator,
        agent=agent,
        timers=timers,
        ledger=ledger,
        fact_checker=fact_checker,
        rewards=rewards,
        store=store,
    )
    orchestrator.shutdown()
