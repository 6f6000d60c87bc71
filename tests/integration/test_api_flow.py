from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from promotion_pipeline.api.main import create_app
from promotion_pipeline.config.settings import Settings
from promotion_pipeline.evidence.proofs import BlockchainProofVerifier
from promotion_pipeline.evidence.registry import TrustedSourceRegistry
from promotion_pipeline.evidence.validation import SourceValidationEngine
from promotion_pipeline.pipeline.agents import InboxConclusionAgent
from promotion_pipeline.pipeline.classifier import PromotionClassifier
from promotion_pipeline.pipeline.goals import EconomicGoalTracker
from promotion_pipeline.pipeline.orchestrator import MemoryPromotionOrchestrator
from promotion_pipeline.pipeline.rewards import RecordingRewardSink, RewardDistributor
from promotion_pipeline.pipeline.scheduler import TaskConclusionScheduler
from promotion_pipeline.storage.memory import InMemoryMemoryStore
from tests.fakes import TEST_SOURCES, FakeFactChecker, FakeLedger, ManualTimerFactory, receipts

STRATEGY = "sol-usdc basis trade"


@pytest.fixture
def pipeline() -> Iterator[MemoryPromotionOrchestrator]:
    orchestrator = MemoryPromotionOrchestrator(
        scheduler=TaskConclusionScheduler(
            InboxConclusionAgent(wait_s=0.2),
            conclusion_timeout_s=2.0,
            timer_factory=ManualTimerFactory(),
        ),
        registry=TrustedSourceRegistry(TEST_SOURCES),
        validation_engine=SourceValidationEngine(FakeFactChecker({"arxiv", "protocol-docs"})),
        proof_verifier=BlockchainProofVerifier(
            FakeLedger({STRATEGY: receipts(12.0, 8.0)}),
            backoff_s=0.0,
        ),
        classifier=PromotionClassifier(),
        distributor=RewardDistributor([RecordingRewardSink()]),
        goal_tracker=EconomicGoalTracker(),
        store=InMemoryMemoryStore(),
    )
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def client(pipeline: MemoryPromotionOrchestrator) -> Iterator[TestClient]:
    app = create_app(orchestrator=pipeline, settings_override=Settings(_env_file=None))
    with TestClient(app) as test_client:
        yield test_client


def _start(client: TestClient, task_id: str) -> None:
    response = client.post(
        "/tasks",
        json={
            "agent_id": "agent-7",
            "task_id": task_id,
            "task_type": "market_research",
            "description": "Compare basis trade venues",
            "expected_duration_ms": 90_000,
        },
    )
    assert response.status_code == 201
    assert response.json()["status"] == "active"


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "memory-promotion-pipeline"}


def test_submitted_conclusions_flow_into_promoted_memory(
    client: TestClient,
    pipeline: MemoryPromotionOrchestrator,
) -> None:
    _start(client, "api-task-1")
    submissions = [
        {"stage": 1, "text": "Funding rates look rich", "confidence": 0.55},
        {"stage": 2, "text": "Two venues dominate volume", "confidence": 0.7},
        {
            "stage": 3,
            "text": "Basis trade on SOL is persistently profitable",
            "confidence": 0.9,
            "claim": "SOL perpetual funding stayed positive for a month",
            "strategies": [STRATEGY],
        },
    ]
    for stage, submission in enumerate(submissions, start=1):
        accepted = client.post("/tasks/api-task-1/conclusions", json=submission)
        assert accepted.status_code == 202
        pipeline.scheduler.fire("api-task-1", stage)

    detail = client.get("/tasks/api-task-1").json()
    assert detail["task"]["status"] == "concluded"
    assert [record["stage"] for record in detail["conclusions"]] == [1, 2, 3]

    memory_id = detail["task"]["memory_id"]
    memory = client.get(f"/memories/{memory_id}").json()
    assert memory["promotion_level"] == "valuable"
    assert memory["source_validation"]["source_count"] == 2
    assert memory["blockchain_proofs"][0]["total_profit_usd"] == pytest.approx(20.0)

    listed = client.get("/memories", params={"agent_id": "agent-7"}).json()
    assert [item["memory_id"] for item in listed] == [memory_id]

    upgraded = client.post(f"/memories/{memory_id}/economic-impact", json={"usd_per_day": 150.0})
    assert upgraded.status_code == 200
    assert upgraded.json()["promotion_level"] == "legendary"

    goal = client.get("/goal").json()
    assert goal["weekly_total_usd"] == pytest.approx(1050.0)
    assert goal["goal_progress"] == pytest.approx(0.075)


def test_conclusions_rejected_after_task_ends(client: TestClient) -> None:
    _start(client, "api-task-2")
    cancelled = client.post("/tasks/api-task-2/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    response = client.post(
        "/tasks/api-task-2/conclusions",
        json={"stage": 2, "text": "too late", "confidence": 0.5},
    )
    assert response.status_code == 409


def test_submission_for_fired_stage_is_rejected(
    client: TestClient,
    pipeline: MemoryPromotionOrchestrator,
) -> None:
    _start(client, "api-task-4")
    record = pipeline.scheduler.fire("api-task-4", 1)
    assert record is not None and record.skipped is True

    late = client.post(
        "/tasks/api-task-4/conclusions",
        json={"stage": 1, "text": "missed the checkpoint", "confidence": 0.6},
    )
    assert late.status_code == 409
    assert pipeline.scheduler.agent.pending() == 0

    on_time = client.post(
        "/tasks/api-task-4/conclusions",
        json={"stage": 2, "text": "next checkpoint", "confidence": 0.6},
    )
    assert on_time.status_code == 202
    assert pipeline.scheduler.agent.pending() == 1

    client.post("/tasks/api-task-4/cancel")
    assert pipeline.scheduler.agent.pending() == 0


def test_invalid_submission_is_rejected(client: TestClient) -> None:
    _start(client, "api-task-3")
    response = client.post(
        "/tasks/api-task-3/conclusions",
        json={"stage": 4, "text": "x", "confidence": 1.5},
    )
    assert response.status_code == 422


def test_unknown_ids_return_404(client: TestClient) -> None:
    assert client.get("/tasks/missing").status_code == 404
    assert client.post("/tasks/missing/cancel").status_code == 404
    assert (
        client.post("/tasks/missing/conclusions", json={"stage": 1, "confidence": 0.1}).status_code
        == 404
    )
    assert client.get("/memories/missing").status_code == 404
    assert (
        client.post("/memories/missing/economic-impact", json={"usd_per_day": 1.0}).status_code
        == 404
    )


def test_reward_ledger_absent_with_injected_orchestrator(client: TestClient) -> None:
    assert client.get("/agents/agent-7/rewards").status_code == 404


def test_source_registry_endpoints(client: TestClient) -> None:
    names = [source["name"] for source in client.get("/sources").json()]
    assert "arxiv" in names

    updated = client.put("/sources/arxiv", json={"trust_weight": 0.5})
    assert updated.status_code == 200
    assert updated.json()["trust_weight"] == pytest.approx(0.5)

    created = client.put("/sources/the-block", json={"source_type": "industry_newsletter"})
    assert created.status_code == 200
    assert created.json()["trust_weight"] == pytest.approx(0.85)

    rejected = client.put("/sources/arxiv", json={"trust_weight": 2.0})
    assert rejected.status_code == 422


def test_default_app_builds_runtime_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PROMOTION_DATABASE_URL", raising=False)
    settings = Settings(
        _env_file=None,
        database_url="",
        ledger_base_url="",
        source_statements_path="",
        checkpoint_offsets_s=(600.0, 1200.0, 1800.0),
    )
    app = create_app(settings_override=settings)

    with TestClient(app) as test_client:
        assert test_client.get("/sources").status_code == 200
        rewards = test_client.get("/agents/agent-1/rewards").json()
        assert rewards == {"agent_id": "agent-1", "total_reward": 0, "events": []}
        response = test_client.post(
            "/tasks",
            json={"agent_id": "agent-1", "task_type": "research", "expected_duration_ms": 10},
        )
        assert response.status_code == 201
        task_id = response.json()["task_id"]
        assert test_client.post(f"/tasks/{task_id}/cancel").json()["status"] == "cancelled"


def test_shutdown_runs_off_the_event_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PROMOTION_DATABASE_URL", raising=False)
    original_shutdown = MemoryPromotionOrchestrator.shutdown
    seen: list[str] = []

    def recording_shutdown(self: MemoryPromotionOrchestrator) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            seen.append("worker thread")
        else:
            seen.append("event loop")
        original_shutdown(self)

    monkeypatch.setattr(MemoryPromotionOrchestrator, "shutdown", recording_shutdown)
    app = create_app(settings_override=Settings(_env_file=None, database_url=""))

    with TestClient(app) as test_client:
        assert test_client.get("/health").status_code == 200

    assert seen == ["worker thread"]
