"""FastAPI app entrypoint for the memory promotion pipeline."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Literal
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from promotion_pipeline.config.settings import Settings, get_settings
from promotion_pipeline.errors import UnknownMemoryError, UnknownTaskError
from promotion_pipeline.evidence.fact_check import build_fact_checker
from promotion_pipeline.evidence.ledger import HttpLedgerProofSource
from promotion_pipeline.models import (
    ConclusionRecord,
    GoalSnapshot,
    Memory,
    Task,
    TrustedSource,
)
from promotion_pipeline.pipeline.agents import InboxConclusionAgent
from promotion_pipeline.pipeline.orchestrator import MemoryPromotionOrchestrator
from promotion_pipeline.pipeline.rewards import RecordingRewardSink
from promotion_pipeline.storage.base import MemoryStore
from promotion_pipeline.storage.memory import InMemoryMemoryStore
from promotion_pipeline.storage.postgres import PostgresMemoryStore


class StartTaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent_id: str = Field(min_length=1)
    task_id: str | None = None
    task_type: str = Field(min_length=1)
    description: str = ""
    expected_duration_ms: int = Field(default=0, ge=0)


class ConclusionSubmission(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stage: Literal[1, 2, 3]
    text: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    claim: str | None = None
    strategies: list[str] = Field(default_factory=list)


class EconomicImpactRequest(BaseModel):
    usd_per_day: float = Field(allow_inf_nan=False)


class SourceUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    trust_weight: float | None = Field(default=None, ge=0.0, le=1.0)
    source_type: str = "web_search"
    url: str | None = None


class TaskDetail(BaseModel):
    task: Task
    conclusions: list[ConclusionRecord]


def _build_store(settings: Settings) -> MemoryStore:
    database_url = settings.resolved_database_url()
    store: MemoryStore = (
        PostgresMemoryStore(database_url) if database_url else InMemoryMemoryStore()
    )
    store.migrate()
    return store


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    orchestrator_override: MemoryPromotionOrchestrator | None,
) -> None:
    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "orchestrator"):
        if orchestrator_override is not None:
            app.state.orchestrator = orchestrator_override
            app.state.reward_ledger = None
            return
        reward_ledger = RecordingRewardSink()
        ledger = (
            HttpLedgerProofSource(settings.ledger_base_url, timeout_s=settings.ledger_timeout_s)
            if settings.ledger_base_url
            else None
        )
        app.state.reward_ledger = reward_ledger
        app.state.orchestrator = MemoryPromotionOrchestrator.from_settings(
            settings,
            agent=InboxConclusionAgent(wait_s=settings.conclusion_timeout_s),
            ledger=ledger,
            fact_checker=build_fact_checker(settings),
            reward_sinks=[reward_ledger],
            store=_build_store(settings),
        )


def create_app(
    *,
    orchestrator: MemoryPromotionOrchestrator | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, orchestrator_override=orchestrator)
        yield
        # Draining reward deliveries blocks; keep it off the event loop.
        await asyncio.to_thread(app.state.orchestrator.shutdown)

    app_lifespan = lifespan if orchestrator is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if orchestrator is not None:
        _ensure_runtime_state(app, settings=settings, orchestrator_override=orchestrator)

    def _get_orchestrator(request: Request) -> MemoryPromotionOrchestrator:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                orchestrator_override=orchestrator,
            )
        return request.app.state.orchestrator

    def _get_task(pipeline: MemoryPromotionOrchestrator, task_id: str) -> Task:
        try:
            return pipeline.get_task(task_id)
        except UnknownTaskError as exc:
            raise HTTPException(status_code=404, detail="Task not found") from exc

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks", response_model=Task, status_code=201)
    def start_task(payload: StartTaskRequest, request: Request) -> Task:
        pipeline = _get_orchestrator(request)
        return pipeline.start_task(
            payload.agent_id,
            payload.task_id or str(uuid4()),
            payload.task_type,
            payload.description,
            payload.expected_duration_ms,
        )

    @app.get("/tasks/{task_id}", response_model=TaskDetail)
    def get_task(task_id: str, request: Request) -> TaskDetail:
        pipeline = _get_orchestrator(request)
        task = _get_task(pipeline, task_id)
        return TaskDetail(task=task, conclusions=pipeline.conclusions(task_id))

    @app.post("/tasks/{task_id}/cancel", response_model=Task)
    def cancel_task(task_id: str, request: Request) -> Task:
        pipeline = _get_orchestrator(request)
        _get_task(pipeline, task_id)
        return pipeline.cancel_task(task_id)

    @app.post("/tasks/{task_id}/conclusions", status_code=202)
    def submit_conclusion(
        task_id: str,
        payload: ConclusionSubmission,
        request: Request,
    ) -> dict[str, object]:
        pipeline = _get_orchestrator(request)
        task = _get_task(pipeline, task_id)
        agent = pipeline.scheduler.agent
        if not isinstance(agent, InboxConclusionAgent):
            raise HTTPException(status_code=409, detail="Conclusions are not accepted over HTTP")
        if task.status != "active":
            raise HTTPException(status_code=409, detail=f"Task is {task.status}")
        if pipeline.scheduler.is_claimed(task_id, payload.stage):
            raise HTTPException(
                status_code=409, detail=f"Stage {payload.stage} checkpoint already fired"
            )
        agent.submit(ConclusionRecord(task_id=task_id, **payload.model_dump()))
        return {"accepted": True, "task_id": task_id, "stage": payload.stage}

    @app.get("/memories", response_model=list[Memory])
    def list_memories(
        request: Request,
        agent_id: str | None = None,
        limit: int = 100,
    ) -> list[Memory]:
        pipeline = _get_orchestrator(request)
        return pipeline.store.list_memories(agent_id=agent_id, limit=max(1, min(limit, 500)))

    @app.get("/memories/{memory_id}", response_model=Memory)
    def get_memory(memory_id: str, request: Request) -> Memory:
        pipeline = _get_orchestrator(request)
        try:
            return pipeline.get_memory(memory_id)
        except UnknownMemoryError as exc:
            raise HTTPException(status_code=404, detail="Memory not found") from exc

    @app.post("/memories/{memory_id}/economic-impact", response_model=Memory)
    def record_economic_impact(
        memory_id: str,
        payload: EconomicImpactRequest,
        request: Request,
    ) -> Memory:
        pipeline = _get_orchestrator(request)
        try:
            return pipeline.record_economic_impact(memory_id, payload.usd_per_day)
        except UnknownMemoryError as exc:
            raise HTTPException(status_code=404, detail="Memory not found") from exc

    @app.get("/agents/{agent_id}/rewards")
    def agent_rewards(agent_id: str, request: Request) -> dict[str, object]:
        _get_orchestrator(request)
        reward_ledger: RecordingRewardSink | None = request.app.state.reward_ledger
        if reward_ledger is None:
            raise HTTPException(status_code=404, detail="Reward ledger not enabled")
        events = [event for owner, event in reward_ledger.events if owner == agent_id]
        return {
            "agent_id": agent_id,
            "total_reward": sum(event.reward for event in events),
            "events": [event.model_dump(mode="json") for event in events],
        }

    @app.get("/goal", response_model=GoalSnapshot)
    def goal(request: Request) -> GoalSnapshot:
        return _get_orchestrator(request).goal_tracker.snapshot()

    @app.get("/sources", response_model=list[TrustedSource])
    def list_sources(request: Request) -> list[TrustedSource]:
        return list(_get_orchestrator(request).registry.snapshot())

    @app.put("/sources/{name}", response_model=TrustedSource)
    def put_source(name: str, payload: SourceUpdateRequest, request: Request) -> TrustedSource:
        registry = _get_orchestrator(request).registry
        if registry.get(name) is not None and payload.trust_weight is not None:
            return registry.update_trust(name, payload.trust_weight)
        return registry.register(
            name,
            source_type=payload.source_type,
            trust_weight=payload.trust_weight,
            url=payload.url,
        )

    return app


# Module-level app for `uvicorn promotion_pipeline.api.main:app`.
app = create_app()
