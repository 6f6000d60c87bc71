"""Per-task state machine tying checkpoints, evidence, promotion, and rewards together."""

from __future__ import annotations

import logging
import math
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from promotion_pipeline.boundaries import (
    ConclusionAgent,
    FactChecker,
    LedgerProofSource,
    RewardSink,
)
from promotion_pipeline.config.settings import Settings
from promotion_pipeline.errors import UnknownMemoryError, UnknownTaskError
from promotion_pipeline.evidence.proofs import BlockchainProofVerifier
from promotion_pipeline.evidence.registry import TrustedSourceRegistry
from promotion_pipeline.evidence.validation import SourceValidationEngine
from promotion_pipeline.models import (
    LEVEL_ORDER,
    TERMINAL_STATUSES,
    BlockchainProof,
    ConclusionRecord,
    Memory,
    RewardEvent,
    SourceValidation,
    Task,
    TaskStatus,
    utc_now,
)
from promotion_pipeline.pipeline.classifier import PromotionClassifier, RewardTable
from promotion_pipeline.pipeline.goals import EconomicGoalTracker
from promotion_pipeline.pipeline.rewards import RewardDistributor
from promotion_pipeline.pipeline.scheduler import (
    TaskConclusionScheduler,
    TimerFactory,
    threading_timer,
)
from promotion_pipeline.storage.base import MemoryStore
from promotion_pipeline.storage.memory import InMemoryMemoryStore

logger = logging.getLogger(__name__)

FINAL_STAGE = 3

T = TypeVar("T")


@dataclass
class _TaskState:
    task: Task
    conclusions: dict[int, ConclusionRecord] = field(default_factory=dict)
    # Evidence futures still running for this task; cancelled with the task.
    futures: list[Future[Any]] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def set_status(self, status: TaskStatus, **changes: Any) -> None:
        self.task = self.task.model_copy(update={"status": status, **changes})


@dataclass(frozen=True)
class _ArchivedTask:
    task: Task
    conclusions: tuple[ConclusionRecord, ...]


class MemoryPromotionOrchestrator:
    """Owns every task's lifecycle: pending, active, validating, concluded (or cancelled).

    Conclusions arrive from the scheduler. The stage-3 conclusion (real or
    placeholder) triggers source validation and ledger verification in
    parallel; once both settle the memory is classified, persisted, and its
    reward dispatched.

    Concluded and cancelled tasks leave the live table for a bounded archive,
    so lookups keep answering for recent tasks without unbounded growth.
    """

    def __init__(
        self,
        *,
        scheduler: TaskConclusionScheduler,
        registry: TrustedSourceRegistry,
        validation_engine: SourceValidationEngine,
        proof_verifier: BlockchainProofVerifier,
        classifier: PromotionClassifier,
        distributor: RewardDistributor,
        goal_tracker: EconomicGoalTracker,
        store: MemoryStore,
        evidence_workers: int = 8,
        archive_size: int = 1024,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.scheduler = scheduler
        self.registry = registry
        self.validation_engine = validation_engine
        self.proof_verifier = proof_verifier
        self.classifier = classifier
        self.distributor = distributor
        self.goal_tracker = goal_tracker
        self.store = store
        self._id_factory = id_factory
        self._clock = clock
        self._evidence_pool = ThreadPoolExecutor(
            max_workers=evidence_workers, thread_name_prefix="evidence"
        )
        self._tasks: dict[str, _TaskState] = {}
        self._tasks_lock = threading.Lock()
        # Concluded and cancelled tasks, oldest evicted first.
        self._archive: OrderedDict[str, _ArchivedTask] = OrderedDict()
        self.archive_size = archive_size
        self._impact_lock = threading.Lock()
        self.scheduler.set_listener(self._record_conclusion)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        agent: ConclusionAgent,
        ledger: LedgerProofSource | None = None,
        fact_checker: FactChecker | None = None,
        reward_sinks: Iterable[RewardSink] = (),
        store: MemoryStore | None = None,
        registry: TrustedSourceRegistry | None = None,
        timer_factory: TimerFactory = threading_timer,
    ) -> MemoryPromotionOrchestrator:
        scheduler = TaskConclusionScheduler(
            agent,
            offsets_s=settings.checkpoint_offsets_s,
            conclusion_timeout_s=settings.conclusion_timeout_s,
            timer_factory=timer_factory,
            max_workers=settings.conclusion_workers,
            closed_history=settings.task_archive_size,
        )
        return cls(
            scheduler=scheduler,
            registry=registry or TrustedSourceRegistry.with_default_sources(),
            validation_engine=SourceValidationEngine(
                fact_checker,
                min_corroborating_sources=settings.min_corroborating_sources,
            ),
            proof_verifier=BlockchainProofVerifier(
                ledger,
                max_retries=settings.proof_max_retries,
                backoff_s=settings.proof_backoff_s,
                legendary_profit_usd=settings.legendary_profit_usd,
            ),
            classifier=PromotionClassifier(RewardTable.from_settings(settings)),
            distributor=RewardDistributor(reward_sinks, max_workers=settings.reward_workers),
            goal_tracker=EconomicGoalTracker(
                weekly_goal_usd=settings.weekly_goal_usd,
                window_days=settings.goal_window_days,
            ),
            store=store or InMemoryMemoryStore(),
            evidence_workers=settings.evidence_workers,
            archive_size=settings.task_archive_size,
        )

    def start_task(
        self,
        agent_id: str,
        task_id: str,
        task_type: str,
        description: str,
        expected_duration_ms: int,
        *,
        started_at: datetime | None = None,
    ) -> Task:
        with self._tasks_lock:
            existing = self._tasks.get(task_id) or self._archive.get(task_id)
            if existing is None:
                state = _TaskState(
                    task=Task(
                        task_id=task_id,
                        agent_id=agent_id,
                        task_type=task_type,
                        description=description,
                        expected_duration_ms=expected_duration_ms,
                        started_at=started_at or self._clock(),
                    )
                )
                self._tasks[task_id] = state
        if existing is not None:
            logger.info("pipeline event=start_ignored task_id=%s reason=exists", task_id)
            return existing.task

        with state.lock:
            state.set_status("active")
            task = state.task
        self.scheduler.start_task(
            agent_id,
            task_id,
            task_type,
            description,
            expected_duration_ms,
            started_at=task.started_at,
        )
        logger.info(
            "pipeline event=task_started task_id=%s agent_id=%s task_type=%s",
            task_id,
            agent_id,
            task_type,
        )
        return task

    def get_task(self, task_id: str) -> Task:
        return self._lookup(task_id).task

    def conclusions(self, task_id: str) -> list[ConclusionRecord]:
        entry = self._lookup(task_id)
        if isinstance(entry, _ArchivedTask):
            return list(entry.conclusions)
        with entry.lock:
            return [entry.conclusions[stage] for stage in sorted(entry.conclusions)]

    def live_task_count(self) -> int:
        with self._tasks_lock:
            return len(self._tasks)

    def get_memory(self, memory_id: str) -> Memory:
        memory = self.store.load_memory(memory_id)
        if memory is None:
            raise UnknownMemoryError(memory_id)
        return memory

    def cancel_task(self, task_id: str) -> Task:
        entry = self._lookup(task_id)
        if isinstance(entry, _ArchivedTask):
            logger.info(
                "pipeline event=cancel_ignored task_id=%s status=%s", task_id, entry.task.status
            )
            return entry.task
        state = entry
        with state.lock:
            if state.task.status in TERMINAL_STATUSES:
                logger.info(
                    "pipeline event=cancel_ignored task_id=%s status=%s",
                    task_id,
                    state.task.status,
                )
                return state.task
            previous = state.task.status
            state.set_status("cancelled")
            futures, state.futures = state.futures, []
            task = state.task
        for future in futures:
            future.cancel()
        self.scheduler.cancel(task_id)
        self._retire(state)
        logger.info(
            "pipeline event=task_cancelled task_id=%s previous_status=%s pending_evidence=%d",
            task_id,
            previous,
            len(futures),
        )
        return task

    def record_economic_impact(self, memory_id: str, usd_per_day: float) -> Memory:
        """Attach a realized daily profit figure and promote upward if it qualifies.

        The figure is always stored and reported to the goal tracker; an
        incremental reward is dispatched only when the level rises.
        """
        if not math.isfinite(usd_per_day):
            raise ValueError("usd_per_day must be a finite number")
        with self._impact_lock:
            memory = self.get_memory(memory_id)
            previous_level = memory.promotion_level
            updated = memory.model_copy(
                update={"economic_impact_usd_per_day": usd_per_day, "updated_at": self._clock()}
            )
            classification = self.classifier.classify(updated, floor=previous_level)
            upgraded = LEVEL_ORDER[classification.level] > LEVEL_ORDER[previous_level]
            delta = 0.0
            if upgraded:
                delta = max(0.0, classification.reward - memory.reward)
                updated = updated.model_copy(
                    update={
                        "promotion_level": classification.level,
                        "reward": memory.reward + delta,
                    }
                )
            self.store.save_memory(updated)

        self.goal_tracker.record_daily_profit(memory_id, memory.agent_id, usd_per_day)
        if upgraded:
            self.distributor.distribute(
                memory.agent_id,
                RewardEvent(
                    reward=delta,
                    level=updated.promotion_level,
                    memory_id=memory_id,
                    task_id=memory.task_id,
                    stage=updated.highest_stage_reached(),
                    incremental=True,
                ),
            )
        logger.info(
            "pipeline event=economic_impact memory_id=%s usd_per_day=%.2f previous_level=%s "
            "level=%s reward_delta=%.2f",
            memory_id,
            usd_per_day,
            previous_level,
            updated.promotion_level,
            delta,
        )
        return updated

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self._evidence_pool.shutdown(wait=False, cancel_futures=True)
        self.distributor.shutdown(wait_for_pending=True)

    def _lookup(self, task_id: str) -> _TaskState | _ArchivedTask:
        with self._tasks_lock:
            entry = self._tasks.get(task_id) or self._archive.get(task_id)
        if entry is None:
            raise UnknownTaskError(task_id)
        return entry

    def _retire(self, state: _TaskState) -> None:
        with state.lock:
            archived = _ArchivedTask(
                task=state.task,
                conclusions=tuple(state.conclusions[stage] for stage in sorted(state.conclusions)),
            )
        task_id = archived.task.task_id
        with self._tasks_lock:
            self._tasks.pop(task_id, None)
            self._archive[task_id] = archived
            while len(self._archive) > self.archive_size:
                self._archive.popitem(last=False)

    def _record_conclusion(self, record: ConclusionRecord) -> None:
        with self._tasks_lock:
            state = self._tasks.get(record.task_id)
        if state is None:
            logger.info(
                "pipeline event=conclusion_ignored task_id=%s stage=%d reason=retired",
                record.task_id,
                record.stage,
            )
            return
        with state.lock:
            status = state.task.status
            if status != "active":
                logger.info(
                    "pipeline event=conclusion_ignored task_id=%s stage=%d status=%s",
                    record.task_id,
                    record.stage,
                    status,
                )
                return
            if record.stage in state.conclusions:
                logger.info(
                    "pipeline event=conclusion_ignored task_id=%s stage=%d reason=duplicate",
                    record.task_id,
                    record.stage,
                )
                return
            state.conclusions[record.stage] = record
            if record.stage != FINAL_STAGE:
                return
            state.set_status("validating")
            conclusions = [state.conclusions[stage] for stage in sorted(state.conclusions)]
            task = state.task

        logger.info(
            "pipeline event=validating task_id=%s stages=%d final_skipped=%s",
            task.task_id,
            len(conclusions),
            record.skipped,
        )
        self._evaluate(state, task, conclusions, record)

    def _evaluate(
        self,
        state: _TaskState,
        task: Task,
        conclusions: list[ConclusionRecord],
        final: ConclusionRecord,
    ) -> None:
        task_id = task.task_id
        claim = final.validation_claim()
        strategies = [] if final.skipped else [item for item in final.strategies if item.strip()]

        with state.lock:
            if state.task.status == "cancelled":
                return
            validation_future = (
                self._evidence_pool.submit(
                    self.validation_engine.validate,
                    claim,
                    self.registry.snapshot(),
                    task_id=task_id,
                )
                if claim
                else None
            )
            proof_futures = [
                self._evidence_pool.submit(self.proof_verifier.verify, strategy, task_id=task_id)
                for strategy in strategies
            ]
            state.futures = [
                future for future in (validation_future, *proof_futures) if future is not None
            ]
            pending = list(state.futures)

        wait(pending)

        validation = (
            self._settled(validation_future, task_id=task_id, kind="validation")
            if validation_future is not None
            else None
        )
        proofs = [
            proof
            for proof in (
                self._settled(future, task_id=task_id, kind="proof") for future in proof_futures
            )
            if proof is not None
        ]
        memory = self._build_memory(task, conclusions, validation, proofs)

        with state.lock:
            if state.task.status == "cancelled":
                logger.info(
                    "pipeline event=evidence_discarded task_id=%s reason=cancelled", task_id
                )
                return
            state.futures = []
            state.set_status("concluded", memory_id=memory.memory_id)

        self.scheduler.finish(task_id)
        self._retire(state)
        self.store.save_memory(memory)
        self.distributor.distribute(
            task.agent_id,
            RewardEvent(
                reward=memory.reward,
                level=memory.promotion_level,
                memory_id=memory.memory_id,
                task_id=task_id,
                stage=memory.highest_stage_reached(),
            ),
        )
        logger.info(
            "pipeline event=concluded task_id=%s memory_id=%s level=%s reward=%.2f",
            task_id,
            memory.memory_id,
            memory.promotion_level,
            memory.reward,
        )

    def _build_memory(
        self,
        task: Task,
        conclusions: list[ConclusionRecord],
        validation: SourceValidation | None,
        proofs: list[BlockchainProof],
    ) -> Memory:
        now = self._clock()
        memory = Memory(
            memory_id=self._id_factory(),
            agent_id=task.agent_id,
            task_id=task.task_id,
            conclusions=conclusions,
            source_validation=validation,
            blockchain_proofs=proofs,
            created_at=now,
            updated_at=now,
        )
        classification = self.classifier.classify(memory)
        logger.info(
            "pipeline event=classified task_id=%s level=%s reasons=%s breakdown=%s",
            task.task_id,
            classification.level,
            ",".join(classification.reasons) or "none",
            classification.breakdown,
        )
        return memory.model_copy(
            update={"promotion_level": classification.level, "reward": classification.reward}
        )

    @staticmethod
    def _settled(future: Future[T], *, task_id: str, kind: str) -> T | None:
        if future.cancelled():
            return None
        exc = future.exception()
        if exc is not None:
            logger.warning(
                "pipeline event=evidence_failed task_id=%s kind=%s reason=%s",
                task_id,
                kind,
                exc,
            )
            return None
        return future.result()
