"""Three fixed conclusion checkpoints per task (1, 5 and 30 minutes after start)."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from pydantic import ValidationError

from promotion_pipeline.boundaries import BufferedConclusionAgent, ConclusionAgent
from promotion_pipeline.errors import UnknownTaskError
from promotion_pipeline.models import STAGES, ConclusionRecord, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_OFFSETS_S: tuple[float, float, float] = (60.0, 300.0, 1800.0)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
ConclusionListener = Callable[[ConclusionRecord], None]


def threading_timer(delay_s: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(max(0.0, delay_s), callback)
    timer.daemon = True
    timer.start()
    return timer


@dataclass
class _Schedule:
    agent_id: str
    task_id: str
    task_type: str
    started_at: datetime
    timers: list[TimerHandle] = field(default_factory=list)
    # Stages already fired or in flight; (task_id, stage) is the idempotency key.
    claimed: set[int] = field(default_factory=set)
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


class TaskConclusionScheduler:
    """Drive the checkpoint timers of every active task.

    Each checkpoint asks the owning agent for a conclusion and waits at most
    ``conclusion_timeout_s``. A silent or failing agent yields a skipped,
    zero-confidence placeholder instead of an error.
    """

    def __init__(
        self,
        agent: ConclusionAgent,
        *,
        on_conclusion: ConclusionListener | None = None,
        offsets_s: Sequence[float] = DEFAULT_CHECKPOINT_OFFSETS_S,
        conclusion_timeout_s: float = 10.0,
        timer_factory: TimerFactory = threading_timer,
        max_workers: int = 8,
        closed_history: int = 1024,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if len(offsets_s) != len(STAGES):
            raise ValueError(f"Expected {len(STAGES)} checkpoint offsets, got {len(offsets_s)}")
        if list(offsets_s) != sorted(offsets_s):
            raise ValueError("Checkpoint offsets must be non-decreasing")
        self.agent = agent
        self.offsets_s = tuple(float(value) for value in offsets_s)
        self.conclusion_timeout_s = conclusion_timeout_s
        self._on_conclusion = on_conclusion
        self._timer_factory = timer_factory
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="conclusion")
        self._schedules: dict[str, _Schedule] = {}
        self._schedules_lock = threading.Lock()
        # Ids of recently closed tasks, so late fires are ignored rather than unknown.
        self._closed: OrderedDict[str, None] = OrderedDict()
        self.closed_history = closed_history

    def set_listener(self, listener: ConclusionListener) -> None:
        self._on_conclusion = listener

    def start_task(
        self,
        agent_id: str,
        task_id: str,
        task_type: str,
        description: str,
        expected_duration_ms: int,
        *,
        started_at: datetime | None = None,
    ) -> None:
        schedule = _Schedule(
            agent_id=agent_id,
            task_id=task_id,
            task_type=task_type,
            started_at=started_at or self._clock(),
        )
        with self._schedules_lock:
            if task_id in self._schedules:
                logger.info("scheduler event=already_scheduled task_id=%s", task_id)
                return
            self._closed.pop(task_id, None)
            self._schedules[task_id] = schedule

        elapsed_s = (self._clock() - schedule.started_at).total_seconds()
        with schedule.lock:
            for stage, offset_s in zip(STAGES, self.offsets_s):
                schedule.timers.append(
                    self._timer_factory(
                        offset_s - elapsed_s,
                        lambda stage=stage: self._on_timer(task_id, stage),
                    )
                )
        logger.info(
            "scheduler event=scheduled task_id=%s agent_id=%s task_type=%s "
            "expected_duration_ms=%d offsets_s=%s description_chars=%d",
            task_id,
            agent_id,
            task_type,
            expected_duration_ms,
            self.offsets_s,
            len(description),
        )

    def fire(self, task_id: str, stage: int) -> ConclusionRecord | None:
        """Run one checkpoint. Returns the stored record, or None when ignored."""
        if stage not in STAGES:
            raise ValueError(f"Invalid stage: {stage}")
        schedule = self._schedule_for(task_id)
        if schedule is None:
            logger.info(
                "scheduler event=fire_ignored task_id=%s stage=%d reason=closed", task_id, stage
            )
            return None
        with schedule.lock:
            if schedule.closed:
                logger.info(
                    "scheduler event=fire_ignored task_id=%s stage=%d reason=closed",
                    task_id,
                    stage,
                )
                return None
            if stage in schedule.claimed:
                logger.info(
                    "scheduler event=fire_ignored task_id=%s stage=%d reason=duplicate",
                    task_id,
                    stage,
                )
                return None
            schedule.claimed.add(stage)

        record = self._request_conclusion(schedule, stage)

        with schedule.lock:
            if schedule.closed:
                logger.info(
                    "scheduler event=result_discarded task_id=%s stage=%d reason=closed",
                    task_id,
                    stage,
                )
                return None

        if self._on_conclusion is not None:
            self._on_conclusion(record)
        return record

    def cancel(self, task_id: str) -> None:
        self._close(task_id, reason="cancelled")

    def finish(self, task_id: str) -> None:
        self._close(task_id, reason="finished")

    def is_open(self, task_id: str) -> bool:
        with self._schedules_lock:
            schedule = self._schedules.get(task_id)
        return schedule is not None and not schedule.closed

    def is_claimed(self, task_id: str, stage: int) -> bool:
        """True once the checkpoint has fired (or can no longer fire)."""
        schedule = self._schedule_for(task_id)
        if schedule is None:
            return True
        with schedule.lock:
            return schedule.closed or stage in schedule.claimed

    def open_task_count(self) -> int:
        with self._schedules_lock:
            return len(self._schedules)

    def shutdown(self) -> None:
        with self._schedules_lock:
            task_ids = list(self._schedules)
        for task_id in task_ids:
            self._close(task_id, reason="shutdown")
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _close(self, task_id: str, *, reason: str) -> None:
        with self._schedules_lock:
            schedule = self._schedules.pop(task_id, None)
            if schedule is None:
                if task_id in self._closed:
                    return
                raise UnknownTaskError(task_id)
            self._closed[task_id] = None
            while len(self._closed) > self.closed_history:
                self._closed.popitem(last=False)
        with schedule.lock:
            schedule.closed = True
            timers = list(schedule.timers)
        for timer in timers:
            timer.cancel()
        dropped = 0
        if isinstance(self.agent, BufferedConclusionAgent):
            dropped = self.agent.discard(task_id)
        logger.info(
            "scheduler event=closed task_id=%s reason=%s dropped_submissions=%d",
            task_id,
            reason,
            dropped,
        )

    def _schedule_for(self, task_id: str) -> _Schedule | None:
        """Live schedule, or None for a recently closed task."""
        with self._schedules_lock:
            schedule = self._schedules.get(task_id)
            if schedule is None and task_id not in self._closed:
                raise UnknownTaskError(task_id)
        return schedule

    def _on_timer(self, task_id: str, stage: int) -> None:
        try:
            self.fire(task_id, stage)
        except Exception:
            logger.exception("scheduler event=timer_failed task_id=%s stage=%d", task_id, stage)

    def _request_conclusion(self, schedule: _Schedule, stage: int) -> ConclusionRecord:
        task_id = schedule.task_id
        try:
            future = self._pool.submit(
                self.agent.request_conclusion, schedule.agent_id, task_id, stage
            )
        except RuntimeError as exc:
            # Pool already shut down.
            logger.warning(
                "scheduler event=stage_skipped task_id=%s agent_id=%s stage=%d reason=%s",
                task_id,
                schedule.agent_id,
                stage,
                exc,
            )
            return ConclusionRecord.placeholder(task_id, stage)
        try:
            raw = future.result(timeout=self.conclusion_timeout_s)
            record = self._normalize(raw, task_id=task_id, stage=stage)
        except TimeoutError:
            future.cancel()
            logger.warning(
                "scheduler event=stage_skipped task_id=%s agent_id=%s stage=%d "
                "reason=timeout timeout_s=%.2f",
                task_id,
                schedule.agent_id,
                stage,
                self.conclusion_timeout_s,
            )
            return ConclusionRecord.placeholder(task_id, stage)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "scheduler event=stage_skipped task_id=%s agent_id=%s stage=%d reason=%s",
                task_id,
                schedule.agent_id,
                stage,
                exc,
            )
            return ConclusionRecord.placeholder(task_id, stage)

        logger.info(
            "scheduler event=conclusion_captured task_id=%s stage=%d confidence=%.2f",
            task_id,
            stage,
            record.confidence,
        )
        return record

    def _normalize(self, raw: Any, *, task_id: str, stage: int) -> ConclusionRecord:
        if isinstance(raw, ConclusionRecord):
            payload = raw.model_dump()
        elif isinstance(raw, dict):
            payload = dict(raw)
        else:
            raise TypeError(f"Agent returned unsupported conclusion type: {type(raw)!r}")
        payload.update({"task_id": task_id, "stage": stage, "captured_at": self._clock()})
        try:
            return ConclusionRecord.model_validate(payload)
        except ValidationError as exc:
            raise ValueError(f"Agent returned an invalid conclusion: {exc}") from exc
