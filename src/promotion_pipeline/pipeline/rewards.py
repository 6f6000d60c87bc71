"""Fire-and-forget hand-off of promotion rewards to learning components."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait

from promotion_pipeline.boundaries import RewardSink
from promotion_pipeline.models import RewardEvent

logger = logging.getLogger(__name__)


class RewardDistributor:
    """Dispatch reward events to every registered sink on a worker pool.

    ``distribute`` returns immediately; sink failures are logged and never
    reach the orchestrator.
    """

    def __init__(self, sinks: Iterable[RewardSink] = (), *, max_workers: int = 2) -> None:
        self._sinks: list[RewardSink] = list(sinks)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reward")
        self._lock = threading.Lock()
        self._pending: set[Future[None]] = set()

    def add_sink(self, sink: RewardSink) -> None:
        with self._lock:
            self._sinks = [*self._sinks, sink]

    def distribute(self, agent_id: str, event: RewardEvent) -> None:
        logger.info(
            "reward event=dispatch agent_id=%s memory_id=%s task_id=%s level=%s reward=%.2f "
            "incremental=%s sinks=%d",
            agent_id,
            event.memory_id,
            event.task_id,
            event.level,
            event.reward,
            event.incremental,
            len(self._sinks),
        )
        for sink in self._sinks:
            future = self._pool.submit(self._apply, sink, agent_id, event)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._forget)

    def drain(self, timeout_s: float | None = None) -> bool:
        """Wait for in-flight dispatches; True when all of them finished."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout_s)
        return not not_done

    def shutdown(self, *, wait_for_pending: bool = True) -> None:
        self._pool.shutdown(wait=wait_for_pending)

    def _forget(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _apply(sink: RewardSink, agent_id: str, event: RewardEvent) -> None:
        try:
            sink.apply_reward(agent_id, event)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "reward event=sink_failed agent_id=%s memory_id=%s sink=%s reason=%s",
                agent_id,
                event.memory_id,
                type(sink).__name__,
                exc,
            )


class CallbackRewardSink:
    """Adapt a plain callable (for example a policy-update hook) to ``RewardSink``."""

    def __init__(self, callback: Callable[[str, RewardEvent], None]) -> None:
        self._callback = callback

    def apply_reward(self, agent_id: str, event: RewardEvent) -> None:
        self._callback(agent_id, event)


class RecordingRewardSink:
    """Keeps every reward it receives; used by the API ledger and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[tuple[str, RewardEvent]] = []

    def apply_reward(self, agent_id: str, event: RewardEvent) -> None:
        with self._lock:
            self._events.append((agent_id, event))

    @property
    def events(self) -> list[tuple[str, RewardEvent]]:
        with self._lock:
            return list(self._events)

    def total_for(self, agent_id: str) -> float:
        return sum(event.reward for owner, event in self.events if owner == agent_id)
