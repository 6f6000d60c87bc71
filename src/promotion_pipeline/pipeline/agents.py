"""Conclusion agent that collects submissions pushed by remote agents."""

from __future__ import annotations

import logging
import threading

from promotion_pipeline.models import ConclusionRecord

logger = logging.getLogger(__name__)


class InboxConclusionAgent:
    """Match checkpoint requests with conclusions submitted over the API.

    A submission may arrive before or after its checkpoint fires. A request
    waits at most ``wait_s`` for the matching ``(task_id, stage)`` entry and
    raises ``TimeoutError`` when none arrives.
    """

    def __init__(self, *, wait_s: float = 10.0) -> None:
        self.wait_s = wait_s
        self._condition = threading.Condition()
        self._inbox: dict[tuple[str, int], ConclusionRecord] = {}

    def submit(self, record: ConclusionRecord) -> None:
        key = (record.task_id, record.stage)
        with self._condition:
            replaced = key in self._inbox
            self._inbox[key] = record
            self._condition.notify_all()
        logger.info(
            "conclusion_inbox event=submitted task_id=%s stage=%d replaced=%s",
            record.task_id,
            record.stage,
            replaced,
        )

    def request_conclusion(self, agent_id: str, task_id: str, stage: int) -> ConclusionRecord:
        key = (task_id, stage)
        with self._condition:
            arrived = self._condition.wait_for(lambda: key in self._inbox, timeout=self.wait_s)
            if not arrived:
                raise TimeoutError(
                    f"Agent {agent_id} sent no stage {stage} conclusion for task {task_id}"
                )
            return self._inbox.pop(key)

    def discard(self, task_id: str) -> int:
        with self._condition:
            stale = [key for key in self._inbox if key[0] == task_id]
            for key in stale:
                del self._inbox[key]
        return len(stale)

    def pending(self) -> int:
        with self._condition:
            return len(self._inbox)
