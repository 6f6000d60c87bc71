"""Rolling weekly progress toward the economic goal."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from promotion_pipeline.models import GoalContribution, GoalSnapshot, utc_now

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7


@dataclass(frozen=True)
class _ProfitEntry:
    agent_id: str
    daily_profit_usd: float
    recorded_at: datetime

    @property
    def weekly_contribution(self) -> float:
        return self.daily_profit_usd * DAYS_PER_WEEK


class EconomicGoalTracker:
    """Single accumulator shared across tasks.

    Holds one figure per memory id (a later figure replaces the earlier one).
    Only figures recorded inside the rolling window count toward progress;
    older ones are dropped the next time the total is computed.
    """

    def __init__(
        self,
        *,
        weekly_goal_usd: float = 14_000.0,
        window_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if weekly_goal_usd <= 0:
            raise ValueError("weekly_goal_usd must be positive")
        self.weekly_goal_usd = weekly_goal_usd
        self.window = timedelta(days=window_days)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _ProfitEntry] = {}

    def record_daily_profit(
        self,
        memory_id: str,
        agent_id: str,
        daily_profit_usd: float,
    ) -> GoalContribution:
        entry = _ProfitEntry(
            agent_id=agent_id,
            daily_profit_usd=daily_profit_usd,
            recorded_at=self._clock(),
        )
        with self._lock:
            replaced = memory_id in self._entries
            self._entries[memory_id] = entry
            weekly_total = self._weekly_total_locked(entry.recorded_at)

        progress = weekly_total / self.weekly_goal_usd
        logger.info(
            "goal_tracker event=recorded memory_id=%s agent_id=%s daily_profit_usd=%.2f "
            "weekly_contribution=%.2f goal_progress=%.4f replaced=%s",
            memory_id,
            agent_id,
            daily_profit_usd,
            entry.weekly_contribution,
            progress,
            replaced,
        )
        return GoalContribution(
            memory_id=memory_id,
            agent_id=agent_id,
            daily_profit_usd=daily_profit_usd,
            weekly_contribution=entry.weekly_contribution,
            goal_progress=progress,
        )

    def goal_progress(self) -> float:
        return self.snapshot().goal_progress

    def snapshot(self) -> GoalSnapshot:
        now = self._clock()
        with self._lock:
            weekly_total = self._weekly_total_locked(now)
            tracked = len(self._entries)
        return GoalSnapshot(
            weekly_goal_usd=self.weekly_goal_usd,
            window_days=self.window.days,
            tracked_memories=tracked,
            weekly_total_usd=weekly_total,
            goal_progress=weekly_total / self.weekly_goal_usd,
        )

    def _weekly_total_locked(self, now: datetime) -> float:
        expired = [key for key, entry in self._entries.items() if not self._in_window(entry, now)]
        for key in expired:
            del self._entries[key]
        return sum(entry.weekly_contribution for entry in self._entries.values())

    def tracked_count(self) -> int:
        """Figures held in memory, including ones not yet pruned."""
        with self._lock:
            return len(self._entries)

    def _in_window(self, entry: _ProfitEntry, now: datetime) -> bool:
        return now - entry.recorded_at <= self.window
