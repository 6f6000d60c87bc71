from __future__ import annotations

import argparse
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from promotion_pipeline.config.settings import get_settings
from promotion_pipeline.evidence.fact_check import TermOverlapFactChecker
from promotion_pipeline.models import STAGES, ConclusionRecord, ProofReceipt
from promotion_pipeline.pipeline.agents import InboxConclusionAgent
from promotion_pipeline.pipeline.orchestrator import MemoryPromotionOrchestrator
from promotion_pipeline.pipeline.rewards import RecordingRewardSink


class _RecordedLedger:
    def __init__(self, receipts: dict[str, list[dict[str, Any]]]) -> None:
        self.receipts = {
            strategy: [ProofReceipt.model_validate(item) for item in items]
            for strategy, items in receipts.items()
        }

    def query_proofs(self, strategy_description: str) -> list[ProofReceipt]:
        return list(self.receipts.get(strategy_description, []))


class _HeldTimer:
    def cancel(self) -> None:
        return None


def _held_timer(delay_s: float, callback: Callable[[], None]) -> _HeldTimer:
    # Checkpoints are fired explicitly below.
    return _HeldTimer()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay a recorded task through the promotion pipeline offline."
    )
    parser.add_argument("scenario", type=Path, help="Scenario JSON file.")
    parser.add_argument("--verbose", action="store_true", help="Print pipeline logs.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    scenario = json.loads(args.scenario.read_text(encoding="utf-8"))
    settings = get_settings()
    task_id = str(scenario.get("task_id", "replay-task"))
    agent_id = str(scenario.get("agent_id", "replay-agent"))

    inbox = InboxConclusionAgent(wait_s=0.1)
    rewards = RecordingRewardSink()
    pipeline = MemoryPromotionOrchestrator.from_settings(
        settings,
        agent=inbox,
        ledger=_RecordedLedger(scenario.get("receipts", {})),
        fact_checker=TermOverlapFactChecker(
            scenario.get("statements", {}),
            min_similarity=settings.fact_check_min_similarity,
        ),
        reward_sinks=[rewards],
        timer_factory=_held_timer,
    )
    try:
        pipeline.start_task(
            agent_id,
            task_id,
            str(scenario.get("task_type", "replay")),
            str(scenario.get("description", "")),
            int(scenario.get("expected_duration_ms", 0)),
        )
        for item in scenario.get("conclusions", []):
            inbox.submit(ConclusionRecord.model_validate({**item, "task_id": task_id}))
        for stage in STAGES:
            pipeline.scheduler.fire(task_id, stage)

        memory_id = pipeline.get_task(task_id).memory_id
        if memory_id is None:
            raise SystemExit(f"Task {task_id} did not conclude")
        impact = scenario.get("economic_impact_usd_per_day")
        memory = (
            pipeline.record_economic_impact(memory_id, float(impact))
            if impact is not None
            else pipeline.get_memory(memory_id)
        )
        pipeline.distributor.drain(timeout_s=5.0)
    finally:
        pipeline.shutdown()

    payload = {
        "memory": memory.model_dump(mode="json"),
        "rewards": [event.model_dump(mode="json") for _, event in rewards.events],
        "goal": pipeline.goal_tracker.snapshot().model_dump(mode="json"),
    }
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    main()
