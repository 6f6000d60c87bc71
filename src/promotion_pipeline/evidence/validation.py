"""Trust-weighted corroboration of claims taken from deep (stage-3) conclusions."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from promotion_pipeline.boundaries import FactChecker
from promotion_pipeline.models import SourceValidation, TrustedSource

logger = logging.getLogger(__name__)


class SourceValidationEngine:
    """Score a claim by the trust weight of the sources that corroborate it.

    ``min_corroborating_sources`` is the hard eligibility threshold for the
    valuable level (two sources unless configured otherwise).
    """

    def __init__(
        self,
        fact_checker: FactChecker | None,
        *,
        min_corroborating_sources: int = 2,
    ) -> None:
        self.fact_checker = fact_checker
        self.min_corroborating_sources = min_corroborating_sources

    def validate(
        self,
        claim: str,
        candidate_sources: Iterable[TrustedSource],
        *,
        task_id: str | None = None,
    ) -> SourceValidation:
        candidates = list(candidate_sources)
        if self.fact_checker is None:
            logger.warning(
                "source_validation event=unavailable task_id=%s candidates=%d",
                task_id,
                len(candidates),
            )
            return SourceValidation(claim=claim, error="fact_checker_unavailable")

        corroborating: list[TrustedSource] = []
        for source in candidates:
            try:
                if self.fact_checker.corroborates(claim, source):
                    corroborating.append(source)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "source_validation event=fact_check_failed task_id=%s source=%s reason=%s",
                    task_id,
                    source.name,
                    exc,
                )
                return SourceValidation(claim=claim, error=f"fact_check_failed: {exc}")

        result = SourceValidation(
            claim=claim,
            sources=corroborating,
            eligible_for_valuable=len(corroborating) >= self.min_corroborating_sources,
        )
        logger.info(
            "source_validation event=scored task_id=%s candidates=%d sources=%d score=%.2f",
            task_id,
            len(candidates),
            result.source_count,
            result.validation_score,
        )
        return result
