"""Registry of named sources and the trust weight assigned to each."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from promotion_pipeline.models import TrustedSource

logger = logging.getLogger(__name__)

# Trust weight used when a source is registered by type without an explicit weight.
DEFAULT_SOURCE_TYPE_WEIGHTS: dict[str, float] = {
    "blockchain_proof": 1.0,
    "academic_paper": 0.95,
    "official_docs": 0.90,
    "industry_newsletter": 0.85,
    "professional_web": 0.80,
    "community_discussion": 0.70,
    "social_media": 0.65,
    "youtube_content": 0.60,
    "web_search": 0.50,
    "user_generated": 0.40,
}


class TrustedSourceRegistry:
    """Read-mostly source table.

    Writers replace the whole mapping under a lock, so a snapshot taken by a
    running validation never observes a half-applied update.
    """

    def __init__(self, sources: Iterable[TrustedSource] = ()) -> None:
        self._lock = threading.Lock()
        self._sources: dict[str, TrustedSource] = {source.name: source for source in sources}

    def snapshot(self) -> tuple[TrustedSource, ...]:
        return tuple(self._sources.values())

    def get(self, name: str) -> TrustedSource | None:
        return self._sources.get(name)

    def names(self) -> list[str]:
        return sorted(self._sources)

    def register(
        self,
        name: str,
        *,
        source_type: str = "web_search",
        trust_weight: float | None = None,
        url: str | None = None,
    ) -> TrustedSource:
        weight = trust_weight
        if weight is None:
            weight = DEFAULT_SOURCE_TYPE_WEIGHTS.get(
                source_type, DEFAULT_SOURCE_TYPE_WEIGHTS["web_search"]
            )
        source = TrustedSource(name=name, trust_weight=weight, source_type=source_type, url=url)
        self._replace({name: source})
        logger.info(
            "source_registry event=registered name=%s source_type=%s trust_weight=%.2f",
            name,
            source_type,
            weight,
        )
        return source

    def update_trust(self, name: str, trust_weight: float) -> TrustedSource:
        with self._lock:
            current = self._sources.get(name)
            if current is None:
                raise KeyError(f"Source {name} is not registered")
            updated = TrustedSource.model_validate(
                {**current.model_dump(), "trust_weight": trust_weight}
            )
            self._sources = {**self._sources, name: updated}
        logger.info(
            "source_registry event=trust_updated name=%s old=%.2f new=%.2f",
            name,
            current.trust_weight,
            trust_weight,
        )
        return updated

    def remove(self, name: str) -> None:
        with self._lock:
            if name not in self._sources:
                return
            remaining = dict(self._sources)
            remaining.pop(name)
            self._sources = remaining

    def _replace(self, changes: dict[str, TrustedSource]) -> None:
        with self._lock:
            merged = dict(self._sources)
            merged.update(changes)
            self._sources = merged

    @classmethod
    def with_default_sources(cls) -> TrustedSourceRegistry:
        """One source per known source type, named after the type."""
        return cls(
            TrustedSource(name=source_type, trust_weight=weight, source_type=source_type)
            for source_type, weight in DEFAULT_SOURCE_TYPE_WEIGHTS.items()
        )
