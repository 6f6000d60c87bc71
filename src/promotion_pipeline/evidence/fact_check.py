"""Fact-check implementations for the corroboration predicate."""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any
from urllib import error, request

from pydantic import BaseModel, ConfigDict

from promotion_pipeline.boundaries import FactChecker
from promotion_pipeline.config.settings import Settings
from promotion_pipeline.errors import FactCheckError
from promotion_pipeline.models import TrustedSource

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "is", "are", "was", "were", "be", "been", "have", "has", "had", "do", "does",
        "did", "will", "would", "could", "should", "may", "might", "can", "this", "that",
        "these", "those", "you", "he", "she", "it", "we", "they", "me", "him", "her",
        "us", "them",
    }
)  # fmt: skip


def significant_words(text: str) -> set[str]:
    words = re.sub(r"[^\w\s]", " ", text.lower()).split()
    return {word for word in words if len(word) > 2 and word not in STOP_WORDS}


class TermOverlapFactChecker:
    """Deterministic checker over statements each source has published.

    A source corroborates a claim when one of its statements covers at least
    ``min_similarity`` of the claim's significant words.
    """

    def __init__(self, statements: dict[str, list[str]], *, min_similarity: float = 0.6) -> None:
        self.statements = {name: list(items) for name, items in statements.items()}
        self.min_similarity = min_similarity

    @classmethod
    def from_file(cls, path: str | Path, *, min_similarity: float = 0.6) -> TermOverlapFactChecker:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"Source statements file must hold a JSON object: {path}")
        statements = {
            str(name): [str(item) for item in items]
            for name, items in raw.items()
            if isinstance(items, list)
        }
        return cls(statements, min_similarity=min_similarity)

    def corroborates(self, claim: str, source: TrustedSource) -> bool:
        claim_words = significant_words(claim)
        if not claim_words:
            return False
        for statement in self.statements.get(source.name, []):
            common = claim_words & significant_words(statement)
            if len(common) / len(claim_words) >= self.min_similarity:
                return True
        return False


class CorroborationVerdict(BaseModel):
    model_config = ConfigDict(extra="ignore")

    corroborates: bool
    rationale: str = ""


class OpenAIFactChecker:
    """Ask a chat-completions model whether a source supports a claim."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 8.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        if not api_key:
            raise FactCheckError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def corroborates(self, claim: str, source: TrustedSource) -> bool:
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "You are a fact checker. Decide whether the named source, as of its "
                        "published material, supports the claim. Answer in JSON."
                    ),
                },
                {
                    "role": "user",
                    "content": (
                        f"Claim: {claim}\n"
                        f"Source: {source.name} ({source.source_type})"
                        + (f" {source.url}" if source.url else "")
                    ),
                },
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "corroborationverdict",
                    "strict": False,
                    "schema": CorroborationVerdict.model_json_schema(),
                },
            },
        }
        response_json = self._request_with_retry(payload)
        content = _extract_content(response_json)
        try:
            verdict = CorroborationVerdict.model_validate(json.loads(content))
        except ValueError as exc:
            raise FactCheckError(f"Unparseable fact-check verdict: {content[:200]}") from exc
        return verdict.corroborates

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError) as exc:
                last_error = exc
                logger.warning(
                    "fact_check request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        raise FactCheckError(f"Fact-check request failed: {last_error}")

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        with request.urlopen(req, timeout=self.timeout_s) as response:
            body = response.read().decode("utf-8")
        return json.loads(body)


def _extract_content(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices", [])
    if not choices:
        raise FactCheckError("Fact-check response did not contain choices")
    content = choices[0].get("message", {}).get("content", "")
    if isinstance(content, str) and content.strip():
        return content
    raise FactCheckError("Fact-check response content could not be parsed as text")


def build_fact_checker(settings: Settings) -> FactChecker | None:
    """Resolve the configured fact-check mode.

    LLM mode falls back to the deterministic checker when no key is set, and
    the deterministic checker needs a statements file. ``None`` means the
    capability is unavailable, which validation scores as zero.
    """
    mode = settings.fact_check_mode.lower()
    if mode == "llm":
        api_key = settings.resolved_openai_api_key()
        if api_key and settings.llm_provider == "openai":
            return OpenAIFactChecker(
                api_key=api_key,
                model=settings.llm_model,
                base_url=settings.llm_base_url,
                timeout_s=settings.llm_timeout_s,
                max_retries=settings.llm_max_retries,
                backoff_s=settings.llm_backoff_s,
            )
        logger.warning("fact_check event=llm_unavailable fallback=deterministic")

    if settings.source_statements_path:
        return TermOverlapFactChecker.from_file(
            settings.source_statements_path,
            min_similarity=settings.fact_check_min_similarity,
        )
    return None
