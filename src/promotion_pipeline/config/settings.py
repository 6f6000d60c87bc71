"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "memory-promotion-pipeline"
    app_env: str = "dev"
    app_debug: bool = False
    database_url: str = ""

    checkpoint_offsets_s: tuple[float, float, float] = (60.0, 300.0, 1800.0)
    conclusion_timeout_s: float = Field(default=10.0, gt=0.0)

    ledger_base_url: str = ""
    ledger_timeout_s: float = Field(default=5.0, gt=0.0)
    proof_max_retries: int = Field(default=3, ge=0)
    proof_backoff_s: float = Field(default=0.5, ge=0.0)

    fact_check_mode: str = "deterministic"
    fact_check_min_similarity: float = Field(default=0.6, ge=0.0, le=1.0)
    source_statements_path: str = ""
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=8.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    base_reward: float = Field(default=10.0, ge=0.0)
    standard_multiplier: float = Field(default=1.0, ge=0.0)
    valuable_multiplier: float = Field(default=2.5, ge=0.0)
    legendary_multiplier: float = Field(default=5.0, ge=0.0)
    min_corroborating_sources: int = Field(default=2, ge=1)
    legendary_profit_usd: float = 100.0
    legendary_daily_impact_usd: float = 100.0

    weekly_goal_usd: float = Field(default=14_000.0, gt=0.0)
    goal_window_days: int = Field(default=7, ge=1)

    task_archive_size: int = Field(default=1024, ge=1)

    evidence_workers: int = Field(default=8, ge=2)
    conclusion_workers: int = Field(default=8, ge=1)
    reward_workers: int = Field(default=2, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="PROMOTION_PIPELINE_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("PROMOTION_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def level_multipliers(self) -> dict[str, float]:
        return {
            "standard": self.standard_multiplier,
            "valuable": self.valuable_multiplier,
            "legendary": self.legendary_multiplier,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
