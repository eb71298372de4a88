"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_coordinator import __version__

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "agent-coordinator"
    app_env: str = "dev"
    app_debug: bool = False
    database_url: str = ""

    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_code_model: str = ""
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=30.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    stage_timeout_s: float = Field(default=60.0, gt=0.0)
    default_persona: str = "generalist"

    repo_workdir: str = ""
    repo_analysis_max_concurrency: int = Field(default=4, ge=1)
    repo_main_files_limit: int = Field(default=20, ge=1)
    repo_max_file_bytes: int = Field(default=64_000, ge=1)
    repo_clone_timeout_s: float = Field(default=120.0, gt=0.0)

    experience_retention_days: int = Field(default=30, ge=1)
    min_confidence_for_insight_action: float = Field(default=0.7, ge=0.0, le=1.0)
    periodic_analysis_interval_s: float = Field(default=3600.0, gt=0.0)
    max_experiences_per_analysis_batch: int = Field(default=100, ge=1)
    stale_insight_threshold_days: int = Field(default=90, ge=1)
    system_version: str = __version__

    validated_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    min_samples_for_insight: int = Field(default=3, ge=1)
    confidence_prior_weight: float = Field(default=5.0, gt=0.0)
    low_success_rate_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    high_token_usage_threshold: int = Field(default=4000, ge=1)
    experience_log_workers: int = Field(default=2, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="AGENT_COORDINATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_code_model(self) -> str:
        return self.llm_code_model or self.llm_model


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
