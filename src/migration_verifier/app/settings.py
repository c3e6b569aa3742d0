"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "migration-verifier"
    data_dir: Path = Path(".migration-verifier")
    history_limit: int = Field(default=50, ge=1)
    generation_mode: str = "template"
    execution_mode: str = "simulated"
    generation_timeout_s: float = Field(default=60.0, gt=0)
    execution_timeout_s: float = Field(default=300.0, gt=0)
    simulated_seed: int | None = None
    source_max_chars: int = Field(default=60_000, ge=1)
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=45.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="MIGRATION_VERIFIER_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
