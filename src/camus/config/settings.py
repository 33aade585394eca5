"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "camus"
    app_env: str = "dev"
    app_debug: bool = False
    log_level: str = "INFO"
    database_url: str = ""
    backend_endpoint: str = ""
    backend_timeout_s: float = Field(default=30.0, ge=0.5)
    callback_endpoint: str = ""
    public_base_url: str = ""
    poll_interval_s: float = Field(default=5.0, gt=0.0)
    failed_route: str = "/agents/{id}"
    demo_case_ids: list[str] = Field(default_factory=list)
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=15.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="CAMUS_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_backend_endpoint(self) -> str:
        return (self.backend_endpoint or os.getenv("BACKEND_ENDPOINT", "")).rstrip("/")

    def resolved_callback_endpoint(self) -> str:
        return (self.callback_endpoint or os.getenv("CALLBACK_ENDPOINT", "")).rstrip("/")

    def resolved_public_base_url(self) -> str:
        return (self.public_base_url or os.getenv("NEXTAUTH_URL", "")).rstrip("/")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
