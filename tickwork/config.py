"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """tickwork configuration. All values come from environment variables."""

    # Relational store (SQLite)
    database_enabled: bool = Field(default=True)
    database_path: Path = Field(default=Path("data/tickwork.db"))

    # Redis cache; an empty URL runs without one
    redis_url: str = Field(default="")
    cache_ttl_seconds: int = Field(default=86400, gt=0)

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    scheduler_task_timeout: float = Field(default=0.0, ge=0)
    demo_tasks: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="TICKWORK_",
        env_file=_env_file(),
        env_file_encoding="utf-8",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    def get_task_timeout(self) -> float | None:
        """Per-task callback timeout in seconds, or None when disabled."""
        return self.scheduler_task_timeout or None


settings = Settings()
