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
    """Taskclock configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/taskclock.db"))

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    dispatch_interval_seconds: float = Field(default=30.0, gt=0)
    due_batch_size: int = Field(default=100, ge=1)

    # Executor
    executor_concurrency: int = Field(default=4, ge=1)
    execution_timeout_seconds: float | None = Field(default=600.0)

    # Agent runner, as "package.module:callable"
    agent_runner: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
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


settings = Settings()
