from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

    Relative queue log files are resolved against it:
      - APP_ROOT when set
      - otherwise the current working directory
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    # Unset: log to stdout only.
    log_dir: Path | None = Field(default=None, alias="LOG_DIR")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    # --- queue ---
    queue_logger: str = Field(default="queue", alias="QUEUE_LOGGER")
    # Name of the durable store to bind to; unset means in-memory only.
    queue_store: str | None = Field(default=None, alias="QUEUE_STORE")
    queue_channel: str = Field(default="durable.queue", alias="QUEUE_CHANNEL")
    queue_batch: int = Field(default=10, alias="QUEUE_BATCH")
    # Relative to APP_ROOT unless absolute. Empty disables persistence.
    queue_log_file: str = Field(default="config/.queue", alias="QUEUE_LOG_FILE")
    queue_log_persist_ms: int = Field(default=1000, alias="QUEUE_LOG_PERSIST_MS")

    # --- redis store ---
    redis_health_interval_s: float = Field(default=2.0, alias="REDIS_HEALTH_INTERVAL_S")
