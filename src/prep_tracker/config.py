"""Runtime configuration loaded from PREP_* environment variables."""
import logging
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = str(Path.home() / ".prep_tracker" / "offline.db")


class Settings(BaseSettings):
    """
    Tracker settings.

    Every field can be overridden with an environment variable of the same
    name prefixed by ``PREP_`` (for example ``PREP_API_BASE_URL``).
    """

    # Local storage
    db_path: str = DEFAULT_DB_PATH

    # Remote services
    api_base_url: str = "http://localhost:3000/api"
    sync_data_url: str = "http://localhost:8888/.netlify/functions/sync-data"
    request_timeout: float = 10.0
    retry_attempts: int = 3
    retry_max_wait: float = 8.0

    # Sync behaviour
    sync_interval_seconds: float = 300.0
    conflict_threshold_ms: int = 5000
    queue_max_attempts: int = 3
    default_track_days: int = 30
    progress_strategy: str = "merge_latest_wins"
    settings_strategy: str = "user_choice"

    sync_backend: str = "http"  # "http" or "blob"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="PREP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
