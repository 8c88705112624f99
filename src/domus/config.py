from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./domus.db"
    state_dir: Path = Path.home() / ".domus"  # session + sync state, outside the record DB

    sync_base_url: str = "http://localhost:3000"
    sync_request_timeout_s: float = 60.0
    sync_max_retries: int = 3
    sync_retry_base_delay_s: float = 1.0
    sync_retry_max_delay_s: float = 30.0
    sync_push_chunk_size: int = 100
    sync_pull_page_size: int = 500

    auto_sync_interval_minutes: int = 5
    sync_debounce_seconds: float = 3.0
    conflict_policy: str = "remote_wins"  # or "newer_wins"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
