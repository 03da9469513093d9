from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_HOME = Path.home()


class Settings(BaseSettings):
    router_config_path: str = str(_HOME / ".claude-code-router" / "config.json")
    projects_root: str = str(_HOME / ".claude" / "projects")
    home_root: str = str(_HOME / ".claude-code-router")
    session_usage_max_entries: int = 1000
    session_usage_ttl_seconds: float = 3600.0
    session_project_cache_size: int = 1000
    upstream_timeout_seconds: float = 600.0
    upstream_connect_timeout_seconds: float = 10.0
    event_log_enabled: bool = False
    event_log_path: str = "logs/router_events.jsonl"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
