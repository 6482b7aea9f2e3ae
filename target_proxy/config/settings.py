from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 2027
    targets_path: str = str(Path.home() / ".target-proxy" / "targets.yaml")
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 60.0
    upstream_write_timeout_seconds: float = 60.0
    upstream_pool_timeout_seconds: float = 5.0
    oauth_token_timeout_seconds: float = 15.0
    oauth_expiry_margin_seconds: float = 15.0
    oauth_single_flight: bool = True
    proxy_audit_log_enabled: bool = False
    proxy_audit_log_path: str = "logs/proxy_events.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def resolved_targets_path(self) -> Path | None:
        value = self.targets_path.strip()
        if not value:
            return None
        return Path(value).expanduser()


@lru_cache
def get_settings() -> Settings:
    return Settings()
