"""Configuration from environment (no hardcoded secrets)."""

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Backend settings from env."""

    model_config = SettingsConfigDict(env_prefix="SYNCVAULT_", extra="ignore")

    # Storage: one namespace directory per user under this base
    storage_base_path: Path = Path("/app/data")
    db_path: Path = Path("/data/syncvault.db")

    # JWT (tokens are issued by the auth service; we only verify them)
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # CORS: comma-separated string so pydantic-settings does not try to JSON-decode it
    cors_origins: str = "http://localhost:5173"

    @property
    def cors_origins_list(self) -> List[str]:
        """CORS origins as a list (split on comma)."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or [
            "http://localhost:5173"
        ]

    # Change notifications
    notify_queue_size: int = 10
    pong_wait_seconds: float = 60.0
    write_wait_seconds: float = 10.0

    @property
    def ping_period_seconds(self) -> float:
        """Keepalive interval; must stay below pong_wait_seconds."""
        return self.pong_wait_seconds * 9 / 10

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()
