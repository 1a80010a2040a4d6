"""Application settings and configuration."""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_data_dir() -> Path:
    """Return the per-user directory holding todos, queue and session files."""
    base = os.environ.get("XDG_CONFIG_HOME")
    if base:
        return Path(base) / "Planky"
    return Path.home() / ".config" / "Planky"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLANKY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default_factory=default_data_dir)
    todos_file: str = "todos.json"
    pending_ops_file: str = "pending_ops.json"
    session_file: str = "session.json"

    # Logging
    log_level: str = "INFO"
    log_file: str = "planky.log"
    diagnostics_enabled: bool = False  # Record HTTP request/response pairs
    diagnostics_file: str = "http_diagnostics.log"
    diagnostics_max_body: int = 4000

    # Remote
    request_timeout: float = 15.0
    login_attempts: int = 3

    # Sync scheduling
    poll_interval: float = 15.0  # Seconds between scheduled sync cycles
    batch_size: int = 25  # Outbound ops applied per cycle
    retry_base_delay: float = 2.0  # Per-op backoff: base * 2^(attempts-1)
    retry_max_delay: float = 300.0
    backoff_interval: float = 60.0  # Coordinator pause after an unexpected error

    # Persistence
    write_attempts: int = 3

    def path_for(self, name: str) -> Path:
        """Resolve a file name inside the data directory."""
        return Path(self.data_dir) / name


# Global settings instance
settings = Settings()
