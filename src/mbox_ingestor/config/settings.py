"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MboxIngestorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="MBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Splitting
    chunk_size_mb: float = 500
    chunk_output_dir: Path = Path("data/chunks")
    lock_timeout_seconds: float = Field(default=30, ge=0)
    lock_retry_seconds: float = Field(default=0.1, gt=0)
    stale_lock_seconds: float = Field(default=300, ge=0)

    # State store
    database_path: Path = Path("data/chunk_index.db")

    # Workers
    max_parallel_workers: int = Field(default=4, ge=1)
    resume_on_failure: bool = True
    order_by: Literal["date", "size"] = "date"
    progress_interval: int = Field(default=50, ge=1)
    io_timeout_seconds: float | None = None
    # A processing chunk idle this long is assumed abandoned and may be reclaimed
    stale_chunk_seconds: float = Field(default=300, ge=0)

    # Reading
    buffer_size_kb: int = Field(default=4, ge=1)
    skip_malformed: bool = True

    # Threading
    subject_match_window_days: float = 7
    use_transport_thread_id: bool = True

    # Logging
    log_level: str = "INFO"

    @property
    def chunk_size_bytes(self) -> int:
        """Target chunk size in bytes; zero or less means unbounded."""
        return int(self.chunk_size_mb * 1024 * 1024)

    @property
    def buffer_size_bytes(self) -> int:
        return self.buffer_size_kb * 1024

    def ensure_directories(self) -> None:
        """Create chunk and data directories if they don't exist."""
        self.chunk_output_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
