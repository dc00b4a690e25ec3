"""Centralized configuration via pydantic-settings. Overrides from env or .env."""

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    duckdb_path: Path = Field(default_factory=lambda: PROJECT_ROOT / "data" / "evmdecoder.duckdb")

    # Batch scheduler
    batch_size: int = Field(default=100, gt=0)
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between polls when idle")
    error_backoff: float | None = Field(default=None, description="Seconds to wait after a failed batch")

    # Signature lookup (4byte-compatible API)
    signature_api_url: str = "https://www.4byte.directory/api/v1/signatures/"
    signature_lookup_enabled: bool = True
    signature_lookup_timeout: float = 5.0
    signature_cache_ttl: float | None = None

    # Priority decode
    priority_decode_timeout: float = 10.0
    api_host: str = "0.0.0.0"
    api_port: int = 3001

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
