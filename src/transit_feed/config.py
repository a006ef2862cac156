"""Application configuration via environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "Transit Feed Explorer API"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Derived store cache
    cache_dir: Path = Field(
        default=Path(".feed-cache"),
        validation_alias=AliasChoices("FEED_CACHE_DIR", "CACHE_DIR"),
    )
    cache_max_entries: int = Field(default=1, ge=1)
    fingerprint_window_bytes: int = Field(default=10 * MIB, ge=1)

    # Extraction strategy
    streaming_archive_threshold_bytes: int = Field(default=100 * MIB, ge=0)
    streaming_member_ceiling_bytes: int = Field(default=200 * MIB, ge=0)
    stream_chunk_size: int = Field(default=1 * MIB, ge=1)
    progress_row_interval: int = Field(default=100_000, ge=1)

    # Store builder
    import_batch_size: int = Field(
        default=5000,
        ge=1,
        le=100_000,
        validation_alias=AliasChoices("IMPORT_BATCH_SIZE", "GTFS_IMPORT_BATCH_SIZE"),
    )

    # Query layer
    query_timeout_sec: float = Field(default=15.0, gt=0)
    default_page_size: int = 50
    max_page_size: int = 200

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def missing_required_env(self) -> list[str]:
        """Return required settings that are missing or empty."""
        missing: list[str] = []

        if not str(self.cache_dir):
            missing.append("FEED_CACHE_DIR")

        return missing


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
