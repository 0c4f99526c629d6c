"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_env: str = "development"
    app_debug: bool = False
    app_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = ""  # Required - no insecure default
    database_pool_size: int = 10
    database_auto_create: bool = False

    # Redis / Celery
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # GitHub
    github_token: str = ""
    github_webhook_secret: str = ""
    github_api_url: str = "https://api.github.com"

    # Cron / manual trigger auth
    cron_secret: str = ""
    cron_trigger_header: str = "x-cron-trigger"

    # Object storage (Supabase Storage compatible REST API)
    storage_url: str = "http://localhost:54321"
    storage_service_key: str = ""
    storage_bucket: str = "repo-files"
    storage_max_file_bytes: int = 10 * 1024 * 1024

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_embedding_model: str = "text-embedding-004"
    embedding_dimensions: int = 768

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200
    max_chunks: int = 10000

    # Tracked documentation
    tracked_extensions: List[str] = [".md"]
    tracked_path_prefix: str = ""
    core_doc_files: List[str] = [
        "projectbrief.md",
        "techContext.md",
        "systemPatterns.md",
        "productContext.md",
        "activeContext.md",
        "progress.md",
    ]
    analysis_stale_after_minutes: int = 60

    # Synchronization
    sync_batch_size: int = 3
    scan_lock_minutes: int = 60
    webhook_lock_minutes: int = 30
    sanity_lock_minutes: int = 120
    lock_claim_attempts: int = 3
    lock_retry_delay: float = 0.2

    # Webhook job queue
    webhook_processing_mode: Literal["queue", "inline"] = "queue"
    webhook_job_batch_size: int = 5
    webhook_job_max_retries: int = 3
    webhook_job_stale_minutes: int = 30

    # Retention
    chunk_retention_days: int = 30
    cleanup_batch_size: int = 1000

    # Live progress stream
    stream_max_seconds: float = 55.0
    stream_poll_seconds: float = 2.0
    stream_heartbeat_seconds: float = 15.0

    # Retry
    retry_attempts: int = 3
    retry_base_delay: float = 1.0

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    @field_validator("database_url", mode="after")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Ensure database URL is set."""
        if not v:
            raise ValueError("database_url must be set via DATABASE_URL environment variable")
        return v

    @field_validator("chunk_overlap", mode="after")
    @classmethod
    def validate_overlap(cls, v: int) -> int:
        if v < 0:
            raise ValueError("chunk_overlap must not be negative")
        return v

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
