"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, PostgresDsn, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ENTITY_TYPES = [
    "ORGANIZATION",
    "PERSON",
    "LOCATION",
    "CONCEPT",
    "CREATIVE_WORK",
    "DATE",
    "PRODUCT",
    "EVENT",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============== Environment ==============
    environment: Literal["development", "staging", "production"] = "development"

    # ============== Database ==============
    postgres_user: str = "kgforge"
    postgres_password: str = "kgforge_dev_password"
    postgres_db: str = "kgforge"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url: PostgresDsn | None = None

    @property
    def db_url(self) -> str:
        """Construct database URL from components or use explicit URL."""
        if self.database_url:
            return str(self.database_url)
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def db_url_sync(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.db_url.replace("postgresql+asyncpg://", "postgresql://")

    # ============== Redis ==============
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_url: RedisDsn | None = None

    @property
    def redis_dsn(self) -> str:
        """Construct Redis URL from components or use explicit URL."""
        if self.redis_url:
            return str(self.redis_url)
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    # ============== API ==============
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins_str: str = Field(default="http://localhost:3000,http://localhost:8000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    # ============== AI Backend ==============
    ai_provider: Literal["openai", "ollama", "mock"] = "openai"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    ollama_base_url: str = "http://localhost:11434"
    chat_model: str = "gpt-4.1-mini"
    embedding_model: str = "text-embedding-3-small"
    image_model: str | None = None
    embedding_dimensions: int = Field(default=1536, ge=8, le=8192)
    ai_timeout_seconds: float = Field(default=120.0, ge=1.0)

    # ============== Graph Pipeline ==============
    unit_encoder: str = "o200k_base"
    max_unit_tokens: int = Field(default=500, ge=16, le=32000)
    parallel_ai_requests: int = Field(default=8, ge=1, le=128)
    extraction_max_retries: int = Field(default=3, ge=1, le=10)
    batch_max_files: int = Field(default=20, ge=1, le=1000)
    batch_max_tokens: int = Field(default=200_000, ge=1000)
    bytes_per_token: int = Field(default=4, ge=1)
    default_file_tokens: int = Field(default=2000, ge=1)
    stale_batch_hours: float = Field(default=10.0, gt=0)
    staging_retention_hours: float = Field(default=24.0, gt=0)
    delete_poll_seconds: float = Field(default=2.0, gt=0)
    delete_wait_seconds: float = Field(default=3600.0, gt=0)
    merge_case_sensitive: bool = True
    dedupe_similarity_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    dedupe_max_iterations: int = Field(default=3, ge=1)
    dedupe_batch_size: int = Field(default=300, ge=2)
    default_entity_types: list[str] = Field(default_factory=lambda: list(DEFAULT_ENTITY_TYPES))
    process_time_samples: int = Field(default=20, ge=1, le=500)
    default_ms_per_token: float = Field(default=5.0, gt=0)

    # ============== Storage ==============
    storage_root: str = "./data/files"
    text_cache_ttl_seconds: int = Field(default=3600, ge=0)

    # ============== Locks ==============
    project_lock_ttl_seconds: int = Field(default=600, ge=5)
    project_lock_renew_seconds: int = Field(default=240, ge=1)
    lock_poll_interval_ms: int = Field(default=250, ge=10)

    # ============== Query ==============
    stream_buffer_size: int = Field(default=10, ge=1, le=1000)
    query_tool_max_rounds: int = Field(default=8, ge=1, le=50)
    query_entity_limit: int = Field(default=10, ge=1, le=200)
    query_source_limit: int = Field(default=30, ge=1, le=500)
    enable_clarification: bool = False

    # ============== Celery ==============
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_task_always_eager: bool = False  # Synchronous execution for testing
    stale_sweep_interval_seconds: int = Field(default=900, ge=10)
    staging_cleanup_interval_seconds: int = Field(default=3600, ge=60)

    @property
    def celery_broker(self) -> str:
        """Get Celery broker URL."""
        return self.celery_broker_url or self.redis_dsn

    @property
    def celery_backend(self) -> str:
        """Get Celery result backend URL."""
        return self.celery_result_backend or self.redis_dsn

    # ============== Logging ==============
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    # ============== Computed Properties ==============
    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def stale_batch_seconds(self) -> float:
        """Staleness threshold for processing batches in seconds."""
        return self.stale_batch_hours * 3600


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
