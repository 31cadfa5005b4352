from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Construction-time options. Nothing here is re-read at runtime."""

    model_config = SettingsConfigDict(
        env_prefix="CONVEYOR_",
        env_file=".env",
        extra="ignore",
    )

    # Worker pool
    WORKER_COUNT: int = Field(default=4, gt=0)
    QUEUE_CAPACITY: int = Field(default=64, gt=0)

    # Concurrency limiter (0 disables it)
    LIMITER_CAPACITY: int = Field(default=0, ge=0)

    # Circuit breaker
    FAILURE_THRESHOLD: int = Field(default=5, gt=0)
    OPEN_DURATION_SECONDS: float = Field(default=30.0, gt=0)

    # Retry
    RETRY_MAX_ATTEMPTS: int = Field(default=3, gt=0)
    RETRY_BASE_DELAY_SECONDS: float = Field(default=0.1, ge=0)
    RETRY_MULTIPLIER: float = Field(default=2.0, ge=1.0)
    RETRY_MAX_DELAY_SECONDS: float | None = Field(default=None, gt=0)

    # Batching
    BATCH_CAPACITY: int = Field(default=32, gt=0)
    BATCH_MAX_WAIT_SECONDS: float = Field(default=0.05, gt=0)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # True for production (structured JSON), False for dev (colored)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
