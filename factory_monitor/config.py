from pydantic import AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    SERVICE_PORT: int = 8080
    LOG_JSON: bool = True
    # Event store selection: "memory" or "redis"
    STORE_ADAPTER: Literal["memory", "redis"] = "memory"
    REDIS_URL: AnyUrl | None = None
    REDIS_KEY_PREFIX: str = "factory"
    # Ingestion rules
    MAX_DURATION_MS: int = 6 * 60 * 60 * 1000
    FUTURE_TOLERANCE_MINUTES: int = 15
    MAX_CONFLICT_RETRIES: int = 5
    # Aggregation
    HEALTHY_RATE_THRESHOLD: float = 2.0
    # Request limits
    MAX_BATCH_SIZE: int = 10_000
    MAX_REQUEST_SIZE: int = 10 * 1024 * 1024

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
