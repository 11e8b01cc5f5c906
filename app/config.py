from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Postgres
    DATABASE_URL: str = "postgresql://localhost:5432/shelfgraph"

    # Redis - when unset, jobs run inline and responses are not cached
    REDIS_URL: str | None = None
    REDIS_MAX_CONNECTIONS: int = 20

    # Auth (token issuance lives outside this service)
    AUTH_JWKS_URL: str = "http://localhost:9999/.well-known/jwks.json"
    AUTH_AUDIENCE: str = "authenticated"

    # Twitter / X
    TWITTER_API_BASE: str = "https://api.twitter.com/2"
    TWITTER_BEARER_TOKEN: str | None = None

    # Goodreads
    GOODREADS_BASE_URL: str = "https://www.goodreads.com"
    GOODREADS_USE_MOBILE_API: bool = False
    GOODREADS_SCRAPER_DELAY_MS: int = 1000
    GOODREADS_API_DELAY_MS: int = 500

    # Fetcher
    RESPONSE_CACHE_TTL_SECONDS: int = 24 * 60 * 60
    RATE_LIMIT_FALLBACK_SECONDS: float = 60.0
    RATE_LIMIT_MAX_WAIT_SECONDS: float = 15 * 60.0
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Resolution
    RESOLUTION_CACHE_VALIDITY_DAYS: int = 30
    ACTIVITY_READ_SHELF_LIMIT: int = 20

    # Worker
    WORKER_POLL_TIMEOUT_SECONDS: int = 1

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def queue_enabled(self) -> bool:
        """Durable queue dispatch is only available with Redis configured."""
        return bool(self.REDIS_URL)

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 2,
                    "max_size": 8,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
