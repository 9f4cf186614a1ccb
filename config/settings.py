"""Project settings

All tunables live here instead of being hard-coded in services.
Values are read from environment variables or a local .env file.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class FastAPISettings(BaseSettings):
    """Application settings (environment overridable)"""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Basics
    APP_NAME: str = "Tribe Calendar Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENV: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./tribe_calendar.db"

    # Security
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "./logs"
    LOG_FILE_OUTPUT: bool = True
    LOG_ALERT_OUTPUT: bool = True

    # Redis (change feed fan-out and shared overlay cache)
    REDIS_ENABLED: bool = False
    REDIS_CHANGE_CHANNEL: str = "calendar:changes"

    # Calendar engine
    CALENDAR_TIMEZONE: str = "UTC"
    QUERY_DEADLINE_SECONDS: float = 5.0
    ORACLE_TIMEOUT_SECONDS: float = 2.0
    RECURRENCE_MAX_ITERATIONS: int = 100_000
    EXPANSION_CACHE_SIZE: int = 5000

    # Presence / tribe pulse
    PRESENCE_GRACE_MINUTES: int = 120
    PULSE_POLL_SECONDS: int = 30

    # Store retry
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_DELAY: float = 0.2


@lru_cache()
def get_fastapi_settings() -> FastAPISettings:
    """Return the cached settings instance"""
    return FastAPISettings()


# Convenience export
fastapi_settings = get_fastapi_settings()
