from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Environment variables take precedence over the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Relational database holding the contact directory - required
    DATABASE_URL: str

    # Logging Configuration - required
    LOG_LEVEL: str

    # Hosted message store location (schema-less keyed records)
    MESSAGE_STORE_URL: str = "sqlite://"

    # Seconds to wait on a message store call before giving up
    STORE_TIMEOUT_SECONDS: float = 10.0

    # Default page size for recent conversation messages
    RECENT_MESSAGES_LIMIT: int = 50


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
