"""Process-level settings loaded from UPSCALER_* environment variables / .env file."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./data/db/upscaler.db"

    # Fernet key used to encrypt stored API keys
    secret_key_file: str = "data/secret.key"

    # Topaz API
    api_base_url: str = "https://api.topazlabs.com"

    # Logging
    log_dir: str = "data/logs"

    model_config = SettingsConfigDict(
        env_prefix="UPSCALER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
