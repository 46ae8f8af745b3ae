"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "abtest"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./abtest.db"

    # Redis (empty disables the assignment cache)
    redis_url: str = ""
    assignment_cache_ttl: int = 86400  # seconds (1 day)

    # Statistics
    default_confidence_level: float = 0.95
    min_sample_size: int = 30  # participants per arm before significance is claimed

    # Listing
    default_page_size: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
