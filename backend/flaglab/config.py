"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "FlagLab"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./flaglab.db"
    definition_store_timeout_ms: int = 2000  # statement_timeout for PostgreSQL reads

    # Redis (only used by the redis evaluation cache backend)
    redis_url: str = "redis://localhost:6379/0"

    # Evaluation cache
    evaluation_cache_backend: str = "memory"  # "memory" or "redis"
    evaluation_cache_ttl_seconds: int = 86400  # 24 hours

    # Audit records
    evaluation_record_ttl_hours: int = 24

    # CORS
    frontend_url: str = "http://localhost:5173"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
