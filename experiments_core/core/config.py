"""
Application configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "experiments-core"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database (SQLAlchemy store)
    DATABASE_URL: str = "sqlite:///./experiments.db"
    DB_ECHO: bool = False

    # Feature flag cache
    FLAG_CACHE_TTL_SECONDS: float = 30.0  # Snapshot of active flags is reloaded after this

    # Experiment defaults applied at creation when the request leaves them unset
    EXPERIMENT_DEFAULT_MIN_SAMPLE_SIZE: int = 100
    EXPERIMENT_DEFAULT_CONFIDENCE_LEVEL: float = 0.95

    # Listing
    FLAG_LIST_DEFAULT_LIMIT: int = 50
    EXPERIMENT_LIST_DEFAULT_LIMIT: int = 20

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()
