"""Application configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # API Settings
    APP_NAME: str = "Flowgraph Workflow Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, testing, production

    # Engine Settings
    ENGINE_MAX_CONCURRENCY: int = 0  # 0 = unbounded
    ENGINE_CANCEL_IN_FLIGHT: bool = True
    EXECUTION_HISTORY_LIMIT: int = 1000
    ENGINE_TRACE: bool = False  # DEBUG logs for scheduler and registries

    # Node Settings
    TRANSFORM_DEFAULT_TIMEOUT_MS: int = 5000
    TRANSFORM_MAX_TIMEOUT_MS: int = 300000
    TRANSFORM_MAX_MEMORY_MB: int = 512  # python transforms, 0 = no limit
    HTTP_DEFAULT_TIMEOUT_MS: int = 30000
    HTTP_BLOCK_PRIVATE_NETWORKS: bool = True

    # Integrations
    INTEGRATIONS_DIR: Optional[str] = None

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
