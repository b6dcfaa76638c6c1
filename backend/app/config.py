"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Automation Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflows.db"
    SQLALCHEMY_ECHO: bool = False

    # Event bus (Redis pub/sub); empty disables the listener
    REDIS_URL: str = ""
    EVENT_BUS_CHANNEL: str = "workflow-events"

    # Execution engine
    ENGINE_MAX_CONCURRENCY: int = 10
    DEFAULT_LOOP_MAX_ITERATIONS: int = 1000
    DEFAULT_RUN_TIMEOUT_SECONDS: float = 3600.0
    RECOVER_ON_STARTUP: bool = True

    # Retry defaults (milliseconds)
    RETRY_MAX_RETRIES: int = 3
    RETRY_INITIAL_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 60000
    RETRY_EXPONENTIAL_BASE: float = 2.0
    RETRY_BACKOFF_MULTIPLIER: float = 1.5
    RETRY_JITTER: bool = True

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_WINDOW_SECONDS: float = 60.0

    # Conditional evaluator
    CONDITION_CACHE_SIZE: int = 1000

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_DEFAULT_TIMEZONE: str = "UTC"
    SCHEDULER_UPCOMING_LIMIT: int = 10

    # Webhooks / outbound HTTP
    WEBHOOK_SIGNATURE_TOLERANCE_SECONDS: int = 300
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Notifications for the `notify` error policy; empty logs only
    NOTIFY_WEBHOOK_URL: str = ""
    NOTIFY_WEBHOOK_SECRET: str = ""

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

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
