"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Credentialing Workflow Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    ENVIRONMENT: str = "development"  # development, staging, production

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflow.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker + result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Workflow deadlines
    WORKFLOW_SLA_DAYS: float = 15.0
    WORKFLOW_SIGNATURE_ALERT_DAYS: float = 5.0
    WORKFLOW_SIGNATURE_EXPIRY_DAYS: float = 7.0
    WORKFLOW_APPROVAL_DEADLINE_DAYS: float = 15.0

    # Queue dispatcher
    WORKFLOW_QUEUE_MAX_ATTEMPTS: int = 3
    WORKFLOW_QUEUE_LEASE_SECONDS: int = 300
    WORKFLOW_QUEUE_BATCH_SIZE: int = 10
    WORKFLOW_RETRY_POLICY: str = "exponential"  # none, fixed, linear, exponential
    WORKFLOW_RETRY_BASE_DELAY: float = 30.0
    WORKFLOW_RETRY_MAX_DELAY: float = 900.0

    # Business-level resubmission
    WORKFLOW_SUBJECT_MAX_RETRIES: int = 3

    # Engine limits
    WORKFLOW_MAX_TRANSITIONS_PER_TURN: int = 25
    WORKFLOW_CONDITION_TIMEOUT_MS: int = 100
    WORKFLOW_CONDITION_MAX_NODES: int = 256

    # External gateways (approval / e-signature services)
    WORKFLOW_GATEWAY_URL: str = ""
    WORKFLOW_GATEWAY_TOKEN: str = ""
    WORKFLOW_GATEWAY_TIMEOUT: float = 10.0
    WORKFLOW_APPROVAL_BACKEND: str = "internal"  # internal | http

    # Notifications
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_ADDRESS: str = "workflow@localhost"
    NOTIFICATION_WEBHOOK_URL: str = ""
    MANAGER_EMAILS: str = ""

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

    @property
    def manager_emails_list(self) -> list[str]:
        """Parse MANAGER_EMAILS string into a list."""
        return [email.strip() for email in self.MANAGER_EMAILS.split(",") if email.strip()]

    def notification_channels_config(self) -> dict:
        """Channel configuration consumed by NotificationManager.configure_channels."""
        config: dict = {}
        if self.SMTP_HOST:
            config["email"] = {
                "smtp_host": self.SMTP_HOST,
                "smtp_port": self.SMTP_PORT,
                "smtp_user": self.SMTP_USER,
                "smtp_password": self.SMTP_PASSWORD,
                "from_address": self.SMTP_FROM_ADDRESS,
            }
        if self.NOTIFICATION_WEBHOOK_URL:
            config["webhook"] = {"url": self.NOTIFICATION_WEBHOOK_URL}
        return config

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
