# ==== APPLICATION SETTINGS CONFIGURATION ==== #

"""
Application settings configuration for casewatch.

This module provides centralized configuration management using Pydantic Settings
with environment variable loading for the database, the escalation scheduler,
notifications and observability.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


# ==== MAIN SETTINGS CLASS ==== #


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Covers database connectivity, escalation pass tuning, calendar defaults,
    notification routing and tracing export.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    # --► CORE APPLICATION SETTINGS
    APP_ENV: str = "dev"
    SERVICE_NAME: str = "casewatch"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # --► DATABASE CONFIGURATION
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_ECHO: bool = False

    # --► ESCALATION SCHEDULER
    ESCALATION_CHECK_INTERVAL_SECONDS: int = 300
    ESCALATION_WORKER_CONCURRENCY: int = 8
    ESCALATION_RAISE_MAX_ATTEMPTS: int = 3
    ESCALATION_BATCH_LIMIT: int = 5000

    # --► CALENDAR DEFAULTS
    DEFAULT_CALENDAR_TIMEZONE: str = "UTC"

    # --► NOTIFICATIONS
    NOTIFICATION_CHANNEL: str = "email"

    # --► OBSERVABILITY CONFIGURATION
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = None
    OTEL_SERVICE_NAME: str | None = None
    OTEL_RESOURCE_ATTRIBUTES: str | None = None

    # --► PREFECT WORKFLOW ORCHESTRATION
    PREFECT_DEPLOYMENT_NAME: str = "escalation-check"


# ==== GLOBAL SETTINGS INSTANCE ==== #


# Global settings instance for application-wide access
settings = Settings()


def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings: Global application settings instance
    """
    return settings
