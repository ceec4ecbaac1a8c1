"""
Base settings class for environment configuration.

Uses Pydantic Settings for automatic environment variable loading.
Extend this class for application-specific settings.

Example:
    from common.config import BaseAppSettings

    class Settings(BaseAppSettings):
        API_BASE_URL: str = "https://api.example.com"

    settings = Settings()
    print(settings.ENVIRONMENT)
"""

import logging
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class BaseAppSettings(BaseSettings):
    """
    Base settings class with common configuration options.

    Automatically loads values from environment variables.
    Extend this class for application-specific settings.
    """

    # ==========================================================================
    # Application Settings
    # ==========================================================================
    APP_NAME: str = "session-core"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # ==========================================================================
    # Logging
    # ==========================================================================
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # Pydantic Settings Configuration
    # ==========================================================================
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow",  # Allow app-specific settings
        case_sensitive=True,
    )

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    def get_log_level(self) -> int:
        """Resolve LOG_LEVEL to a logging level, defaulting to INFO."""
        level = logging.getLevelName(self.LOG_LEVEL.upper())
        return level if isinstance(level, int) else logging.INFO

    def validate_required(self) -> None:
        """
        Validate that required settings are configured.

        Raises:
            ValueError: If required settings are missing
        """
        errors = []

        if self.is_production() and self.DEBUG:
            errors.append("DEBUG must be disabled in production")

        if errors:
            raise ValueError("Configuration errors:\n- " + "\n- ".join(errors))


def configure_logging(level: int = logging.INFO) -> None:
    """Install the process-wide log format. Safe to call more than once."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
