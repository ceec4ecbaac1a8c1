"""
Session core configuration.

Extends common BaseAppSettings with backend, lock and loading timings.
All durations named ``*_MS`` are milliseconds.
"""

from functools import lru_cache

from common.config import BaseAppSettings


class Settings(BaseAppSettings):
    """Session core settings."""

    # ==========================================================================
    # Backend API
    # ==========================================================================
    API_BASE_URL: str = "http://localhost:5002"
    API_TIMEOUT_SECONDS: float = 10.0
    API_MAX_RETRIES: int = 1  # transient failures only; 4xx never retried
    API_RETRY_BACKOFF_SECONDS: float = 0.5

    # ==========================================================================
    # Session
    # ==========================================================================
    TOKEN_REFRESH_THRESHOLD_SECONDS: int = 300
    SESSION_VALIDATION_INTERVAL_SECONDS: int = 300

    # ==========================================================================
    # Accounts
    # ==========================================================================
    MAX_ACCOUNTS: int = 5
    ACCOUNT_AUDIT_LOG_LIMIT: int = 50
    ACCOUNT_SWITCH_REQUIRE_BIOMETRIC: bool = True

    # ==========================================================================
    # App Lock
    # ==========================================================================
    APP_LOCK_BACKGROUND_THRESHOLD_MS: int = 180_000
    APP_LOCK_SESSION_TIMEOUT_MS: int = 1_800_000
    APP_LOCK_MAX_ATTEMPTS: int = 5
    APP_LOCK_LOCKOUT_BASE_MS: int = 30_000
    PIN_LENGTH: int = 6
    PIN_HASH_ROUNDS: int = 12

    # ==========================================================================
    # Wallet
    # ==========================================================================
    WALLET_SESSION_TIMEOUT_MS: int = 300_000

    # ==========================================================================
    # Loading
    # ==========================================================================
    LOADING_OPERATION_EXPIRATION_MS: int = 30_000
    LOADING_TRANSITION_DELAY_MS: int = 300

    def validate_required(self) -> None:
        """
        Validate settings on top of the base checks.

        Raises:
            ValueError: If a setting is out of range
        """
        super().validate_required()

        errors = []
        if self.MAX_ACCOUNTS < 1:
            errors.append("MAX_ACCOUNTS must be at least 1")
        if self.API_MAX_RETRIES < 0:
            errors.append("API_MAX_RETRIES cannot be negative")
        if self.APP_LOCK_MAX_ATTEMPTS < 1:
            errors.append("APP_LOCK_MAX_ATTEMPTS must be at least 1")

        if errors:
            raise ValueError("Configuration errors:\n- " + "\n- ".join(errors))


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
