from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

PAYSTACK_SUPPORTED_DEFAULT_CURRENCIES = {"NGN", "GHS", "ZAR", "USD", "KES"}


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Configuration for the subscription activation engine.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "billing-engine"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Relational store
    DATABASE_URL: str = ""
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Lock + idempotency store
    REDIS_URL: Optional[str] = None

    # Paystack
    PAYSTACK_SECRET_KEY: Optional[str] = None
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_DEFAULT_CURRENCY: str = "USD"
    PAYSTACK_TIMEOUT_SECONDS: float = 30.0
    PAYSTACK_MAX_RETRIES: int = 3

    # Subscription activation engine
    SUBSCRIPTION_LOCK_TIMEOUT_SECONDS: float = 30.0
    SUBSCRIPTION_LOCK_LEASE_SECONDS: float = 30.0
    ACTIVATION_IDEMPOTENCY_TTL_SECONDS: int = 300
    RECENT_ACTIVATION_WINDOW_SECONDS: int = 60
    REFERENCE_MAPPING_TTL_SECONDS: int = 86400

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        if self.TESTING:
            return self

        self._validate_database_config()
        self._validate_billing_config()
        self._validate_engine_config()
        return self

    def _validate_database_config(self) -> None:
        """Validates database and redis connectivity settings."""
        if self.is_production:
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL is required in production.")
            # Locks and idempotency records must be shared across processes.
            if not self.REDIS_URL:
                raise ValueError("REDIS_URL is required in production.")

    def _validate_billing_config(self) -> None:
        """Validates Paystack credentials."""
        default_currency = str(self.PAYSTACK_DEFAULT_CURRENCY or "USD").strip().upper()
        if default_currency not in PAYSTACK_SUPPORTED_DEFAULT_CURRENCIES:
            raise ValueError(
                "PAYSTACK_DEFAULT_CURRENCY must be one of: "
                + ", ".join(sorted(PAYSTACK_SUPPORTED_DEFAULT_CURRENCIES))
            )

        if self.is_production:
            if not self.PAYSTACK_SECRET_KEY or self.PAYSTACK_SECRET_KEY.startswith(
                "sk_test"
            ):
                raise ValueError(
                    "PAYSTACK_SECRET_KEY must be a live key (sk_live_...) in production."
                )

    def _validate_engine_config(self) -> None:
        if self.SUBSCRIPTION_LOCK_TIMEOUT_SECONDS <= 0:
            raise ValueError("SUBSCRIPTION_LOCK_TIMEOUT_SECONDS must be positive.")
        if self.SUBSCRIPTION_LOCK_LEASE_SECONDS <= 0:
            raise ValueError("SUBSCRIPTION_LOCK_LEASE_SECONDS must be positive.")
        if self.ACTIVATION_IDEMPOTENCY_TTL_SECONDS <= 0:
            raise ValueError("ACTIVATION_IDEMPOTENCY_TTL_SECONDS must be positive.")

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
