"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Promptly Generation Gateway"
    api_version: str = "0.1.0"
    api_description: str = "Credit-metered AI image generation for Promptly Printed"

    # Storefront auth - HS256 secret shared with the session provider
    auth_jwt_secret: str = ""
    guest_session_cookie: str = "pp_session"

    # Image Provider - Together AI
    together_api_key: str = ""
    together_base_url: str = "https://api.together.xyz/v1"
    provider_timeout_seconds: float = 120.0
    inference_steps: int = 28
    max_image_dimension: int = 1024
    default_ai_model: str = "flux-dev"

    # Credit Configuration
    monthly_credits: int = 50  # Allocated at the start of each month
    welcome_credits: int = 50
    tshirt_purchase_bonus: int = 10  # Per T-shirt purchased
    signup_offer_credits: int = 50

    # Guest Limits
    guest_daily_limit: int = 3
    guest_window_hours: int = 24

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "promptly-generation-gateway"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.together_api_key:
            errors.append("TOGETHER_API_KEY is required but empty or missing")

        if not self.auth_jwt_secret:
            errors.append("AUTH_JWT_SECRET is required but empty or missing")

        if self.max_image_dimension < 8:
            errors.append(f"MAX_IMAGE_DIMENSION must be at least 8, got: {self.max_image_dimension}")

        if self.provider_timeout_seconds <= 0:
            errors.append("PROVIDER_TIMEOUT_SECONDS must be positive")

        if self.guest_daily_limit <= 0:
            errors.append("GUEST_DAILY_LIMIT must be positive")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
