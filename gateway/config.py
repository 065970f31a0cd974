"""
Application Configuration - Pydantic Settings for type-safe config.

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
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    auto_migrate: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credit Gateway API"
    api_version: str = "1.0.0"
    api_description: str = "Prepaid credit gateway for OpenAI and Anthropic APIs"

    # Upstream providers (master credentials)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"

    # Upstream timeouts (seconds). read bounds both first byte and inter-chunk gaps.
    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 120.0
    upstream_write_timeout: float = 30.0
    upstream_pool_timeout: float = 10.0

    # Pre-flight admission
    default_max_output_tokens: int = 4096

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credit-gateway"

    # Payment Provider - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...
    stripe_subscription_price_id: str = ""  # price_... (inline price when empty)
    subscription_price_minor: int = 1000  # $10.00/month
    subscription_period_days: int = 30
    subscription_grace_days: int = 5
    checkout_success_url: str = "http://localhost:8000/billing?success=1"
    checkout_cancel_url: str = "http://localhost:8000/billing?cancelled=1"
    portal_return_url: str = "http://localhost:8000/billing"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start without a usable store.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.default_max_output_tokens <= 0:
            errors.append("DEFAULT_MAX_OUTPUT_TOKENS must be positive")

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
    def subscription_extension_days(self) -> int:
        """Days a paid subscription period extends access (period + grace)."""
        return self.subscription_period_days + self.subscription_grace_days


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
