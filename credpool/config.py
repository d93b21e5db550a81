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
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Credential Pool API"
    api_version: str = "0.1.0"
    api_description: str = "Shared OAuth account pools for Kiro and Qwen"

    # Security
    admin_api_key: str = ""  # Bearer key that grants admin access

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "credential-pool-api"

    # Credential refresh
    refresh_safety_margin_seconds: int = 300  # Renew when expiring within 5 minutes
    refresh_timeout_seconds: float = 30.0
    default_expires_in_seconds: int = 3600  # Used when the provider omits expires_in

    # Provider endpoints
    qwen_token_url: str = "https://chat.qwen.ai/api/v1/oauth2/token"
    qwen_client_id: str = "f0304373b74a44d2b584a3fb70ca9e56"  # Qwen Code public client
    kiro_region: str = "us-east-1"
    kiro_social_refresh_url: str = "https://prod.{region}.auth.desktop.kiro.dev/refreshToken"
    kiro_idc_token_url: str = "https://oidc.{region}.amazonaws.com/token"

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

        if not self.admin_api_key:
            errors.append("ADMIN_API_KEY is required but empty or missing")

        if self.refresh_safety_margin_seconds < 0:
            errors.append("REFRESH_SAFETY_MARGIN_SECONDS must not be negative")

        if self.refresh_timeout_seconds <= 0:
            errors.append("REFRESH_TIMEOUT_SECONDS must be positive")

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
    def refresh_safety_margin_ms(self) -> int:
        """Safety margin in epoch-millisecond units."""
        return self.refresh_safety_margin_seconds * 1000


# Global settings instance - validates at import time
settings = Settings()
