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
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "AdGenius Licensing API"
    api_version: str = "0.1.0"
    api_description: str = "JVZoo IPN ingestion, licenses and credit entitlements"
    environment: str = "development"  # development, staging or production
    public_base_url: str = "http://localhost:8000"

    # JVZoo IPN shared secret (JVZoo "Secret Key" in the vendor settings)
    jvzoo_secret_key: str = ""

    # Server secret used to derive license keys
    license_secret: str = ""

    # User JWTs are issued by the auth service, we only verify them
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "adgenius-licensing"
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

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
        A missing JVZoo secret outside production is tolerated so local
        development can run; the IPN route then answers "Server configuration error".
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.is_production:
            if not self.jvzoo_secret_key:
                errors.append("JVZOO_SECRET_KEY is required in production")
            if not self.license_secret:
                errors.append("LICENSE_SECRET is required in production")
            if not self.jwt_secret:
                errors.append("JWT_SECRET is required in production")

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
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def ipn_url(self) -> str:
        """URL to paste into the JVZoo product's IPN field."""
        return f"{self.public_base_url.rstrip('/')}/api/jvzoo/ipn"


# Global settings instance - validates at import time
settings = Settings()