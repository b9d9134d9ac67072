"""
Application Settings for the Billing Reconciliation Engine

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Authority credentials are optional in development so the service can
    boot without them; production requires all of them (see validator).
    """

    # Supabase Configuration (identity/claims store)
    supabase_url: str = "http://localhost:54321"
    supabase_service_role_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:8081",
        "http://localhost:3000",
    ]

    # Card processor (Stripe)
    stripe_secret_key: Optional[str] = None
    stripe_api_version: str = "2023-10-16"

    # Apple App Store
    apple_shared_secret: Optional[str] = None
    apple_verify_url_production: str = "https://buy.itunes.apple.com/verifyReceipt"
    apple_verify_url_sandbox: str = "https://sandbox.itunes.apple.com/verifyReceipt"

    # Google Play (service account JSON is passed inline)
    google_service_account_key: Optional[str] = None
    google_play_package_name: str = "com.cookcam.app"
    google_token_url: str = "https://oauth2.googleapis.com/token"

    # Authority calls
    authority_timeout_seconds: float = 10.0

    # Retry Configuration
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay: float = 10.0

    # Reconciliation
    reconciliation_concurrency: int = 10
    iap_drift_tolerance_seconds: int = 60
    high_error_rate_threshold: float = 0.10
    high_drift_rate_threshold: float = 0.05
    reconciliation_health_days: int = 30
    reconciliation_alert_days: int = 7
    baseline_tier_id: int = 1

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_authority_secrets(self) -> "Settings":
        """Production must be able to reach every authority."""
        if self.environment.lower() != "production":
            return self

        missing = [
            name.upper()
            for name in (
                "supabase_service_role_key",
                "stripe_secret_key",
                "apple_shared_secret",
                "google_service_account_key",
                "database_url",
            )
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(
                f"Missing required settings for production: {', '.join(missing)}"
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
