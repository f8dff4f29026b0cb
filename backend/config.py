"""
Configuration management for the ExamVault backend.

Loads settings from .env via pydantic-settings.

Security notes:
    - validate_production_settings() enforces strict CORS and requires
      signing secrets for every enabled payment provider in production
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/examvault.db"

    # Whole-transaction retries for transient store errors (locked DB, dropped
    # connection) during order completion and download redemption.
    store_retry_attempts: int = 3

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"
    public_base_url: str = "http://localhost:3000"

    # ── Auth (JWT) ──────────────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "examvault-api"
    jwt_access_ttl_minutes: int = 60 * 24 * 7
    auth_cookie_name: str = "auth-token"

    # ── Payment providers ───────────────────────────────────────────
    enabled_payment_providers: str = "stripe,paypal"
    provider_timeout_seconds: float = 10.0

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""
    paypal_api_base: str = "https://api-m.sandbox.paypal.com"

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # allow unknown .env keys without crashing
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def payment_providers_list(self) -> List[str]:
        """Enabled provider tags, lower-cased."""
        return [
            p.strip().lower()
            for p in self.enabled_payment_providers.split(",")
            if p.strip()
        ]

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to verify buyer access tokens."
                )
            providers = self.payment_providers_list
            if "stripe" in providers and not (self.stripe_secret_key and self.stripe_webhook_secret):
                raise ValueError(
                    "STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET must be set in production "
                    "while the stripe provider is enabled."
                )
            if "paypal" in providers and not (
                self.paypal_client_id and self.paypal_client_secret and self.paypal_webhook_id
            ):
                raise ValueError(
                    "PAYPAL_CLIENT_ID, PAYPAL_CLIENT_SECRET and PAYPAL_WEBHOOK_ID must be set "
                    "in production while the paypal provider is enabled."
                )
            logger.info("✅ Production settings validated")
        else:
            # Warn about insecure settings in non-production
            warnings = []
            if not self.jwt_secret:
                warnings.append("JWT_SECRET is empty (authenticated endpoints will fail)")
            if "stripe" in self.payment_providers_list and not self.stripe_webhook_secret:
                warnings.append("STRIPE_WEBHOOK_SECRET is empty (stripe webhooks rejected)")
            if "paypal" in self.payment_providers_list and not self.paypal_webhook_id:
                warnings.append("PAYPAL_WEBHOOK_ID is empty (paypal webhooks rejected)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
