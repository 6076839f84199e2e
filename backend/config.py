"""
Configuration management for the BookScape backend.

Loads settings from .env via pydantic-settings.

Notes:
    - PayPal credentials are only required once a checkout hits the gateway
    - validate_production_settings() enforces strict CORS and live PayPal in production
    - RECONCILIATION_POLICY decides what happens when a capture cannot be confirmed
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)

PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"
PAYPAL_LIVE_URL = "https://api-m.paypal.com"

RECONCILIATION_POLICIES = ("manual_review", "optimistic")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/bookstore.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"
    app_base_url: str = "http://localhost:3000"   # where PayPal sends the browser back
    frontend_url: str = "http://localhost:3000"   # used in newsletter links
    brand_name: str = "BookScape"

    # ── Auth (JWT issued by the identity provider) ──────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "bookscape-auth"
    jwt_access_ttl_minutes: int = 60

    # ── PayPal ──────────────────────────────────────────────────────
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_base_url: str = PAYPAL_SANDBOX_URL
    paypal_currency: str = "USD"
    paypal_timeout_seconds: float = 15.0

    # ── Checkout reconciliation ─────────────────────────────────────
    # manual_review: unconfirmed captures park the order in needs_reconciliation
    # optimistic:    unconfirmed captures still finalize, flagged with a warning
    reconciliation_policy: str = "manual_review"

    # ── SMTP (newsletter + transactional mail) ──────────────────────
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_start_tls: bool = True

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

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
    def paypal_return_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/checkout/success"

    @property
    def paypal_cancel_url(self) -> str:
        return f"{self.app_base_url.rstrip('/')}/cart"

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup. Raises ValueError on unsafe production config,
        only logs warnings elsewhere.
        """
        if self.reconciliation_policy not in RECONCILIATION_POLICIES:
            raise ValueError(
                f"RECONCILIATION_POLICY must be one of {', '.join(RECONCILIATION_POLICIES)}, "
                f"got {self.reconciliation_policy!r}"
            )

        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to verify access tokens from the identity provider."
                )
            if not self.paypal_client_id or not self.paypal_client_secret:
                raise ValueError(
                    "PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET must be set in production."
                )
            if self.paypal_base_url.rstrip("/") != PAYPAL_LIVE_URL:
                raise ValueError(
                    f"PAYPAL_BASE_URL must be {PAYPAL_LIVE_URL} in production."
                )
            if self.reconciliation_policy == "optimistic":
                logger.warning(
                    "⚠️  RECONCILIATION_POLICY=optimistic: unconfirmed captures will be "
                    "marked paid (flagged with reconciliation warnings)"
                )
            logger.info("✅ Production settings validated")
        else:
            warnings = []
            if not self.paypal_client_id or not self.paypal_client_secret:
                warnings.append("PayPal credentials missing (checkout will fail)")
            if not self.smtp_host:
                warnings.append("SMTP_HOST missing (newsletter mail disabled)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
