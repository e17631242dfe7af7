"""
Configuration management for the Campus Marketplace fulfillment core.

Loads settings from .env via pydantic-settings.

Notes:
    - Money settings are integer minor units (pesewas), same unit the
      payment gateway uses for its `amount` field.
    - validate_production_settings() fails startup on insecure production config.
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/marketplace.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"

    # ── Auth (JWT issued by the identity service) ───────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "campus-marketplace"
    jwt_access_ttl_minutes: int = 60

    # ── Payment Gateway (Paystack) ──────────────────────────────────
    paystack_secret_key: str = ""
    paystack_webhook_secret: str = ""  # empty => signed with the secret key
    paystack_base_url: str = "https://api.paystack.co"
    payment_callback_url: str = "http://localhost:5000/payments/verify"
    currency: str = "GHS"
    gateway_timeout_seconds: float = 10.0

    # ── Delivery ────────────────────────────────────────────────────
    delivery_fee: int = 500               # minor units per delivery order
    single_active_delivery: bool = True   # an agent holds at most one in_progress job

    # ── Fulfillment Event Bus ───────────────────────────────────────
    event_queue_size: int = 1000
    event_handler_timeout_seconds: float = 5.0

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:8081,http://127.0.0.1:8081"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def webhook_secret(self) -> str:
        """Secret used to sign gateway webhooks (Paystack signs with the secret key)."""
        return self.paystack_webhook_secret or self.paystack_secret_key

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup. Raises ValueError in production,
        logs warnings everywhere else.
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
                    "It is used to verify actor access tokens."
                )
            if not self.paystack_secret_key:
                raise ValueError(
                    "PAYSTACK_SECRET_KEY must be set in production. "
                    "Payments cannot be initialized or verified without it."
                )
            if self.gateway_timeout_seconds <= 0:
                raise ValueError("GATEWAY_TIMEOUT_SECONDS must be positive.")
            logger.info("Production settings validated")
        else:
            warnings = []
            if not self.jwt_secret:
                warnings.append("JWT_SECRET not set (all authenticated calls will fail)")
            if not self.webhook_secret:
                warnings.append("No webhook secret set (every webhook will be rejected)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(w)


# Global settings instance
settings = Settings()
