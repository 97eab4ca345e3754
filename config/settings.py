"""Credit Ledger – Application Configuration.

Pydantic Settings, loaded from .env file or environment variables.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000

    # --- Database ---
    database_url: str = ""

    # --- Plans ---
    # Plan a cancelled subscription falls back to. If the slug is not in the
    # catalog the cheapest active plan is used instead.
    default_plan_slug: str = "starter"
    approaching_limit_threshold: float = 0.1

    # --- Engine surcharges (credits per engine-bridge action) ---
    mcp_surcharge_rates: dict[str, Decimal] = {"playcanvas": Decimal("0.1")}
    known_engine_types: list[str] = ["unreal", "playcanvas"]

    # --- Ledger ---
    tenant_lock_timeout_seconds: float = 5.0
    history_page_size: int = 50
    history_max_page_size: int = 200

    # --- Stripe ---
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
