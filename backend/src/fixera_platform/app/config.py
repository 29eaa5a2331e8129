"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./fixera_platform.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"
    frontend_url: str = "https://fixera.com"

    # Scheduling
    schedule_horizon_days: int = 180
    default_min_resources: int = 1
    default_min_overlap_percentage: float = 90.0
    min_lead_time_hours: float = 0.0

    # Escrow / payments
    stripe_secret_key: str = ""
    payment_webhook_secret: str = ""  # shared token expected in X-Webhook-Token
    default_currency: str = "EUR"
    supported_currencies: str = "EUR,USD,GBP,CAD,AUD"
    default_vat_rate: float = 0.0
    platform_commission_percent: float = 10.0
    payment_capture_max_attempts: int = 3
    payment_capture_backoff_seconds: float = 0.5
    payment_authorization_ttl_hours: int = 168  # card holds lapse after 7 days
    payment_monitor_interval_minutes: int = 15

    # Notifications
    sendgrid_api_key: str = ""
    notification_from_email: str = ""

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin (LAN IPs, etc.).
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def supported_currencies_list(self) -> list[str]:
        return [c.strip().upper() for c in self.supported_currencies.split(",") if c.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
