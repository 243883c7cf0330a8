"""Runtime settings and logging setup."""

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Settings for the terminal charge engine, read from the environment."""

    database_url: Optional[str] = Field(default=None)
    redis_url: str = Field(default="redis://localhost:6379/0")
    api_key: Optional[str] = Field(default=None)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")

    gateway_provider: Literal["bold", "simulator"] = Field(default="bold")
    bold_environment: Literal["sandbox", "production"] = Field(default="sandbox")
    bold_client_id: Optional[str] = Field(default=None)
    bold_client_secret: Optional[str] = Field(default=None)
    bold_webhook_secret: str = Field(default="")
    bold_terminal_prefix: str = Field(default="")
    currency: str = Field(default="COP", min_length=3, max_length=3)

    # Payment window: a pending charge older than this is declared timed out.
    payment_window_seconds: int = Field(default=120, gt=0)
    idempotency_ttl_seconds: int = Field(default=300, gt=0)
    idempotency_wait_attempts: int = Field(default=20, ge=0)
    idempotency_wait_interval_seconds: float = Field(default=0.1, ge=0.0)
    assignment_cache_ttl_seconds: int = Field(default=60, gt=0)
    terminal_status_ttl_seconds: int = Field(default=30, gt=0)
    assignment_max_age_hours: int = Field(default=24, gt=0)
    reconcile_grace_seconds: int = Field(default=90, ge=0)
    reconcile_interval_seconds: float = Field(default=30.0, gt=0.0)
    reconcile_lock_ttl_seconds: int = Field(default=300, gt=0)
    poll_timeout_seconds: float = Field(default=10.0, gt=0.0)
    gateway_timeout_seconds: float = Field(default=30.0, gt=0.0)
    access_token_safety_margin_seconds: int = Field(default=60, ge=0)
    test_charge_amount: int = Field(default=100, gt=0)
    # Run the reconciliation scheduler inside the API process
    scheduler_enabled: bool = Field(default=False)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def busy_lease_ttl_seconds(self) -> int:
        """A terminal stays leased for exactly one payment window.

        Lease expiry only self-heals crashed holders; the timeout transition
        itself is decided by the reconciliation sweep from ``created_at``.
        """
        return self.payment_window_seconds


@lru_cache
def get_settings() -> Settings:
    """Return cached settings."""
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Configure root logging level and format."""
    logging.basicConfig(level=settings.log_level, format=_LOG_FORMAT)
    logging.getLogger().setLevel(settings.log_level)
