import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_VERSION: str = "2023-10-16"
    STRIPE_PRICE_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ANNUAL: Optional[str] = None
    # Only used when an existing subscription is moved to the unlimited plan
    STRIPE_PRICE_UNLIMITED: Optional[str] = None
    BILLING_CURRENCY: str = "gbp"

    # Customer description marker, e.g. "App user: <uuid>"
    CUSTOMER_MARKER_LABEL: str = "App user"
    DEFAULT_CUSTOMER_NAME: str = "Member"

    # Referral commission side effect
    COMMISSION_QUEUE_ENABLED: bool = False
    REDIS_URL: str = "redis://localhost:6379"
    AFFILIATE_COMMISSION_URL: Optional[str] = None
    AFFILIATE_COMMISSION_TOKEN: Optional[str] = None
    AFFILIATE_COMMISSION_TIMEOUT_SECONDS: float = 10.0

    # Monthly allocation job
    ALLOCATION_DEDUP_HOURS: int = 24

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("entitlement_sync")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]
    if getattr(cfg, "COMMISSION_QUEUE_ENABLED", False):
        required_keys.append("REDIS_URL")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
