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

    # Wallet / payouts
    MIN_PAYOUT_AMOUNT: int = 500
    EARNING_MATURATION_DAYS: int = 7  # return/dispute window before pending earnings become withdrawable

    # Subscriptions
    DEFAULT_PLAN_ID: str = "starter"
    PLAN_CATALOG_PATH: Optional[str] = None  # JSON file overriding the built-in plan table
    MONTHLY_CYCLE_DAYS: int = 30
    YEARLY_CYCLE_DAYS: int = 365

    # Background sweeps (maturation + scheduled plan changes)
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_BATCH_SIZE: int = 100

    # Operator / internal endpoints
    ADMIN_KEY: Optional[str] = None

    # HTTP
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

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
    log = logger or logging.getLogger("marketplace")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.MIN_PAYOUT_AMOUNT <= 0:
        message = "MIN_PAYOUT_AMOUNT must be positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.EARNING_MATURATION_DAYS < 0:
        message = "EARNING_MATURATION_DAYS must not be negative"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
