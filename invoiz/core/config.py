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

    # Razorpay
    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: Optional[str] = None
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None
    RAZORPAY_API_BASE: str = "https://api.razorpay.com/v1"

    # Gateway call policy
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_RETRY_BACKOFF_SECONDS: float = 0.5

    # Auth (tokens are issued elsewhere, we only verify them)
    JWT_SECRET: Optional[str] = None
    JWT_ALGORITHM: str = "HS256"
    ALLOW_HEADER_AUTH: bool = False  # X-User-Id fallback for dev/tests

    # Transactional email API
    EMAIL_API_URL: Optional[str] = None
    EMAIL_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "Invoiz App <no-reply@invoiz.app>"
    EMAIL_TIMEOUT_SECONDS: float = 10.0

    # App URLs
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000"  # comma-separated

    # Reconciliation worker
    RECONCILE_MIN_AGE_MINUTES: int = 10
    RECONCILE_BATCH_SIZE: int = 100

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def get_settings() -> Settings:
    """Return the active settings object (patched in tests)."""
    return settings


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("invoiz")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "RAZORPAY_KEY_ID",
        "RAZORPAY_KEY_SECRET",
        "JWT_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not cfg.RAZORPAY_WEBHOOK_SECRET:
        log.warning("RAZORPAY_WEBHOOK_SECRET not set; webhook signatures will not be checked")

    return True
