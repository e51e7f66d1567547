import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

from iching.models.payment import Environment, Platform, PricingMode


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"  # development | test | production
    CONFIG_STRICT: bool = False

    # Payments: "sandbox" enables the simulated wallet fallback, never on in production
    PAYMENT_ENVIRONMENT: Environment = Environment.PRODUCTION
    PLATFORM: Platform = Platform.IOS

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    PAYMENT_ALLOWED_CURRENCIES: str = "usd,eur,twd,jpy,hkd,sgd"  # comma-separated
    PAYMENT_APP_TAG: str = "iching-divination"

    # Database (server-side ledger)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Client endpoints
    PAYMENT_API_URL: str = "http://localhost:8000"
    DIVINATION_API_URL: str = "https://curly-butterfly-895b.stevenyu-supreme.workers.dev/api/divination"
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # Entitlement / pricing
    FREE_USES_LIMIT: int = 10
    PRICING_MODE: PricingMode = PricingMode.PER_USE
    PAID_PRICE_AMOUNT: float = 90
    PAID_PRICE_CURRENCY: str = "twd"

    # Local history
    HISTORY_MAX: int = 5

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def allowed_currencies(self) -> List[str]:
        return [c.strip().lower() for c in self.PAYMENT_ALLOWED_CURRENCIES.split(",") if c.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("iching")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
