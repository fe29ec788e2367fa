# app/core/config.py

import os
from functools import lru_cache
from typing import List, Optional, Annotated
from pydantic import ConfigDict, BeforeValidator
from pydantic_settings import BaseSettings, NoDecode


def _parse_email_list(value):
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        return [email.strip() for email in value.split(",") if email.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(email).strip() for email in value if str(email).strip()]
    return []


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Storefront (Shopify)
    SHOPIFY_SHOP_URL: Optional[str] = None
    SHOPIFY_ADMIN_API_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2025-01"
    SHOPIFY_LOCATION_GID: Optional[str] = None
    SHOPIFY_WEBHOOK_SECRET: str = ""

    # Marketplace (Bunjang)
    BUNJANG_API_URL: str = "https://openapi.bunjang.co.kr"
    BUNJANG_ACCESS_KEY: str = ""
    BUNJANG_SECRET_KEY: str = ""  # base64 encoded HS256 key

    # Gateway call budget
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_BACKOFF_BASE_SECONDS: float = 1.0
    GATEWAY_BACKOFF_MAX_SECONDS: float = 30.0

    # Circuit breaker for auth failures / insufficient funds
    CIRCUIT_PROBE_INTERVAL_SECONDS: int = 300

    # Reconciliation rules
    PRICE_DRIFT_TOLERANCE_PERCENT: float = 5.0
    NOT_FOUND_CONFIRM_MINUTES: int = 30
    LOW_BALANCE_THRESHOLD: int = 1000000
    ORDER_IDENTIFIER_PREFIX: str = "MarketplaceOrder-"
    CAS_MAX_RETRIES: int = 5

    # Job queue
    WORKER_CONCURRENCY: int = 4
    JOB_MAX_ATTEMPTS: int = 5
    JOB_BACKOFF_BASE_SECONDS: float = 2.0
    JOB_BACKOFF_MAX_SECONDS: float = 300.0

    # Scheduled polling (crontab syntax)
    SCHEDULER_ENABLED: bool = True
    POLL_FREQUENT_CRON: str = "*/10 * * * *"
    POLL_HOURLY_CRON: str = "15 * * * *"
    POLL_DAILY_CRON: str = "30 3 * * *"

    # Environment
    ENVIRONMENT: str = "development"

    # Basic Auth for the admin routes
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = ""

    # Email notifications
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    SMTP_TIMEOUT: int = 30
    SMTP_FROM_EMAIL: str = ""
    SMTP_FROM_NAME: str = "Reconciliation Alerts"
    NOTIFICATION_EMAILS: Annotated[List[str], NoDecode, BeforeValidator(_parse_email_list)] = []

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


def get_webhook_secret() -> str:
    return get_settings().SHOPIFY_WEBHOOK_SECRET
