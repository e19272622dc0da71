"""
Credit ledger configuration using Pydantic Settings.
"""

from __future__ import annotations

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local .env file)."""

    # Storage
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_ledger"
    # Multi-document transactions need a replica set; disable for standalone servers.
    MONGO_USE_TRANSACTIONS: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"

    # Credits
    INITIAL_USER_CREDITS: int = 200
    AI_REQUEST_COST: int = 5
    MAX_ADMIN_ADJUSTMENT: int = 10000
    LOW_BALANCE_WARNING_THRESHOLD: int = 20
    CRITICAL_BALANCE_THRESHOLD: int = 5

    # HTTP surface
    USER_ID_HEADER: str = "X-User-Id"
    REQUEST_ID_HEADER: str = "X-Request-Id"
    ADMIN_USER_IDS: List[str] = []
    PRICED_PATH_PREFIXES: List[str] = ["/api/resume"]
    OPERATION_STATUS_TTL_SECONDS: int = 300
    # Shared secret the billing provider sends in X-Webhook-Secret; empty disables the webhook.
    SUBSCRIPTION_WEBHOOK_SECRET: str = ""

    # Subscriptions
    GRACE_PERIOD_DAYS: int = 7
    RENEWAL_INTERVAL_DAYS: int = 30

    # Admin analytics
    HIGH_USAGE_DAILY_THRESHOLD: float = 50
    UNUSUAL_VARIABILITY_RATIO: float = 2.0
    SPIKE_RATIO: float = 5.0
    SPIKE_CRITICAL_RATIO: float = 10.0
    SPIKE_MIN_BASELINE: float = 10
    SPIKE_MIN_HISTORY_DAYS: int = 2
    SPIKE_WINDOW_DAYS: int = 7
    ABUSE_CREDITS_24H: int = 1000
    ABUSE_TRANSACTIONS_24H: int = 200
    ABUSE_CRITICAL_CREDITS_24H: int = 2000
    ABUSE_CRITICAL_TRANSACTIONS_24H: int = 500
    DROP_MIN_TOTAL_SPENT: int = 100

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()
