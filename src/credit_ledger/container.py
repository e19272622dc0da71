from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .cache.memory import InMemoryAsyncCache
from .config import Settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .logging.ledger_logger import LedgerLogger
from .models.analytics import AnalyticsThresholds
from .notifications.queue import AsyncNotificationQueue, LoggingNotificationQueue
from .services.admin_service import AdminService
from .services.credit_middleware import CreditMiddleware
from .services.credit_service import CreditService
from .services.notification_service import NotificationService
from .services.operation_service import OperationTracker
from .services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(
            settings.MONGO_URI,
            settings.MONGO_DB,
            use_transactions=settings.MONGO_USE_TRANSACTIONS,
        )
    logger.warning("MONGO_URI not set; using the in-memory ledger store")
    return InMemoryDBManager()


def thresholds_from_settings(settings: Settings) -> AnalyticsThresholds:
    return AnalyticsThresholds(
        high_usage_daily=settings.HIGH_USAGE_DAILY_THRESHOLD,
        unusual_variability_ratio=settings.UNUSUAL_VARIABILITY_RATIO,
        spike_ratio=settings.SPIKE_RATIO,
        spike_critical_ratio=settings.SPIKE_CRITICAL_RATIO,
        spike_min_baseline=settings.SPIKE_MIN_BASELINE,
        spike_min_history_days=settings.SPIKE_MIN_HISTORY_DAYS,
        spike_window_days=settings.SPIKE_WINDOW_DAYS,
        abuse_credits_24h=settings.ABUSE_CREDITS_24H,
        abuse_transactions_24h=settings.ABUSE_TRANSACTIONS_24H,
        abuse_critical_credits_24h=settings.ABUSE_CRITICAL_CREDITS_24H,
        abuse_critical_transactions_24h=settings.ABUSE_CRITICAL_TRANSACTIONS_24H,
        drop_min_total_spent=settings.DROP_MIN_TOTAL_SPENT,
    )


class CreditContainer:
    """
    The service graph for one process, built once at startup and handed to
    request handlers through `app.state`.
    """

    def __init__(
        self,
        settings: Settings,
        db: Optional[BaseDBManager] = None,
        queue: Optional[AsyncNotificationQueue] = None,
    ) -> None:
        self.settings = settings
        self.db = db if db is not None else create_db_manager(settings)
        self.ledger = LedgerLogger(db=self.db, file_path=Path(settings.LEDGER_LOG_PATH))
        self.queue = queue if queue is not None else LoggingNotificationQueue()
        self.cache = InMemoryAsyncCache()

        self.credit_service = CreditService(
            self.db, self.ledger, initial_credits=settings.INITIAL_USER_CREDITS
        )
        self.notification_service = NotificationService(
            self.db,
            self.queue,
            low_balance_threshold=settings.LOW_BALANCE_WARNING_THRESHOLD,
            critical_balance_threshold=settings.CRITICAL_BALANCE_THRESHOLD,
        )
        self.operations = OperationTracker(
            self.cache, ttl_seconds=settings.OPERATION_STATUS_TTL_SECONDS
        )
        self.credit_middleware = CreditMiddleware(
            self.credit_service,
            self.ledger,
            self.notification_service,
            self.operations,
            default_cost=settings.AI_REQUEST_COST,
        )
        self.admin_service = AdminService(self.db, thresholds_from_settings(settings))
        self.subscription_service = SubscriptionService(
            self.db,
            self.credit_service,
            self.ledger,
            grace_period_days=settings.GRACE_PERIOD_DAYS,
            renewal_interval_days=settings.RENEWAL_INTERVAL_DAYS,
        )
