from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


class NotificationService:
    """
    Records credit notifications and hands them to the message queue.
    """

    def __init__(
        self,
        db: BaseDBManager,
        queue: AsyncNotificationQueue,
        low_balance_threshold: int = 20,
        critical_balance_threshold: int = 5,
    ) -> None:
        self._db = db
        self._queue = queue
        self._low_balance_threshold = low_balance_threshold
        self._critical_balance_threshold = critical_balance_threshold

    def classify_balance(self, balance: int) -> Optional[NotificationType]:
        if balance <= self._critical_balance_threshold:
            return NotificationType.CRITICAL_CREDITS
        if balance <= self._low_balance_threshold:
            return NotificationType.LOW_CREDITS
        return None

    async def notify_balance(self, user_id: str, balance: int) -> Optional[NotificationEvent]:
        """Emit a low/critical balance notice if the balance warrants one."""
        notification_type = self.classify_balance(balance)
        if notification_type is None:
            return None

        user = await self._db.get_user(user_id)
        if user is not None and not user.low_balance_notifications:
            return None

        threshold = (
            self._critical_balance_threshold
            if notification_type is NotificationType.CRITICAL_CREDITS
            else self._low_balance_threshold
        )
        return await self._dispatch(
            user_id,
            notification_type,
            {"current_credits": balance, "threshold": threshold},
        )

    async def notify_transaction_error(
        self, user_id: str, message: str, details: Dict[str, Any]
    ) -> NotificationEvent:
        return await self._dispatch(
            user_id,
            NotificationType.TRANSACTION_ERROR,
            {"message": message, "details": details},
        )

    async def _dispatch(
        self, user_id: str, notification_type: NotificationType, payload: Dict[str, Any]
    ) -> NotificationEvent:
        event = NotificationEvent(
            id=uuid4().hex,
            user_id=user_id,
            notification_type=notification_type,
            payload=payload,
        )
        try:
            await self._queue.enqueue(
                {
                    "notification_id": event.id,
                    "type": notification_type.value,
                    "user_id": user_id,
                    "payload": payload,
                }
            )
        except Exception as exc:
            event.status = NotificationStatus.FAILED
            event.error_message = str(exc) or type(exc).__name__
            await self._db.add_notification_event(event)
            raise

        event = await self._db.add_notification_event(event)
        logger.info("Queued %s notification for %s", notification_type.value, user_id)
        return event
