from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec


class NotificationType(str, Enum):
    """Balance warnings raised after a charge, plus failed-charge notices."""

    LOW_CREDITS = "low_credits"
    CRITICAL_CREDITS = "critical_credits"
    TRANSACTION_ERROR = "transaction_error"


class NotificationStatus(str, Enum):
    QUEUED = "queued"
    FAILED = "failed"


class NotificationEvent(DBSerializableModel):
    """
    One credit notice handed to the outbound queue.

    The record is written after the hand-off so `status` tells support
    whether a low-balance warning ever left the service. Delivery to the
    user happens on the consumer side and is not tracked here.
    """

    collection_name: ClassVar[str] = "credit_notifications"
    indexes: ClassVar[List[IndexSpec]] = [[("user_id", 1), ("created_at", -1)]]

    id: Optional[str] = Field(default=None)
    user_id: str
    notification_type: NotificationType
    payload: dict = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.QUEUED
    error_message: Optional[str] = Field(
        default=None, description="Queue error when the hand-off failed."
    )
    created_at: datetime = Field(default_factory=datetime.utcnow)
