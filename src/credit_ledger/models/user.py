from __future__ import annotations

from datetime import datetime
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, IndexSpec
from .subscription import SubscriptionStatus, SubscriptionTier


class UserCreditRecord(DBSerializableModel):
    """
    Per-user balance record. `credits` is a materialized cache of the
    transaction log and can be reconciled against it.
    """

    collection_name: ClassVar[str] = "credit_users"
    primary_key: ClassVar[Optional[str]] = "user_id"
    indexes: ClassVar[List[IndexSpec]] = [
        [("subscription_tier", 1)],
        [("last_credit_update", -1)],
        [("total_credits_spent", -1)],
    ]

    user_id: str = Field(description="Stable identifier issued by the identity provider.")
    username: Optional[str] = None
    email: Optional[str] = None
    credits: int = Field(default=0, ge=0)
    total_credits_earned: int = 0
    total_credits_spent: int = 0
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    converted_at: Optional[datetime] = Field(
        default=None,
        description="First time the user moved onto a paid tier.",
    )
    subscription_updated_at: Optional[datetime] = None
    credits_renewed_at: Optional[datetime] = Field(
        default=None,
        description="Last subscription grant; monthly renewals are counted from here.",
    )
    low_balance_notifications: bool = True
    is_deleted: bool = False
    last_credit_update: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class UserFilter(BaseModel):
    """Selection over user records used by admin listings and aggregates."""

    subscription_tier: Optional[SubscriptionTier] = None
    subscription_status: Optional[SubscriptionStatus] = None
    min_credits: Optional[int] = None
    max_credits: Optional[int] = None
    min_total_spent: Optional[int] = None
    paid_only: bool = False
    converted_since: Optional[datetime] = None
    converted_before: Optional[datetime] = None
    last_update_before: Optional[datetime] = None
    subscription_updated_before: Optional[datetime] = None
    include_deleted: bool = False

    def matches(self, user: UserCreditRecord) -> bool:
        if not self.include_deleted and user.is_deleted:
            return False
        if self.subscription_tier is not None and user.subscription_tier != self.subscription_tier:
            return False
        if self.subscription_status is not None and user.subscription_status != self.subscription_status:
            return False
        if self.min_credits is not None and user.credits < self.min_credits:
            return False
        if self.max_credits is not None and user.credits > self.max_credits:
            return False
        if self.min_total_spent is not None and user.total_credits_spent < self.min_total_spent:
            return False
        if self.paid_only and not user.subscription_tier.is_paid:
            return False
        if self.converted_since is not None and (
            user.converted_at is None or user.converted_at < self.converted_since
        ):
            return False
        if self.converted_before is not None and (
            user.converted_at is None or user.converted_at >= self.converted_before
        ):
            return False
        if self.last_update_before is not None and user.last_credit_update >= self.last_update_before:
            return False
        if self.subscription_updated_before is not None and (
            user.subscription_updated_at is None
            or user.subscription_updated_at >= self.subscription_updated_before
        ):
            return False
        return True


class UserAggregate(BaseModel):
    key: Optional[str] = None
    count: int = 0
    credits: int = 0
    total_credits_earned: int = 0
    total_credits_spent: int = 0
