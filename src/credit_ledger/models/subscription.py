from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def is_paid(self) -> bool:
        return self is not SubscriptionTier.FREE


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class SubscriptionPlan(BaseModel):
    """
    Credit allowance attached to a subscription tier.
    """

    tier: SubscriptionTier
    credits: int = Field(description="Credits granted when the subscription starts.")
    monthly_credits: int = Field(description="Credits granted on each monthly renewal.")
    price: float
    features: List[str] = Field(default_factory=list)


SUBSCRIPTION_PLANS: Dict[SubscriptionTier, SubscriptionPlan] = {
    SubscriptionTier.FREE: SubscriptionPlan(
        tier=SubscriptionTier.FREE,
        credits=0,
        monthly_credits=0,
        price=0,
        features=["Basic AI Analysis"],
    ),
    SubscriptionTier.BASIC: SubscriptionPlan(
        tier=SubscriptionTier.BASIC,
        credits=500,
        monthly_credits=300,
        price=9.99,
        features=["Advanced AI Analysis", "Priority Support"],
    ),
    SubscriptionTier.PREMIUM: SubscriptionPlan(
        tier=SubscriptionTier.PREMIUM,
        credits=1500,
        monthly_credits=1000,
        price=19.99,
        features=["Unlimited AI Analysis", "Custom Templates", "Priority Support"],
    ),
    SubscriptionTier.ENTERPRISE: SubscriptionPlan(
        tier=SubscriptionTier.ENTERPRISE,
        credits=5000,
        monthly_credits=3000,
        price=49.99,
        features=["Unlimited Everything", "API Access", "Dedicated Support"],
    ),
}


class SubscriptionEventType(str, Enum):
    CREATED = "subscription.created"
    UPDATED = "subscription.updated"
    CANCELLED = "subscription.cancelled"
    PAYMENT_FAILED = "subscription.payment_failed"
    EXPIRED = "subscription.expired"


class SubscriptionEvent(BaseModel):
    """
    Subscription change reported by the billing provider.

    `plan_name` and `status` use the provider's vocabulary and are mapped onto
    `SubscriptionTier` / `SubscriptionStatus` by the subscription service.
    """

    type: SubscriptionEventType
    subscription_id: str
    user_id: str
    plan_name: str = "free"
    status: str = "active"
    current_period_end: Optional[datetime] = None


class SubscriptionUpdate(BaseModel):
    tier: Optional[SubscriptionTier] = None
    status: Optional[SubscriptionStatus] = None
