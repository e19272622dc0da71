from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..db.base import BaseDBManager
from ..errors import CreditError, UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.subscription import (
    SUBSCRIPTION_PLANS,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
    SubscriptionTier,
    SubscriptionUpdate,
)
from ..models.user import UserCreditRecord, UserFilter
from .credit_service import CreditService


logger = logging.getLogger(__name__)

# Billing provider vocabulary -> local mirror. Unknown names fall back to
# free / inactive.
PLAN_NAME_TO_TIER: Dict[str, SubscriptionTier] = {
    "free": SubscriptionTier.FREE,
    "basic": SubscriptionTier.BASIC,
    "premium": SubscriptionTier.PREMIUM,
    "enterprise": SubscriptionTier.ENTERPRISE,
    "basic_monthly": SubscriptionTier.BASIC,
    "premium_monthly": SubscriptionTier.PREMIUM,
    "enterprise_monthly": SubscriptionTier.ENTERPRISE,
}

PROVIDER_STATUS_TO_STATUS: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.INACTIVE,
    "incomplete_expired": SubscriptionStatus.INACTIVE,
}


def map_plan_name(plan_name: str) -> SubscriptionTier:
    return PLAN_NAME_TO_TIER.get(plan_name.lower(), SubscriptionTier.FREE)


def map_provider_status(status: str) -> SubscriptionStatus:
    return PROVIDER_STATUS_TO_STATUS.get(status.lower(), SubscriptionStatus.INACTIVE)


class SubscriptionService:
    """
    Keeps the local tier/status mirror in step with billing provider events
    and grants the plan credits that go with them.

    No payment processing happens here. Credits already granted are never
    taken back: cancellations, downgrades and expiry only change the mirror.
    """

    def __init__(
        self,
        db: BaseDBManager,
        credit_service: CreditService,
        ledger: LedgerLogger,
        *,
        grace_period_days: int = 7,
        renewal_interval_days: int = 30,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = db
        self._credits = credit_service
        self._ledger = ledger
        self._grace_period = timedelta(days=grace_period_days)
        self._renewal_interval = timedelta(days=renewal_interval_days)
        self._clock = clock

    async def handle_event(self, event: SubscriptionEvent) -> UserCreditRecord:
        handlers = {
            SubscriptionEventType.CREATED: self.handle_subscription_created,
            SubscriptionEventType.UPDATED: self.handle_subscription_updated,
            SubscriptionEventType.CANCELLED: self.handle_subscription_cancelled,
            SubscriptionEventType.PAYMENT_FAILED: self.handle_payment_failed,
            SubscriptionEventType.EXPIRED: self.handle_subscription_expired,
        }
        logger.info("Subscription event %s for %s", event.type.value, event.user_id)
        return await handlers[event.type](event)

    async def _require_user(self, user_id: str) -> UserCreditRecord:
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def _grant(
        self, user_id: str, amount: int, reason: str, metadata: Dict[str, object]
    ) -> None:
        if amount <= 0:
            return
        await self._credits.add_credits(user_id, amount, reason, metadata)
        await self._db.update_user_fields(user_id, {"credits_renewed_at": self._clock()})

    async def handle_subscription_created(self, event: SubscriptionEvent) -> UserCreditRecord:
        await self._credits.provision_user(event.user_id)
        tier = map_plan_name(event.plan_name)
        user = await self._credits.update_user_subscription(
            event.user_id,
            SubscriptionUpdate(tier=tier, status=map_provider_status(event.status)),
        )
        plan = SUBSCRIPTION_PLANS[tier]
        await self._grant(
            event.user_id,
            plan.credits,
            f"Initial credits for {tier.value} subscription",
            {
                "subscription_id": event.subscription_id,
                "plan_type": tier.value,
                "event_type": "subscription_created",
            },
        )
        return await self._require_user(user.user_id)

    async def handle_subscription_updated(self, event: SubscriptionEvent) -> UserCreditRecord:
        before = await self._require_user(event.user_id)
        new_tier = map_plan_name(event.plan_name)
        new_status = map_provider_status(event.status)
        await self._credits.update_user_subscription(
            event.user_id, SubscriptionUpdate(tier=new_tier, status=new_status)
        )

        old_plan = SUBSCRIPTION_PLANS[before.subscription_tier]
        new_plan = SUBSCRIPTION_PLANS[new_tier]
        if new_tier != before.subscription_tier:
            if new_plan.credits > old_plan.credits:
                await self._grant(
                    event.user_id,
                    new_plan.credits - old_plan.credits,
                    f"Plan upgrade from {old_plan.tier.value} to {new_tier.value}",
                    {
                        "subscription_id": event.subscription_id,
                        "plan_type": new_tier.value,
                        "event_type": "plan_upgrade",
                        "old_plan": old_plan.tier.value,
                        "new_plan": new_tier.value,
                    },
                )
            else:
                logger.info(
                    "Plan downgrade %s -> %s for %s; existing credits kept",
                    old_plan.tier.value,
                    new_tier.value,
                    event.user_id,
                )

        reactivated = (
            new_status is SubscriptionStatus.ACTIVE
            and before.subscription_status is not SubscriptionStatus.ACTIVE
        )
        # A plan change already carried its own grant.
        if reactivated and new_tier == before.subscription_tier:
            await self._grant(
                event.user_id,
                new_plan.credits,
                f"Subscription reactivation for {new_tier.value} plan",
                {
                    "subscription_id": event.subscription_id,
                    "plan_type": new_tier.value,
                    "event_type": "subscription_reactivated",
                },
            )
        return await self._require_user(event.user_id)

    async def handle_subscription_cancelled(self, event: SubscriptionEvent) -> UserCreditRecord:
        await self._require_user(event.user_id)
        await self._credits.update_user_subscription(
            event.user_id, SubscriptionUpdate(status=SubscriptionStatus.CANCELLED)
        )
        # Zero-amount entry keeps the cancellation in the transaction log.
        await self._credits.add_credits(
            event.user_id,
            0,
            "Subscription cancelled; remaining credits preserved",
            {"subscription_id": event.subscription_id, "event_type": "subscription_cancelled"},
        )
        return await self._require_user(event.user_id)

    async def handle_payment_failed(self, event: SubscriptionEvent) -> UserCreditRecord:
        await self._require_user(event.user_id)
        return await self._credits.update_user_subscription(
            event.user_id, SubscriptionUpdate(status=SubscriptionStatus.PAST_DUE)
        )

    async def handle_subscription_expired(self, event: SubscriptionEvent) -> UserCreditRecord:
        return await self.expire_subscription(event.user_id)

    async def expire_subscription(self, user_id: str) -> UserCreditRecord:
        await self._require_user(user_id)
        user = await self._credits.update_user_subscription(
            user_id,
            SubscriptionUpdate(tier=SubscriptionTier.FREE, status=SubscriptionStatus.INACTIVE),
        )
        logger.info("Subscription expired for %s; downgraded to free", user_id)
        return user

    async def process_grace_period_users(self) -> List[str]:
        """Expire subscriptions that stayed past_due longer than the grace period."""
        cutoff = self._clock() - self._grace_period
        users = await self._db.list_users(
            UserFilter(
                subscription_status=SubscriptionStatus.PAST_DUE,
                subscription_updated_before=cutoff,
            )
        )
        expired = []
        for user in users:
            try:
                await self.expire_subscription(user.user_id)
            except CreditError:
                logger.error("Failed to expire subscription for %s", user.user_id, exc_info=True)
                continue
            expired.append(user.user_id)
        if expired:
            await self._ledger.log_system(
                "Grace period sweep", {"expired_users": expired, "cutoff": cutoff.isoformat()}
            )
        return expired

    def is_renewal_due(self, user: UserCreditRecord, now: Optional[datetime] = None) -> bool:
        if (
            user.subscription_status is not SubscriptionStatus.ACTIVE
            or not user.subscription_tier.is_paid
        ):
            return False
        anchor = user.credits_renewed_at or user.converted_at or user.created_at
        return (now or self._clock()) - anchor >= self._renewal_interval

    async def renew_user(self, user: UserCreditRecord) -> int:
        """Grant one month of plan credits; returns the amount granted."""
        plan = SUBSCRIPTION_PLANS[user.subscription_tier]
        await self._grant(
            user.user_id,
            plan.monthly_credits,
            f"Monthly credit renewal for {plan.tier.value} subscription",
            {"plan_type": plan.tier.value, "event_type": "monthly_renewal"},
        )
        return plan.monthly_credits

    async def process_monthly_renewals(self) -> List[str]:
        now = self._clock()
        users = await self._db.list_users(
            UserFilter(subscription_status=SubscriptionStatus.ACTIVE, paid_only=True)
        )
        renewed = []
        for user in users:
            if not self.is_renewal_due(user, now):
                continue
            try:
                await self.renew_user(user)
            except CreditError:
                logger.error("Failed to renew credits for %s", user.user_id, exc_info=True)
                continue
            renewed.append(user.user_id)
        if renewed:
            await self._ledger.log_system("Monthly renewal sweep", {"renewed_users": renewed})
        return renewed
