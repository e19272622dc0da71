from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import UserNotFound
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.subscription import (
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
    SubscriptionTier,
)
from credit_ledger.models.transaction import TransactionType
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.subscription_service import (
    SubscriptionService,
    map_plan_name,
    map_provider_status,
)


START = datetime(2024, 3, 1, 8, 0)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _make_subscriptions(tmp_path):
    clock = Clock(START)
    db = InMemoryDBManager(clock=clock)
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    credits = CreditService(db=db, ledger=ledger, clock=clock)
    subscriptions = SubscriptionService(db, credits, ledger, clock=clock)
    return clock, db, credits, subscriptions


def _event(event_type, plan_name="basic", status="active", user_id="user-1"):
    return SubscriptionEvent(
        type=event_type,
        subscription_id="sub_123",
        user_id=user_id,
        plan_name=plan_name,
        status=status,
    )


def test_provider_vocabulary_mapping():
    assert map_plan_name("Premium_Monthly") == SubscriptionTier.PREMIUM
    assert map_plan_name("gold") == SubscriptionTier.FREE
    assert map_provider_status("trialing") == SubscriptionStatus.ACTIVE
    assert map_provider_status("canceled") == SubscriptionStatus.CANCELLED
    assert map_provider_status("paused") == SubscriptionStatus.INACTIVE


@pytest.mark.asyncio
async def test_created_event_provisions_and_grants(tmp_path):
    _, _, credits, subscriptions = _make_subscriptions(tmp_path)

    user = await subscriptions.handle_event(_event(SubscriptionEventType.CREATED))

    assert user.subscription_tier == SubscriptionTier.BASIC
    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert user.credits == 700
    assert user.converted_at == START
    assert user.credits_renewed_at == START

    history = await credits.get_transaction_history("user-1")
    grant = history.items[0]
    assert grant.reason == "Initial credits for basic subscription"
    assert grant.metadata["subscription_id"] == "sub_123"


@pytest.mark.asyncio
async def test_upgrade_grants_difference_and_downgrade_keeps_credits(tmp_path):
    _, _, _, subscriptions = _make_subscriptions(tmp_path)
    await subscriptions.handle_event(_event(SubscriptionEventType.CREATED))

    upgraded = await subscriptions.handle_event(_event(SubscriptionEventType.UPDATED, "premium"))
    assert upgraded.subscription_tier == SubscriptionTier.PREMIUM
    assert upgraded.credits == 1700

    downgraded = await subscriptions.handle_event(_event(SubscriptionEventType.UPDATED, "basic"))
    assert downgraded.subscription_tier == SubscriptionTier.BASIC
    assert downgraded.credits == 1700


@pytest.mark.asyncio
async def test_cancellation_is_recorded_without_changing_balance(tmp_path):
    _, _, credits, subscriptions = _make_subscriptions(tmp_path)
    await subscriptions.handle_event(_event(SubscriptionEventType.CREATED))

    user = await subscriptions.handle_event(
        _event(SubscriptionEventType.CANCELLED, status="canceled")
    )

    assert user.subscription_status == SubscriptionStatus.CANCELLED
    assert user.credits == 700
    latest = (await credits.get_transaction_history("user-1", limit=1)).items[0]
    assert latest.type == TransactionType.ADDITION
    assert latest.amount == 0
    assert latest.reason == "Subscription cancelled; remaining credits preserved"


@pytest.mark.asyncio
async def test_reactivation_grants_plan_credits_once(tmp_path):
    _, _, _, subscriptions = _make_subscriptions(tmp_path)
    await subscriptions.handle_event(_event(SubscriptionEventType.CREATED))
    await subscriptions.handle_event(_event(SubscriptionEventType.CANCELLED, status="canceled"))

    user = await subscriptions.handle_event(_event(SubscriptionEventType.UPDATED, "basic"))

    assert user.subscription_status == SubscriptionStatus.ACTIVE
    assert user.credits == 1200


@pytest.mark.asyncio
async def test_events_for_unknown_users_are_rejected(tmp_path):
    _, _, _, subscriptions = _make_subscriptions(tmp_path)

    with pytest.raises(UserNotFound):
        await subscriptions.handle_event(_event(SubscriptionEventType.UPDATED, user_id="ghost"))
    with pytest.raises(UserNotFound):
        await subscriptions.handle_event(
            _event(SubscriptionEventType.PAYMENT_FAILED, user_id="ghost")
        )


@pytest.mark.asyncio
async def test_grace_period_expires_past_due_subscriptions(tmp_path):
    clock, _, credits, subscriptions = _make_subscriptions(tmp_path)
    await subscriptions.handle_event(_event(SubscriptionEventType.CREATED, user_id="late"))
    await subscriptions.handle_event(_event(SubscriptionEventType.CREATED, user_id="recent"))

    await subscriptions.handle_event(_event(SubscriptionEventType.PAYMENT_FAILED, user_id="late"))
    clock.now = START + timedelta(days=6)
    await subscriptions.handle_event(_event(SubscriptionEventType.PAYMENT_FAILED, user_id="recent"))

    clock.now = START + timedelta(days=8)
    expired = await subscriptions.process_grace_period_users()

    assert expired == ["late"]
    late = await credits.get_account("late")
    assert late.subscription_tier == SubscriptionTier.FREE
    assert late.subscription_status == SubscriptionStatus.INACTIVE
    assert late.credits == 700
    recent = await credits.get_account("recent")
    assert recent.subscription_status == SubscriptionStatus.PAST_DUE


@pytest.mark.asyncio
async def test_monthly_renewal_counts_from_last_grant(tmp_path):
    clock, _, credits, subscriptions = _make_subscriptions(tmp_path)
    await subscriptions.handle_event(_event(SubscriptionEventType.CREATED))
    await credits.atomic_deduct_credits("user-1", 50, "AI request")

    clock.now = START + timedelta(days=29)
    assert await subscriptions.process_monthly_renewals() == []

    clock.now = START + timedelta(days=30)
    assert await subscriptions.process_monthly_renewals() == ["user-1"]
    assert await credits.get_user_credits("user-1") == 950

    clock.now = START + timedelta(days=31)
    assert await subscriptions.process_monthly_renewals() == []


@pytest.mark.asyncio
async def test_free_and_inactive_users_are_not_renewed(tmp_path):
    clock, _, credits, subscriptions = _make_subscriptions(tmp_path)
    await credits.provision_user("free-user")
    await subscriptions.handle_event(_event(SubscriptionEventType.CREATED, user_id="lapsed"))
    await subscriptions.handle_event(
        _event(SubscriptionEventType.CANCELLED, status="canceled", user_id="lapsed")
    )

    clock.now = START + timedelta(days=45)

    assert await subscriptions.process_monthly_renewals() == []
