from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.errors import UserNotFound
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.analytics import AlertSeverity, AlertType, ConversionTrend
from credit_ledger.models.subscription import SubscriptionTier, SubscriptionUpdate
from credit_ledger.models.user import UserFilter
from credit_ledger.services.admin_service import AdminService
from credit_ledger.services.credit_service import CreditService


class Clock:
    """Settable clock shared by the store and the services under test."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _make_admin(tmp_path, now):
    clock = Clock(now)
    db = InMemoryDBManager(clock=clock)
    ledger = LedgerLogger(db=db, file_path=tmp_path / "ledger.log")
    service = CreditService(db=db, ledger=ledger, clock=clock)
    admin = AdminService(db, clock=clock)
    return clock, service, admin


async def _spend(service, user_id, amount, endpoint="/api/resume/summary"):
    return await service.atomic_deduct_credits(
        user_id, amount, f"AI request: {endpoint}", metadata={"endpoint": endpoint}
    )


@pytest.mark.asyncio
async def test_system_credit_stats(tmp_path):
    _, service, admin = _make_admin(tmp_path, datetime(2024, 5, 10, 12, 0))
    await service.provision_user("alice", username="alice")
    await service.provision_user("bob", username="bob")
    await service.update_user_subscription("bob", SubscriptionUpdate(tier=SubscriptionTier.BASIC))
    await _spend(service, "alice", 30)

    stats = await admin.get_system_credit_stats()

    assert stats.total_users == 2
    assert stats.total_credits_in_circulation == 370
    assert stats.total_credits_earned == 400
    assert stats.total_credits_spent == 30
    assert stats.average_credits_per_user == 185.0
    assert stats.subscription_distribution == {"free": 1, "basic": 1, "premium": 0, "enterprise": 0}
    assert len(stats.recent_transactions) == 3
    assert [s.user_id for s in stats.top_spenders] == ["alice"]
    assert stats.top_spenders[0].current_balance == 170


@pytest.mark.asyncio
async def test_empty_store_stats(tmp_path):
    _, _, admin = _make_admin(tmp_path, datetime(2024, 5, 10, 12, 0))

    stats = await admin.get_system_credit_stats()

    assert stats.total_users == 0
    assert stats.average_credits_per_user == 0
    assert stats.top_spenders == []


@pytest.mark.asyncio
async def test_user_summaries_sort_and_paginate(tmp_path):
    _, service, admin = _make_admin(tmp_path, datetime(2024, 5, 10, 12, 0))
    for user_id, spend in (("a", 10), ("b", 50), ("c", 0)):
        await service.provision_user(user_id)
        if spend:
            await _spend(service, user_id, spend)

    first = await admin.get_user_credit_summaries(page=1, limit=2, sort_by="credits", sort_order="asc")
    assert first.total == 3
    assert first.total_pages == 2
    assert [u.user_id for u in first.users] == ["b", "a"]
    assert first.users[0].recent_transaction_count == 2

    second = await admin.get_user_credit_summaries(page=2, limit=2, sort_by="credits", sort_order="asc")
    assert [u.user_id for u in second.users] == ["c"]
    assert second.users[0].recent_transaction_count == 1

    spenders = await admin.get_user_credit_summaries(user_filter=UserFilter(min_total_spent=1))
    assert {u.user_id for u in spenders.users} == {"a", "b"}

    with pytest.raises(ValueError):
        await admin.get_user_credit_summaries(sort_by="password")


@pytest.mark.asyncio
async def test_user_details(tmp_path):
    _, service, admin = _make_admin(tmp_path, datetime(2024, 5, 10, 12, 0))
    await service.provision_user("alice", email="alice@example.com")
    await _spend(service, "alice", 20)
    await _spend(service, "alice", 10)

    details = await admin.get_user_details("alice")

    assert details.user.email == "alice@example.com"
    assert details.user.credits == 170
    assert len(details.transactions) == 3
    assert details.stats.total_transactions == 3
    assert details.stats.last_30_days_spent == 30
    assert details.stats.average_transaction_amount == round(230 / 3, 2)

    with pytest.raises(UserNotFound):
        await admin.get_user_details("ghost")


@pytest.mark.asyncio
async def test_usage_analytics_by_day_and_endpoint(tmp_path):
    clock, service, admin = _make_admin(tmp_path, datetime(2024, 5, 8, 9, 0))
    await service.provision_user("alice")
    await _spend(service, "alice", 5, "/api/resume/summary")
    await _spend(service, "alice", 5, "/api/resume/summary")
    clock.now = datetime(2024, 5, 9, 10, 0)
    await _spend(service, "alice", 15, "/api/resume/cover-letter")
    await service.add_credits("alice", 100, "Top-up")

    analytics = await admin.get_credit_usage_analytics(
        datetime(2024, 5, 1), datetime(2024, 5, 31)
    )

    assert analytics.total_credits_spent == 25
    assert analytics.total_transactions == 3
    assert [(d.date, d.credits_spent, d.transactions) for d in analytics.daily_usage] == [
        ("2024-05-08", 10, 2),
        ("2024-05-09", 15, 1),
    ]
    assert [e.endpoint for e in analytics.top_endpoints] == [
        "/api/resume/cover-letter",
        "/api/resume/summary",
    ]

    with pytest.raises(ValueError):
        await admin.get_credit_usage_analytics(datetime(2024, 6, 1), datetime(2024, 5, 1))


@pytest.mark.asyncio
async def test_consumption_patterns(tmp_path):
    clock, service, admin = _make_admin(tmp_path, datetime(2024, 5, 8, 9, 0))
    await service.provision_user("steady")
    await service.provision_user("heavy")
    await _spend(service, "steady", 5, "/api/resume/summary")
    await _spend(service, "steady", 5, "/api/resume/summary")
    await _spend(service, "heavy", 60, "/api/resume/rewrite")
    clock.now = datetime(2024, 5, 9, 14, 0)
    await _spend(service, "steady", 20, "/api/resume/cover-letter")

    patterns = await admin.get_credit_consumption_patterns()

    assert [p.user_id for p in patterns] == ["heavy", "steady"]
    heavy, steady = patterns
    assert heavy.daily_average == 60
    assert heavy.is_high_usage

    assert steady.daily_average == 15
    assert steady.weekly_average == 105
    assert steady.monthly_average == 450
    assert steady.usage_variability == 5
    assert steady.peak_usage_hour == 9
    assert steady.most_used_endpoint == "/api/resume/summary"
    assert steady.last_active_date == datetime(2024, 5, 9, 14, 0)
    assert not steady.is_high_usage
    assert not steady.is_unusual_pattern

    only_steady = await admin.get_credit_consumption_patterns(user_id="steady")
    assert [p.user_id for p in only_steady] == ["steady"]


@pytest.mark.asyncio
async def test_subscription_conversion_report(tmp_path):
    clock, service, admin = _make_admin(tmp_path, datetime(2024, 4, 1, 0, 0))
    for user_id in ("a", "b", "c", "d"):
        await service.provision_user(user_id)

    for user_id, tier, when in (
        ("a", SubscriptionTier.BASIC, datetime(2024, 4, 10)),
        ("b", SubscriptionTier.PREMIUM, datetime(2024, 5, 3)),
        ("c", SubscriptionTier.BASIC, datetime(2024, 5, 12)),
    ):
        clock.now = when
        await service.update_user_subscription(user_id, SubscriptionUpdate(tier=tier))
    clock.now = datetime(2024, 5, 15, 12, 0)

    report = await admin.get_subscription_conversion_report()

    assert report.total_free_users == 1
    assert report.total_paid_users == 3
    assert report.conversion_rate == 75.0
    assert report.conversions_this_month == 2
    assert report.conversions_last_month == 1
    assert report.conversion_trend == ConversionTrend.INCREASING
    assert report.average_days_to_conversion == 27.3
    assert report.conversions_by_tier == {"basic": 2, "premium": 1}


@pytest.mark.asyncio
async def test_spike_alert_against_rolling_average(tmp_path):
    clock, service, admin = _make_admin(tmp_path, datetime(2024, 5, 1, 9, 0))
    await service.provision_user("spiky", username="spiky")
    await service.add_credits("spiky", 100, "Top-up")
    for day, amount in ((7, 10), (8, 15), (9, 12), (10, 200)):
        clock.now = datetime(2024, 5, day, 9, 0)
        await _spend(service, "spiky", amount)
    clock.now = datetime(2024, 5, 10, 12, 0)

    alerts = await admin.generate_usage_alerts()

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.type == AlertType.UNUSUAL_SPIKE
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.id == "unusual_spike:spiky:2024-05-10"
    assert alert.username == "spiky"
    assert alert.details["date"] == "2024-05-10"
    assert alert.details["credits_spent"] == 200
    assert alert.details["rolling_average"] == 12.33
    assert alert.details["ratio"] == 16.22

    # deterministic ids: recomputing yields the same alert
    again = await admin.generate_usage_alerts()
    assert [a.id for a in again] == [alert.id]


@pytest.mark.asyncio
async def test_small_baseline_never_spikes(tmp_path):
    clock, service, admin = _make_admin(tmp_path, datetime(2024, 5, 1, 9, 0))
    await service.provision_user("newbie")
    for day, amount in ((7, 1), (8, 2), (9, 100)):
        clock.now = datetime(2024, 5, day, 9, 0)
        await _spend(service, "newbie", amount)
    clock.now = datetime(2024, 5, 9, 12, 0)

    assert await admin.generate_usage_alerts() == []


@pytest.mark.asyncio
async def test_abuse_alerts_ordered_by_severity(tmp_path):
    _, service, admin = _make_admin(tmp_path, datetime(2024, 5, 10, 12, 0))
    await service.provision_user("heavy")
    await service.provision_user("extreme")
    await service.add_credits("heavy", 1000, "Top-up")
    await service.add_credits("extreme", 2000, "Top-up")
    await _spend(service, "heavy", 1100)
    await _spend(service, "extreme", 2100)

    alerts = await admin.generate_usage_alerts()

    assert [(a.user_id, a.type, a.severity) for a in alerts] == [
        ("extreme", AlertType.POTENTIAL_ABUSE, AlertSeverity.CRITICAL),
        ("heavy", AlertType.POTENTIAL_ABUSE, AlertSeverity.HIGH),
    ]
    assert alerts[1].details == {"credits_spent_24h": 1100, "transactions_24h": 1}


@pytest.mark.asyncio
async def test_drop_alert_for_quiet_heavy_user(tmp_path):
    clock, service, admin = _make_admin(tmp_path, datetime(2024, 5, 1, 9, 0))
    await service.provision_user("gone-quiet")
    await service.provision_user("light")
    await _spend(service, "gone-quiet", 150)
    await _spend(service, "light", 100)
    clock.now = datetime(2024, 5, 1, 9, 0) + timedelta(days=19)

    alerts = await admin.generate_usage_alerts()

    assert [(a.user_id, a.type, a.severity) for a in alerts] == [
        ("gone-quiet", AlertType.UNUSUAL_DROP, AlertSeverity.MEDIUM)
    ]
    assert alerts[0].details["idle_days"] == 19
