from __future__ import annotations

import logging
import math
import statistics
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ..db.base import BaseDBManager
from ..errors import UserNotFound
from ..models.analytics import (
    AlertSeverity,
    AlertType,
    AnalyticsThresholds,
    ConversionTrend,
    CreditConsumptionPattern,
    CreditUsageAnalytics,
    DailyUsage,
    EndpointUsage,
    SubscriptionConversionReport,
    SystemCreditStats,
    TopSpender,
    UsageAlert,
    UserCreditDetails,
    UserCreditSummary,
    UserCreditSummaryPage,
    UserDetailStats,
)
from ..models.subscription import SubscriptionTier
from ..models.transaction import GroupKey, TransactionAggregate, TransactionFilter, TransactionType
from ..models.user import UserCreditRecord, UserFilter


logger = logging.getLogger(__name__)

SORTABLE_USER_FIELDS = (
    "credits",
    "total_credits_spent",
    "total_credits_earned",
    "last_credit_update",
    "created_at",
)

# Lower bound for "has converted"; every real conversion timestamp is later.
_EPOCH = datetime(1970, 1, 1)


def _summary(user: UserCreditRecord, recent_transactions: int = 0) -> UserCreditSummary:
    return UserCreditSummary(
        user_id=user.user_id,
        username=user.username,
        email=user.email,
        credits=user.credits,
        total_credits_earned=user.total_credits_earned,
        total_credits_spent=user.total_credits_spent,
        subscription_tier=user.subscription_tier.value,
        subscription_status=user.subscription_status.value,
        last_credit_update=user.last_credit_update,
        recent_transaction_count=recent_transactions,
    )


def _mode(counts: Dict, default):
    """Key with the highest count; ties go to the smallest key."""
    if not counts:
        return default
    return min(counts, key=lambda k: (-counts[k], k))


class AdminService:
    """
    Read-only credit analytics for the admin dashboard.

    Every method is an aggregation over the ledger store and has no side
    effects. Results reflect whatever the store has committed at query time.
    """

    def __init__(
        self,
        db: BaseDBManager,
        thresholds: Optional[AnalyticsThresholds] = None,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = db
        self._thresholds = thresholds or AnalyticsThresholds()
        self._clock = clock

    @property
    def thresholds(self) -> AnalyticsThresholds:
        return self._thresholds

    async def _deductions(
        self, tx_filter: TransactionFilter, *group_by: GroupKey
    ) -> List[TransactionAggregate]:
        tx_filter = tx_filter.model_copy(update={"type": TransactionType.DEDUCTION})
        return await self._db.aggregate_transactions(tx_filter, group_by=list(group_by))

    async def get_system_credit_stats(self) -> SystemCreditStats:
        totals = (await self._db.aggregate_users())[0]
        by_tier = await self._db.aggregate_users(group_by="subscription_tier")
        recent = await self._db.find_transactions(TransactionFilter(), limit=10)
        spenders = await self._db.list_users(
            sort_by="total_credits_spent", descending=True, limit=10
        )

        distribution = {tier.value: 0 for tier in SubscriptionTier}
        for row in by_tier:
            if row.key is not None:
                distribution[row.key] = row.count

        return SystemCreditStats(
            total_users=totals.count,
            total_credits_in_circulation=totals.credits,
            total_credits_earned=totals.total_credits_earned,
            total_credits_spent=totals.total_credits_spent,
            average_credits_per_user=round(totals.credits / totals.count, 2) if totals.count else 0,
            subscription_distribution=distribution,
            recent_transactions=recent,
            top_spenders=[
                TopSpender(
                    user_id=u.user_id,
                    username=u.username,
                    email=u.email,
                    total_spent=u.total_credits_spent,
                    current_balance=u.credits,
                )
                for u in spenders
                if u.total_credits_spent > 0
            ],
        )

    async def get_user_credit_summaries(
        self,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "last_credit_update",
        sort_order: str = "desc",
        user_filter: Optional[UserFilter] = None,
    ) -> UserCreditSummaryPage:
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        if sort_by not in SORTABLE_USER_FIELDS:
            raise ValueError(f"cannot sort users by {sort_by!r}")

        total = await self._db.count_users(user_filter)
        users = await self._db.list_users(
            user_filter,
            sort_by=sort_by,
            descending=sort_order != "asc",
            skip=(page - 1) * limit,
            limit=limit,
        )

        recent: Dict[str, int] = {}
        if users:
            rows = await self._db.aggregate_transactions(
                TransactionFilter(
                    user_ids=[u.user_id for u in users],
                    since=self._clock() - timedelta(days=30),
                ),
                group_by=[GroupKey.USER],
            )
            recent = {row.key[GroupKey.USER.value]: row.count for row in rows}

        return UserCreditSummaryPage(
            users=[_summary(u, recent.get(u.user_id, 0)) for u in users],
            total=total,
            page=page,
            total_pages=math.ceil(total / limit),
        )

    async def get_user_details(self, user_id: str) -> UserCreditDetails:
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)

        own = TransactionFilter(user_id=user_id)
        transactions = await self._db.find_transactions(own, limit=100)
        overall = await self._db.aggregate_transactions(own)
        spent = await self._deductions(
            TransactionFilter(user_id=user_id, since=self._clock() - timedelta(days=30))
        )

        count = overall[0].count if overall else 0
        amount = overall[0].total if overall else 0
        return UserCreditDetails(
            user=_summary(user, len(transactions)),
            transactions=transactions,
            stats=UserDetailStats(
                total_transactions=count,
                last_30_days_spent=spent[0].total if spent else 0,
                average_transaction_amount=round(amount / count, 2) if count else 0,
            ),
        )

    async def get_credit_usage_analytics(
        self, start: datetime, end: datetime, top_endpoints: int = 10
    ) -> CreditUsageAnalytics:
        if start > end:
            raise ValueError("start must not be after end")
        window = TransactionFilter(since=start, until=end)

        totals = await self._deductions(window)
        daily = await self._deductions(window, GroupKey.DAY)
        endpoints = await self._deductions(
            window.model_copy(update={"has_endpoint": True}), GroupKey.ENDPOINT
        )

        daily.sort(key=lambda r: r.key[GroupKey.DAY.value])
        endpoints.sort(key=lambda r: (-r.total, r.key[GroupKey.ENDPOINT.value]))
        return CreditUsageAnalytics(
            start=start,
            end=end,
            total_credits_spent=totals[0].total if totals else 0,
            total_transactions=totals[0].count if totals else 0,
            daily_usage=[
                DailyUsage(date=r.key[GroupKey.DAY.value], credits_spent=r.total, transactions=r.count)
                for r in daily
            ],
            top_endpoints=[
                EndpointUsage(
                    endpoint=r.key[GroupKey.ENDPOINT.value],
                    credits_spent=r.total,
                    transactions=r.count,
                )
                for r in endpoints[:top_endpoints]
            ],
        )

    async def get_credit_consumption_patterns(
        self, user_id: Optional[str] = None
    ) -> List[CreditConsumptionPattern]:
        """
        Per-user spending profile over the trailing pattern window.

        Averages are over active days only. Peak hour and endpoint are the
        most frequent by transaction count.
        """
        t = self._thresholds
        window = TransactionFilter(
            user_id=user_id, since=self._clock() - timedelta(days=t.pattern_window_days)
        )
        user_key = GroupKey.USER.value

        daily: Dict[str, List[int]] = defaultdict(list)
        last_active: Dict[str, datetime] = {}
        for row in await self._deductions(window, GroupKey.USER, GroupKey.DAY):
            uid = row.key[user_key]
            daily[uid].append(row.total)
            if row.last_at is not None and (uid not in last_active or row.last_at > last_active[uid]):
                last_active[uid] = row.last_at

        hours: Dict[str, Dict[int, int]] = defaultdict(dict)
        for row in await self._deductions(window, GroupKey.USER, GroupKey.HOUR):
            hours[row.key[user_key]][row.key[GroupKey.HOUR.value]] = row.count

        endpoints: Dict[str, Dict[str, int]] = defaultdict(dict)
        for row in await self._deductions(
            window.model_copy(update={"has_endpoint": True}), GroupKey.USER, GroupKey.ENDPOINT
        ):
            endpoints[row.key[user_key]][row.key[GroupKey.ENDPOINT.value]] = row.count

        patterns: List[CreditConsumptionPattern] = []
        for uid, totals in daily.items():
            daily_average = statistics.fmean(totals)
            variability = statistics.pstdev(totals)
            user = await self._db.get_user(uid)
            patterns.append(
                CreditConsumptionPattern(
                    user_id=uid,
                    username=user.username if user else None,
                    email=user.email if user else None,
                    daily_average=round(daily_average, 2),
                    weekly_average=round(daily_average * 7, 2),
                    monthly_average=round(daily_average * 30, 2),
                    peak_usage_hour=_mode(hours[uid], 0),
                    most_used_endpoint=_mode(endpoints[uid], "unknown"),
                    usage_variability=round(variability, 2),
                    last_active_date=last_active[uid],
                    is_high_usage=daily_average > t.high_usage_daily,
                    is_unusual_pattern=variability > daily_average * t.unusual_variability_ratio,
                )
            )

        patterns.sort(key=lambda p: p.daily_average, reverse=True)
        return patterns

    async def get_subscription_conversion_report(self) -> SubscriptionConversionReport:
        now = self._clock()
        this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        last_month = (this_month - timedelta(days=1)).replace(day=1)

        free = await self._db.count_users(UserFilter(subscription_tier=SubscriptionTier.FREE))
        paid = await self._db.count_users(UserFilter(paid_only=True))
        this_count = await self._db.count_users(UserFilter(converted_since=this_month))
        last_count = await self._db.count_users(
            UserFilter(converted_since=last_month, converted_before=this_month)
        )

        if this_count > last_count * 1.1:
            trend = ConversionTrend.INCREASING
        elif this_count < last_count * 0.9:
            trend = ConversionTrend.DECREASING
        else:
            trend = ConversionTrend.STABLE

        converted = await self._db.list_users(
            UserFilter(converted_since=_EPOCH, include_deleted=True)
        )
        days = [
            (u.converted_at - u.created_at).total_seconds() / 86400
            for u in converted
            if u.converted_at is not None
        ]

        by_tier = await self._db.aggregate_users(
            group_by="subscription_tier", user_filter=UserFilter(paid_only=True)
        )
        total = free + paid
        return SubscriptionConversionReport(
            total_free_users=free,
            total_paid_users=paid,
            conversion_rate=round(paid / total * 100, 2) if total else 0,
            conversions_this_month=this_count,
            conversions_last_month=last_count,
            conversion_trend=trend,
            average_days_to_conversion=round(statistics.fmean(days), 1) if days else 0,
            conversions_by_tier={row.key: row.count for row in by_tier if row.key is not None},
        )

    async def generate_usage_alerts(self) -> List[UsageAlert]:
        """
        Detect spikes, potential abuse and sudden drops. Computed on demand,
        ordered by severity (critical first).
        """
        now = self._clock()
        alerts: List[UsageAlert] = []
        alerts.extend(await self._spike_alerts(now))
        alerts.extend(await self._abuse_alerts(now))
        alerts.extend(await self._drop_alerts(now))
        alerts.sort(key=lambda a: a.severity.rank, reverse=True)
        if alerts:
            logger.info("Generated %d usage alerts", len(alerts))
        return alerts

    async def _alert(
        self,
        alert_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        user_id: str,
        message: str,
        details: Dict,
        now: datetime,
    ) -> UsageAlert:
        user = await self._db.get_user(user_id)
        return UsageAlert(
            id=alert_id,
            type=alert_type,
            severity=severity,
            user_id=user_id,
            username=user.username if user else None,
            email=user.email if user else None,
            message=message,
            details=details,
            created_at=now,
        )

    async def _spike_alerts(self, now: datetime) -> List[UsageAlert]:
        t = self._thresholds
        start = (now - timedelta(days=t.spike_window_days)).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        per_user: Dict[str, List[Tuple[str, int]]] = defaultdict(list)
        for row in await self._deductions(TransactionFilter(since=start), GroupKey.USER, GroupKey.DAY):
            per_user[row.key[GroupKey.USER.value]].append((row.key[GroupKey.DAY.value], row.total))

        alerts = []
        for uid, days in per_user.items():
            days.sort()
            worst: Optional[Tuple[float, str, int, float]] = None
            for i, (day, total) in enumerate(days):
                history = [amount for _, amount in days[:i]]
                if len(history) < t.spike_min_history_days:
                    continue
                baseline = statistics.fmean(history)
                if baseline < t.spike_min_baseline:
                    continue
                ratio = total / baseline
                if ratio >= t.spike_ratio and (worst is None or ratio > worst[0]):
                    worst = (ratio, day, total, baseline)
            if worst is None:
                continue

            ratio, day, total, baseline = worst
            severity = AlertSeverity.CRITICAL if ratio >= t.spike_critical_ratio else AlertSeverity.HIGH
            alerts.append(
                await self._alert(
                    f"{AlertType.UNUSUAL_SPIKE.value}:{uid}:{day}",
                    AlertType.UNUSUAL_SPIKE,
                    severity,
                    uid,
                    f"Credit usage on {day} was {ratio:.1f}x the user's recent daily average",
                    {
                        "date": day,
                        "credits_spent": total,
                        "rolling_average": round(baseline, 2),
                        "ratio": round(ratio, 2),
                    },
                    now,
                )
            )
        return alerts

    async def _abuse_alerts(self, now: datetime) -> List[UsageAlert]:
        t = self._thresholds
        alerts = []
        rows = await self._deductions(TransactionFilter(since=now - timedelta(hours=24)), GroupKey.USER)
        for row in rows:
            if row.total <= t.abuse_credits_24h and row.count <= t.abuse_transactions_24h:
                continue
            critical = (
                row.total > t.abuse_critical_credits_24h
                or row.count > t.abuse_critical_transactions_24h
            )
            uid = row.key[GroupKey.USER.value]
            alerts.append(
                await self._alert(
                    f"{AlertType.POTENTIAL_ABUSE.value}:{uid}:{now:%Y-%m-%d}",
                    AlertType.POTENTIAL_ABUSE,
                    AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
                    uid,
                    f"{row.total} credits across {row.count} transactions in the last 24 hours",
                    {"credits_spent_24h": row.total, "transactions_24h": row.count},
                    now,
                )
            )
        return alerts

    async def _drop_alerts(self, now: datetime) -> List[UsageAlert]:
        t = self._thresholds
        quiet_since = now - timedelta(days=t.drop_inactive_days)
        users = await self._db.list_users(
            UserFilter(min_total_spent=t.drop_min_total_spent + 1, last_update_before=quiet_since),
            sort_by="total_credits_spent",
            descending=True,
            limit=t.drop_alert_limit,
        )
        alerts = []
        for user in users:
            idle_days = (now - user.last_credit_update).days
            alerts.append(
                await self._alert(
                    f"{AlertType.UNUSUAL_DROP.value}:{user.user_id}",
                    AlertType.UNUSUAL_DROP,
                    AlertSeverity.MEDIUM,
                    user.user_id,
                    f"No credit activity for {idle_days} days after {user.total_credits_spent} credits spent",
                    {
                        "total_credits_spent": user.total_credits_spent,
                        "last_credit_update": user.last_credit_update.isoformat(),
                        "idle_days": idle_days,
                    },
                    now,
                )
            )
        return alerts
