from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .transaction import CreditTransaction


class BalanceConsistency(BaseModel):
    """Outcome of recomputing a balance from the transaction log."""

    user_id: str
    is_consistent: bool
    user_balance: int
    calculated_balance: int
    transaction_count: int = 0

    @property
    def drift(self) -> int:
        return self.user_balance - self.calculated_balance


class TopSpender(BaseModel):
    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    total_spent: int
    current_balance: int


class SystemCreditStats(BaseModel):
    total_users: int = 0
    total_credits_in_circulation: int = 0
    total_credits_earned: int = 0
    total_credits_spent: int = 0
    average_credits_per_user: float = 0
    subscription_distribution: Dict[str, int] = Field(default_factory=dict)
    recent_transactions: List[CreditTransaction] = Field(default_factory=list)
    top_spenders: List[TopSpender] = Field(default_factory=list)


class UserCreditSummary(BaseModel):
    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    credits: int
    total_credits_earned: int
    total_credits_spent: int
    subscription_tier: str
    subscription_status: str
    last_credit_update: datetime
    recent_transaction_count: int = 0


class UserCreditSummaryPage(BaseModel):
    users: List[UserCreditSummary] = Field(default_factory=list)
    total: int
    page: int
    total_pages: int


class UserDetailStats(BaseModel):
    total_transactions: int
    last_30_days_spent: int
    average_transaction_amount: float


class UserCreditDetails(BaseModel):
    user: UserCreditSummary
    transactions: List[CreditTransaction] = Field(default_factory=list)
    stats: UserDetailStats


class DailyUsage(BaseModel):
    date: str
    credits_spent: int
    transactions: int


class EndpointUsage(BaseModel):
    endpoint: str
    credits_spent: int
    transactions: int


class CreditUsageAnalytics(BaseModel):
    start: datetime
    end: datetime
    total_credits_spent: int = 0
    total_transactions: int = 0
    daily_usage: List[DailyUsage] = Field(default_factory=list)
    top_endpoints: List[EndpointUsage] = Field(default_factory=list)


class CreditConsumptionPattern(BaseModel):
    user_id: str
    username: Optional[str] = None
    email: Optional[str] = None
    daily_average: float
    weekly_average: float
    monthly_average: float
    peak_usage_hour: int
    most_used_endpoint: str
    usage_variability: float = Field(description="Standard deviation of daily spend.")
    last_active_date: datetime
    is_high_usage: bool
    is_unusual_pattern: bool


class ConversionTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class SubscriptionConversionReport(BaseModel):
    total_free_users: int = 0
    total_paid_users: int = 0
    conversion_rate: float = 0
    conversions_this_month: int = 0
    conversions_last_month: int = 0
    conversion_trend: ConversionTrend = ConversionTrend.STABLE
    average_days_to_conversion: float = 0
    conversions_by_tier: Dict[str, int] = Field(default_factory=dict)


class AlertType(str, Enum):
    UNUSUAL_SPIKE = "unusual_spike"
    UNUSUAL_DROP = "unusual_drop"
    POTENTIAL_ABUSE = "potential_abuse"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3, "critical": 4}[self.value]


class UsageAlert(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    resolved: bool = False


class AnalyticsThresholds(BaseModel):
    """Tunables for consumption flags and usage alerts."""

    high_usage_daily: float = 50
    unusual_variability_ratio: float = 2.0
    pattern_window_days: int = 30
    spike_ratio: float = 5.0
    spike_critical_ratio: float = 10.0
    spike_min_baseline: float = 10
    spike_min_history_days: int = 2
    spike_window_days: int = 7
    abuse_credits_24h: int = 1000
    abuse_transactions_24h: int = 200
    abuse_critical_credits_24h: int = 2000
    abuse_critical_transactions_24h: int = 500
    drop_min_total_spent: int = 100
    drop_inactive_days: int = 7
    drop_alert_limit: int = 10
