from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..container import CreditContainer
from ..models.analytics import (
    BalanceConsistency,
    CreditConsumptionPattern,
    CreditUsageAnalytics,
    SubscriptionConversionReport,
    SystemCreditStats,
    UsageAlert,
    UserCreditDetails,
    UserCreditSummaryPage,
)
from ..models.api_models import AdjustCreditsRequest, CreditMutationResponse
from ..models.subscription import SubscriptionTier
from ..models.user import UserFilter
from ..services.admin_service import AdminService
from ..services.credit_service import CreditService
from .deps import get_admin_service, get_container, get_credit_service, require_admin


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive UTC.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("/credits/stats", response_model=SystemCreditStats)
async def get_credit_stats(admin: AdminService = Depends(get_admin_service)) -> SystemCreditStats:
    return await admin.get_system_credit_stats()


@router.get("/credits/users", response_model=UserCreditSummaryPage)
async def list_user_credits(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("last_credit_update"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    tier: Optional[SubscriptionTier] = Query(None),
    admin: AdminService = Depends(get_admin_service),
) -> UserCreditSummaryPage:
    return await admin.get_user_credit_summaries(
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        user_filter=UserFilter(subscription_tier=tier),
    )


@router.get("/credits/users/{user_id}", response_model=UserCreditDetails)
async def get_user_credit_details(
    user_id: str, admin: AdminService = Depends(get_admin_service)
) -> UserCreditDetails:
    return await admin.get_user_details(user_id)


@router.get("/credits/users/{user_id}/consistency", response_model=BalanceConsistency)
async def check_balance_consistency(
    user_id: str, credit_service: CreditService = Depends(get_credit_service)
) -> BalanceConsistency:
    return await credit_service.validate_balance_consistency(user_id)


@router.post("/credits/adjust", response_model=CreditMutationResponse)
async def adjust_user_credits(
    payload: AdjustCreditsRequest,
    admin_id: str = Depends(require_admin),
    container: CreditContainer = Depends(get_container),
) -> CreditMutationResponse:
    limit = container.settings.MAX_ADMIN_ADJUSTMENT
    if abs(payload.adjustment) > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Adjustment magnitude cannot exceed {limit} credits.",
        )
    result = await container.credit_service.adjust_user_credits(
        payload.user_id, payload.adjustment, payload.reason, admin_id
    )
    return CreditMutationResponse(
        success=result.success,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
    )


@router.get("/credits/analytics", response_model=CreditUsageAnalytics)
async def get_credit_usage_analytics(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    admin: AdminService = Depends(get_admin_service),
) -> CreditUsageAnalytics:
    end = _naive_utc(end) or datetime.utcnow()
    start = _naive_utc(start) or end - timedelta(days=30)
    return await admin.get_credit_usage_analytics(start, end)


@router.get("/analytics/consumption-patterns", response_model=List[CreditConsumptionPattern])
async def get_consumption_patterns(
    user_id: Optional[str] = Query(None),
    admin: AdminService = Depends(get_admin_service),
) -> List[CreditConsumptionPattern]:
    return await admin.get_credit_consumption_patterns(user_id)


@router.get("/analytics/conversion-report", response_model=SubscriptionConversionReport)
async def get_conversion_report(
    admin: AdminService = Depends(get_admin_service),
) -> SubscriptionConversionReport:
    return await admin.get_subscription_conversion_report()


@router.get("/analytics/usage-alerts", response_model=List[UsageAlert])
async def get_usage_alerts(admin: AdminService = Depends(get_admin_service)) -> List[UsageAlert]:
    return await admin.generate_usage_alerts()


@router.post("/subscriptions/renewals")
async def run_monthly_renewals(container: CreditContainer = Depends(get_container)) -> dict:
    renewed = await container.subscription_service.process_monthly_renewals()
    return {"renewed_users": renewed}


@router.post("/subscriptions/grace-period")
async def run_grace_period_sweep(container: CreditContainer = Depends(get_container)) -> dict:
    expired = await container.subscription_service.process_grace_period_users()
    return {"expired_users": expired}
