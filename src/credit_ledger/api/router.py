from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..container import CreditContainer
from ..models.api_models import (
    CreditBalanceResponse,
    OperationStatusResponse,
    TransactionHistoryResponse,
)
from ..models.subscription import SubscriptionEvent
from ..models.transaction import CreditTransaction, TransactionType
from ..services.credit_service import CreditService
from .deps import get_container, get_credit_service, get_current_user_id


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    credit_service: CreditService = Depends(get_credit_service),
) -> CreditBalanceResponse:
    user = await credit_service.get_account(user_id)
    return CreditBalanceResponse(
        user_id=user.user_id,
        credits=user.credits,
        subscription_tier=user.subscription_tier.value,
        subscription_status=user.subscription_status.value,
    )


@router.get("/transactions", response_model=TransactionHistoryResponse)
async def get_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    tx_type: Optional[TransactionType] = Query(None, alias="type"),
    user_id: str = Depends(get_current_user_id),
    credit_service: CreditService = Depends(get_credit_service),
) -> TransactionHistoryResponse:
    history = await credit_service.get_transaction_history(
        user_id, limit=limit, offset=(page - 1) * limit, tx_type=tx_type
    )
    return TransactionHistoryResponse(
        transactions=history.items, page=page, limit=limit, total=history.total
    )


@router.get("/transactions/{transaction_id}", response_model=CreditTransaction)
async def get_transaction(
    transaction_id: str,
    user_id: str = Depends(get_current_user_id),
    credit_service: CreditService = Depends(get_credit_service),
) -> CreditTransaction:
    tx = await credit_service.get_user_transaction(user_id, transaction_id)
    if tx is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found.")
    return tx


@router.get("/operations/{operation_id}", response_model=OperationStatusResponse)
async def get_operation_status(
    operation_id: str,
    user_id: str = Depends(get_current_user_id),
    container: CreditContainer = Depends(get_container),
) -> OperationStatusResponse:
    record = await container.operations.get(operation_id, user_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Operation not found or expired."
        )
    return OperationStatusResponse(
        operation_id=record.operation_id,
        status=record.status.value,
        progress=record.progress,
        error=record.error,
        transaction_id=record.transaction_id,
    )


@subscription_router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def receive_subscription_event(
    event: SubscriptionEvent,
    webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    container: CreditContainer = Depends(get_container),
) -> dict:
    expected = container.settings.SUBSCRIPTION_WEBHOOK_SECRET
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription webhook is not configured.",
        )
    if webhook_secret is None or not hmac.compare_digest(webhook_secret, expected):
        logger.warning("Rejected subscription event with a bad webhook secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret.")

    user = await container.subscription_service.handle_event(event)
    return {
        "status": "processed",
        "user_id": user.user_id,
        "subscription_tier": user.subscription_tier.value,
        "subscription_status": user.subscription_status.value,
        "credits": user.credits,
    }
