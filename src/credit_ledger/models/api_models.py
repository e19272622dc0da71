from typing import List, Optional

from pydantic import BaseModel, Field

from .transaction import CreditTransaction


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int
    subscription_tier: str
    subscription_status: str


class TransactionHistoryResponse(BaseModel):
    transactions: List[CreditTransaction]
    page: int
    limit: int
    total: int


class AdjustCreditsRequest(BaseModel):
    user_id: str
    adjustment: int
    reason: str = Field(min_length=1)


class CreditMutationResponse(BaseModel):
    success: bool
    new_balance: int
    transaction_id: str


class OperationStatusResponse(BaseModel):
    operation_id: str
    status: str
    progress: int
    error: Optional[str] = None
    transaction_id: Optional[str] = None
