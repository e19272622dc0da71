from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, IndexSpec


class TransactionType(str, Enum):
    ADDITION = "addition"
    DEDUCTION = "deduction"
    REFUND = "refund"

    @property
    def sign(self) -> int:
        return -1 if self is TransactionType.DEDUCTION else 1


class CreditTransaction(DBSerializableModel):
    """
    Immutable record of one balance change; written once, never updated.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    indexes: ClassVar[List[IndexSpec]] = [
        [("user_id", 1), ("created_at", -1)],
        [("user_id", 1), ("type", 1)],
        [("type", 1), ("created_at", -1)],
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    type: TransactionType
    amount: int = Field(ge=0, description="Magnitude of the balance change.")
    reason: str
    balance_after: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def signed_amount(self) -> int:
        return self.type.sign * self.amount


class TransactionFilter(BaseModel):
    """Predicate over the transaction log used by history and analytics queries."""

    user_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    type: Optional[TransactionType] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    has_endpoint: bool = False

    def matches(self, tx: CreditTransaction) -> bool:
        if self.user_id is not None and tx.user_id != self.user_id:
            return False
        if self.user_ids is not None and tx.user_id not in self.user_ids:
            return False
        if self.type is not None and tx.type != self.type:
            return False
        if self.since is not None and tx.created_at < self.since:
            return False
        if self.until is not None and tx.created_at > self.until:
            return False
        if self.has_endpoint and not tx.metadata.get("endpoint"):
            return False
        return True


class GroupKey(str, Enum):
    USER = "user_id"
    DAY = "day"
    HOUR = "hour"
    ENDPOINT = "endpoint"
    TYPE = "type"

    def extract(self, tx: CreditTransaction) -> Any:
        if self is GroupKey.USER:
            return tx.user_id
        if self is GroupKey.DAY:
            return tx.created_at.strftime("%Y-%m-%d")
        if self is GroupKey.HOUR:
            return tx.created_at.hour
        if self is GroupKey.TYPE:
            return tx.type.value
        return tx.metadata.get("endpoint")


class TransactionAggregate(BaseModel):
    """One row of a grouped sum over the transaction log."""

    key: Dict[str, Any] = Field(default_factory=dict)
    total: int = 0
    count: int = 0
    first_at: Optional[datetime] = None
    last_at: Optional[datetime] = None


class CreditMutationResult(BaseModel):
    success: bool = True
    new_balance: int
    transaction_id: str
    transaction: Optional[CreditTransaction] = None
