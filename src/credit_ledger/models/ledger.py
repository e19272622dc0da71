from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec


class LedgerEventType(str, Enum):
    """ERROR entries cover charges that were rejected or never recorded."""

    TRANSACTION = "transaction"
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Audit line for credit activity, also appended to the JSONL ledger file.

    Every balance change gets one entry next to its `CreditTransaction`.
    Charges that never reached the balance (short balance, storage outage
    after the AI request completed) only exist here, keyed by the request's
    `correlation_id`, which is what support reconciles against.
    """

    collection_name: ClassVar[str] = "credit_ledger"
    indexes: ClassVar[List[IndexSpec]] = [
        [("user_id", 1), ("created_at", -1)],
        [("event_type", 1), ("created_at", -1)],
    ]

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Request id tying the entry to the guarded operation that produced it.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
