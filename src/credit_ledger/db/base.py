from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.transaction import (
    CreditTransaction,
    GroupKey,
    TransactionAggregate,
    TransactionFilter,
    TransactionType,
)
from ..models.user import UserAggregate, UserCreditRecord, UserFilter


INITIAL_GRANT_REASON = "Initial credit grant"


class BaseDBManager(ABC):
    """
    DB-agnostic async ledger store.

    Concrete implementations (MongoDB, in-memory) own the only contended
    state in the system: a user's balance and their transaction log. All
    balance changes go through `write_transaction_and_balance`, which must
    check and apply the change as one atomic unit per user.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """
        Provide an atomic transaction context if the backend supports it.
        Yields a backend session handle (or None). Should rollback on
        exception and commit on success.
        """
        yield None

    async def ensure_indexes(self) -> None:
        """Create secondary indexes; backends without indexes ignore this."""
        return None

    # User operations
    @abstractmethod
    async def add_user(self, user: UserCreditRecord, initial_grant: int = 0) -> bool:
        """
        Insert a new user record, writing `initial_grant` as an addition.
        Returns False (and changes nothing) if the user already exists.
        """
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserCreditRecord]: ...

    @abstractmethod
    async def update_user_fields(self, user_id: str, fields: Dict[str, Any]) -> UserCreditRecord:
        """Set plain (non-balance) fields. Raises UserNotFound."""
        ...

    @abstractmethod
    async def get_user_credits(self, user_id: str) -> int:
        """Current balance. Raises UserNotFound."""
        ...

    @abstractmethod
    async def list_users(
        self,
        user_filter: Optional[UserFilter] = None,
        sort_by: str = "last_credit_update",
        descending: bool = True,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[UserCreditRecord]: ...

    @abstractmethod
    async def count_users(self, user_filter: Optional[UserFilter] = None) -> int: ...

    @abstractmethod
    async def aggregate_users(
        self,
        group_by: Optional[str] = None,
        user_filter: Optional[UserFilter] = None,
    ) -> List[UserAggregate]:
        """
        Sum balances and lifetime totals over users, optionally grouped by a
        user field (e.g. "subscription_tier"). Without `group_by` a single
        row is returned.
        """
        ...

    # Balance / transaction log
    @abstractmethod
    async def write_transaction_and_balance(
        self,
        user_id: str,
        delta: int,
        tx_type: TransactionType,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        clamp_at_zero: bool = False,
    ) -> CreditTransaction:
        """
        Apply a signed balance change and append its transaction atomically.

        - A negative `delta` without `clamp_at_zero` succeeds only if the
          balance covers it; otherwise raises InsufficientCredits and writes
          nothing.
        - With `clamp_at_zero` the applied change is limited to the current
          balance; the transaction records the applied magnitude and the
          metadata gains `clamped` and `requested_delta`.
        - Raises UserNotFound for unknown users and TransactionFailed on
          storage faults.
        """
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        tx_type: Optional[TransactionType] = None,
    ) -> List[CreditTransaction]:
        """Newest first, ties broken by id, so pages never overlap."""
        ...

    @abstractmethod
    async def count_transactions(self, tx_filter: TransactionFilter) -> int: ...

    @abstractmethod
    async def find_transactions(
        self,
        tx_filter: TransactionFilter,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[CreditTransaction]: ...

    @abstractmethod
    async def aggregate_transactions(
        self,
        tx_filter: TransactionFilter,
        group_by: Sequence[GroupKey] = (),
    ) -> List[TransactionAggregate]:
        """
        Sum of `amount` and count of transactions matching `tx_filter`,
        grouped by the given keys. Rows are not ordered.
        """
        ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
