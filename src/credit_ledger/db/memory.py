from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from .base import INITIAL_GRANT_REASON, BaseDBManager
from ..errors import InsufficientCredits, InvalidAmount, UserNotFound
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


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Atomicity comes from the event loop: every balance check-and-write runs
    without an `await` in between, so no other coroutine can interleave.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self._clock = clock
        self._users: Dict[str, UserCreditRecord] = {}
        self._transactions: List[CreditTransaction] = []
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return f"{self._id_counter:012d}"

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield None

    # Inspection helpers for tests
    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)

    @property
    def notifications(self) -> List[NotificationEvent]:
        return list(self._notifications)

    # User operations
    async def add_user(self, user: UserCreditRecord, initial_grant: int = 0) -> bool:
        if user.user_id in self._users:
            return False
        user = user.model_copy(deep=True)
        now = self._clock()
        user.created_at = user.updated_at = user.last_credit_update = now
        user.credits = initial_grant
        user.total_credits_earned = initial_grant
        self._users[user.user_id] = user
        if initial_grant > 0:
            self._transactions.append(
                CreditTransaction(
                    id=self._next_id(),
                    user_id=user.user_id,
                    type=TransactionType.ADDITION,
                    amount=initial_grant,
                    reason=INITIAL_GRANT_REASON,
                    balance_after=initial_grant,
                    metadata={"event_type": "initial_grant"},
                    created_at=now,
                )
            )
        return True

    async def get_user(self, user_id: str) -> Optional[UserCreditRecord]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user is not None else None

    async def update_user_fields(self, user_id: str, fields: Dict[str, Any]) -> UserCreditRecord:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        for name, value in fields.items():
            setattr(user, name, value)
        user.updated_at = self._clock()
        return user.model_copy(deep=True)

    async def get_user_credits(self, user_id: str) -> int:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user.credits

    def _select_users(self, user_filter: Optional[UserFilter]) -> List[UserCreditRecord]:
        user_filter = user_filter or UserFilter()
        return [u for u in self._users.values() if user_filter.matches(u)]

    async def list_users(
        self,
        user_filter: Optional[UserFilter] = None,
        sort_by: str = "last_credit_update",
        descending: bool = True,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[UserCreditRecord]:
        users = self._select_users(user_filter)
        users.sort(key=lambda u: (getattr(u, sort_by), u.user_id), reverse=descending)
        end = None if limit is None else skip + limit
        return [u.model_copy(deep=True) for u in users[skip:end]]

    async def count_users(self, user_filter: Optional[UserFilter] = None) -> int:
        return len(self._select_users(user_filter))

    async def aggregate_users(
        self,
        group_by: Optional[str] = None,
        user_filter: Optional[UserFilter] = None,
    ) -> List[UserAggregate]:
        rows: Dict[Optional[str], UserAggregate] = {}
        for user in self._select_users(user_filter):
            key = _plain(getattr(user, group_by)) if group_by else None
            row = rows.setdefault(key, UserAggregate(key=key))
            row.count += 1
            row.credits += user.credits
            row.total_credits_earned += user.total_credits_earned
            row.total_credits_spent += user.total_credits_spent
        if group_by is None and not rows:
            return [UserAggregate()]
        return list(rows.values())

    # Balance / transaction log
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
        if delta * tx_type.sign < 0:
            raise InvalidAmount(
                f"{tx_type.value} cannot carry a delta of {delta}", amount=delta, user_id=user_id
            )
        # No awaits below this line: check and write are one step on the loop.
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)

        metadata = dict(metadata or {})
        applied = delta
        if delta < 0:
            if clamp_at_zero:
                applied = max(delta, -user.credits)
                metadata["requested_delta"] = delta
                metadata["clamped"] = applied != delta
            elif user.credits < -delta:
                raise InsufficientCredits(user_id, user.credits, -delta)

        now = self._clock()
        user.credits += applied
        if tx_type is TransactionType.DEDUCTION:
            user.total_credits_spent += -applied
        else:
            user.total_credits_earned += applied
        user.last_credit_update = now
        user.updated_at = now

        tx = CreditTransaction(
            id=self._next_id(),
            user_id=user_id,
            type=tx_type,
            amount=abs(applied),
            reason=reason,
            balance_after=user.credits,
            metadata=metadata,
            created_at=now,
        )
        self._transactions.append(tx)
        return tx.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        for tx in self._transactions:
            if tx.id == transaction_id:
                return tx.model_copy(deep=True)
        return None

    def _select_transactions(
        self, tx_filter: TransactionFilter, newest_first: bool = True
    ) -> List[CreditTransaction]:
        matched = [t for t in self._transactions if tx_filter.matches(t)]
        matched.sort(key=lambda t: (t.created_at, t.id or ""), reverse=newest_first)
        return matched

    async def list_transactions(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        tx_type: Optional[TransactionType] = None,
    ) -> List[CreditTransaction]:
        matched = self._select_transactions(TransactionFilter(user_id=user_id, type=tx_type))
        return [t.model_copy(deep=True) for t in matched[offset : offset + limit]]

    async def count_transactions(self, tx_filter: TransactionFilter) -> int:
        return len(self._select_transactions(tx_filter))

    async def find_transactions(
        self,
        tx_filter: TransactionFilter,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[CreditTransaction]:
        matched = self._select_transactions(tx_filter, newest_first=newest_first)
        if limit is not None:
            matched = matched[:limit]
        return [t.model_copy(deep=True) for t in matched]

    async def aggregate_transactions(
        self,
        tx_filter: TransactionFilter,
        group_by: Sequence[GroupKey] = (),
    ) -> List[TransactionAggregate]:
        rows: Dict[Tuple[Any, ...], TransactionAggregate] = {}
        for tx in self._select_transactions(tx_filter, newest_first=False):
            key = {g.value: g.extract(tx) for g in group_by}
            row = rows.setdefault(tuple(key.values()), TransactionAggregate(key=key))
            row.total += tx.amount
            row.count += 1
            if row.first_at is None or tx.created_at < row.first_at:
                row.first_at = tx.created_at
            if row.last_at is None or tx.created_at > row.last_at:
                row.last_at = tx.created_at
        return list(rows.values())

    # Notifications
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification)
        return notification

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry
