from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..db.base import BaseDBManager
from ..errors import InsufficientCredits, InvalidAmount, UserNotFound
from ..logging.ledger_logger import LedgerLogger
from ..models.analytics import BalanceConsistency
from ..models.base import PaginatedResult
from ..models.subscription import SubscriptionUpdate
from ..models.transaction import (
    CreditMutationResult,
    CreditTransaction,
    GroupKey,
    TransactionFilter,
    TransactionType,
)
from ..models.user import UserCreditRecord


logger = logging.getLogger(__name__)

DEFAULT_INITIAL_CREDITS = 200


def _check_amount(amount: Any, user_id: str, allow_zero: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an integer, got {amount!r}", amount=amount, user_id=user_id)
    if amount < 0 or (amount == 0 and not allow_zero):
        bound = "non-negative" if allow_zero else "positive"
        raise InvalidAmount(f"amount must be {bound}, got {amount}", amount=amount, user_id=user_id)
    return amount


class CreditService:
    """
    High-level credit management service.

    All balance changes are delegated to `BaseDBManager.write_transaction_and_balance`,
    which checks and writes as one atomic step; this class never computes a
    new balance from a value it read earlier.

    Missing users are provisioned with the default grant on user-facing calls
    (`get_user_credits`, `add_credits`, `refund_credits`,
    `atomic_deduct_credits`, `has_enough_credits`). Administrative calls raise
    `UserNotFound` instead.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        *,
        initial_credits: int = DEFAULT_INITIAL_CREDITS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._initial_credits = initial_credits
        self._clock = clock

    @property
    def initial_credits(self) -> int:
        return self._initial_credits

    async def provision_user(
        self,
        user_id: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> UserCreditRecord:
        """Create the credit record on first sign-in. Safe to call repeatedly."""
        created = await self._db.add_user(
            UserCreditRecord(user_id=user_id, username=username, email=email),
            initial_grant=self._initial_credits,
        )
        if created:
            logger.info("Provisioned credit account for %s", user_id)
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credit account created",
                details={"initial_credits": self._initial_credits},
                correlation_id=correlation_id,
            )
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def get_account(self, user_id: str) -> UserCreditRecord:
        user = await self._db.get_user(user_id)
        if user is None:
            user = await self.provision_user(user_id)
        return user

    async def get_user_credits(self, user_id: str) -> int:
        try:
            return await self._db.get_user_credits(user_id)
        except UserNotFound:
            user = await self.provision_user(user_id)
            return user.credits

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        return await self.get_user_credits(user_id) >= amount

    async def _write(
        self,
        user_id: str,
        delta: int,
        tx_type: TransactionType,
        reason: str,
        metadata: Optional[Dict[str, Any]],
        correlation_id: Optional[str],
    ) -> CreditTransaction:
        try:
            return await self._db.write_transaction_and_balance(
                user_id, delta, tx_type, reason, metadata
            )
        except UserNotFound:
            await self.provision_user(user_id, correlation_id=correlation_id)
            return await self._db.write_transaction_and_balance(
                user_id, delta, tx_type, reason, metadata
            )

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        reason: str = "Credits added",
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        """
        Add credits and return the new balance.

        A zero amount is accepted and records an annotation-only transaction
        (e.g. a cancellation that leaves the balance untouched).
        """
        _check_amount(amount, user_id, allow_zero=True)
        tx = await self._write(
            user_id, amount, TransactionType.ADDITION, reason, metadata, correlation_id
        )
        await self._ledger.log_credit_transaction(tx, "Credits added", correlation_id)
        return tx.balance_after

    async def refund_credits(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> CreditMutationResult:
        _check_amount(amount, user_id)
        tx = await self._write(
            user_id, amount, TransactionType.REFUND, reason, metadata, correlation_id
        )
        await self._ledger.log_credit_transaction(tx, "Credits refunded", correlation_id)
        return CreditMutationResult(
            new_balance=tx.balance_after, transaction_id=tx.id, transaction=tx
        )

    async def atomic_deduct_credits(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> CreditMutationResult:
        """
        Deduct `amount` credits if, and only if, the balance covers it.

        Raises InsufficientCredits (carrying the balance seen by the atomic
        update) and writes no transaction when it does not.
        """
        _check_amount(amount, user_id)
        try:
            tx = await self._write(
                user_id, -amount, TransactionType.DEDUCTION, reason, metadata, correlation_id
            )
        except InsufficientCredits as exc:
            await self._ledger.log_error(
                message="Insufficient credits for deduction",
                details={
                    "requested": amount,
                    "balance": exc.current_balance,
                    "reason": reason,
                },
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        await self._ledger.log_credit_transaction(tx, "Credits deducted", correlation_id)
        return CreditMutationResult(
            new_balance=tx.balance_after, transaction_id=tx.id, transaction=tx
        )

    async def adjust_user_credits(
        self,
        user_id: str,
        adjustment: int,
        reason: str,
        admin_id: str,
        correlation_id: Optional[str] = None,
    ) -> CreditMutationResult:
        """
        Administrative override. Negative adjustments are clamped so the
        balance never drops below zero; the transaction keeps the requested
        delta in its metadata.
        """
        if isinstance(adjustment, bool) or not isinstance(adjustment, int) or adjustment == 0:
            raise InvalidAmount(
                f"adjustment must be a non-zero integer, got {adjustment!r}",
                amount=adjustment,
                user_id=user_id,
            )
        tx_type = TransactionType.ADDITION if adjustment > 0 else TransactionType.DEDUCTION
        metadata = {
            "admin_id": admin_id,
            "adjustment_type": "admin",
            "requested_delta": adjustment,
        }
        tx = await self._db.write_transaction_and_balance(
            user_id,
            adjustment,
            tx_type,
            f"Admin adjustment: {reason}",
            metadata,
            clamp_at_zero=True,
        )
        if tx.metadata.get("clamped"):
            logger.warning(
                "Admin %s adjustment of %d for %s clamped to -%d",
                admin_id,
                adjustment,
                user_id,
                tx.amount,
            )
        await self._ledger.log_credit_transaction(tx, "Admin credit adjustment", correlation_id)
        return CreditMutationResult(
            new_balance=tx.balance_after, transaction_id=tx.id, transaction=tx
        )

    async def update_user_subscription(
        self,
        user_id: str,
        update: SubscriptionUpdate,
        correlation_id: Optional[str] = None,
    ) -> UserCreditRecord:
        """Mirror tier/status locally. Never touches the balance."""
        user = await self._db.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)

        fields: Dict[str, Any] = {}
        if update.tier is not None:
            fields["subscription_tier"] = update.tier
            if update.tier.is_paid and user.converted_at is None:
                fields["converted_at"] = self._clock()
        if update.status is not None:
            fields["subscription_status"] = update.status
        if not fields:
            return user
        fields["subscription_updated_at"] = self._clock()

        updated = await self._db.update_user_fields(user_id, fields)
        await self._ledger.log_transaction(
            user_id=user_id,
            message="Subscription updated",
            details={
                "tier": updated.subscription_tier.value,
                "status": updated.subscription_status.value,
            },
            correlation_id=correlation_id,
        )
        return updated

    async def validate_balance_consistency(self, user_id: str) -> BalanceConsistency:
        """
        Recompute the balance from the transaction log and compare it with
        the stored value. Drift is reported, never repaired.
        """
        user_balance = await self._db.get_user_credits(user_id)
        rows = await self._db.aggregate_transactions(
            TransactionFilter(user_id=user_id), group_by=[GroupKey.TYPE]
        )
        calculated = 0
        count = 0
        for row in rows:
            calculated += TransactionType(row.key[GroupKey.TYPE.value]).sign * row.total
            count += row.count

        result = BalanceConsistency(
            user_id=user_id,
            is_consistent=user_balance == calculated,
            user_balance=user_balance,
            calculated_balance=calculated,
            transaction_count=count,
        )
        if not result.is_consistent:
            logger.warning(
                "Balance drift for %s: stored %d, log %d", user_id, user_balance, calculated
            )
            await self._ledger.log_error(
                message="Balance drift detected",
                details={
                    "user_balance": user_balance,
                    "calculated_balance": calculated,
                    "drift": result.drift,
                },
                user_id=user_id,
            )
        return result

    async def get_transaction_history(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        tx_type: Optional[TransactionType] = None,
    ) -> PaginatedResult[CreditTransaction]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if offset < 0:
            raise ValueError("offset must be non-negative")
        items = await self._db.list_transactions(user_id, limit, offset, tx_type)
        total = await self._db.count_transactions(TransactionFilter(user_id=user_id, type=tx_type))
        return PaginatedResult[CreditTransaction](
            items=items, total=total, limit=limit, offset=offset
        )

    async def get_user_transaction(
        self, user_id: str, transaction_id: str
    ) -> Optional[CreditTransaction]:
        """Look up one transaction; another user's id reads as missing."""
        tx = await self._db.get_transaction(transaction_id)
        if tx is None or tx.user_id != user_id:
            return None
        return tx
