from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel

from ..errors import CreditError, CreditErrorCode, InsufficientCredits, InvalidAmount
from ..logging.ledger_logger import LedgerLogger
from ..models.transaction import CreditMutationResult
from .credit_service import CreditService
from .notification_service import NotificationService
from .operation_service import OperationTracker


logger = logging.getLogger(__name__)

DEFAULT_AI_REQUEST_COST = 5


class GuardState(str, Enum):
    DEDUCTED = "deducted"
    DEDUCTION_FAILED = "deduction_failed"
    FREE = "free"


class CreditValidationResult(BaseModel):
    user_id: str
    has_enough_credits: bool
    current_balance: int
    required_credits: int

    def raise_for_balance(self) -> None:
        if not self.has_enough_credits:
            raise InsufficientCredits(self.user_id, self.current_balance, self.required_credits)


class GuardedResult(BaseModel):
    """Outcome of `CreditMiddleware.run_guarded`."""

    operation_id: str
    state: GuardState
    required_credits: int
    result: Any = None
    deduction: Optional[CreditMutationResult] = None

    @property
    def remaining_credits(self) -> Optional[int]:
        return self.deduction.new_balance if self.deduction else None


class CreditMiddleware:
    """
    Request-scoped credit guard around expensive operations.

    The balance is checked before the operation runs and exactly one
    deduction is attempted after it succeeds. A failed deduction is logged
    to the ledger for manual reconciliation and never turns a completed
    operation into an error.
    """

    def __init__(
        self,
        credit_service: CreditService,
        ledger: LedgerLogger,
        notifications: Optional[NotificationService] = None,
        operations: Optional[OperationTracker] = None,
        *,
        default_cost: int = DEFAULT_AI_REQUEST_COST,
    ) -> None:
        self._credits = credit_service
        self._ledger = ledger
        self._notifications = notifications
        self._operations = operations
        self._default_cost = default_cost

    @property
    def default_cost(self) -> int:
        return self._default_cost

    async def validate_credits(
        self, user_id: str, required_credits: Optional[int] = None
    ) -> CreditValidationResult:
        """Read-only check; never mutates the balance."""
        required = self._default_cost if required_credits is None else required_credits
        balance = await self._credits.get_user_credits(user_id)
        return CreditValidationResult(
            user_id=user_id,
            has_enough_credits=balance >= required,
            current_balance=balance,
            required_credits=required,
        )

    async def process_deduction(
        self,
        user_id: str,
        amount: int,
        endpoint: str,
        request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[CreditMutationResult]:
        """
        Deduct for a completed operation. Returns None instead of raising
        when the deduction cannot be recorded.
        """
        tx_metadata = {"endpoint": endpoint, "request_id": request_id, **(metadata or {})}
        try:
            deduction = await self._credits.atomic_deduct_credits(
                user_id,
                amount,
                reason=f"AI request: {endpoint}",
                metadata=tx_metadata,
                correlation_id=request_id,
            )
        except Exception as exc:
            logger.error(
                "Credit deduction failed after successful operation on %s for %s",
                endpoint,
                user_id,
                exc_info=True,
            )
            if isinstance(exc, CreditError):
                code, message = exc.code.value, exc.message
            else:
                code = CreditErrorCode.TRANSACTION_FAILED.value
                message = str(exc) or type(exc).__name__
            details = {
                "endpoint": endpoint,
                "amount": amount,
                "error_code": code,
                "error": message,
            }
            await self._ledger.log_error(
                message="Credit deduction failed after successful operation",
                details=details,
                user_id=user_id,
                correlation_id=request_id,
            )
            if self._notifications is not None:
                await self._notify(
                    self._notifications.notify_transaction_error(
                        user_id, "Credit deduction failed", details
                    )
                )
            return None

        if self._notifications is not None:
            await self._notify(self._notifications.notify_balance(user_id, deduction.new_balance))
        return deduction

    async def _notify(self, pending: Awaitable[Any]) -> None:
        # Runs after the charge; a broken queue must not fail the request.
        try:
            await pending
        except Exception:
            logger.error("Credit notification could not be delivered", exc_info=True)

    async def run_guarded(
        self,
        user_id: str,
        operation: Callable[[], Awaitable[Any]],
        *,
        endpoint: str,
        required_credits: Optional[int] = None,
        request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GuardedResult:
        """
        Validate, execute `operation`, then deduct once.

        Raises InsufficientCredits without calling `operation` when the
        balance is short. Exceptions from `operation` propagate and nothing
        is deducted.
        """
        cost = self._default_cost if required_credits is None else required_credits
        if cost < 0:
            raise InvalidAmount(f"required credits must be non-negative, got {cost}", amount=cost)
        operation_id = request_id or uuid4().hex

        if self._operations is not None:
            await self._operations.start(operation_id, user_id, endpoint)

        validation = await self.validate_credits(user_id, cost)
        if not validation.has_enough_credits:
            logger.info(
                "Rejected %s for %s: balance %d, required %d",
                endpoint,
                user_id,
                validation.current_balance,
                cost,
            )
            if self._operations is not None:
                await self._operations.fail(operation_id, user_id, "Insufficient credits")
            validation.raise_for_balance()

        if self._operations is not None:
            await self._operations.mark_processing(operation_id, user_id)
        try:
            result = await operation()
        except Exception as exc:
            if self._operations is not None:
                await self._operations.fail(
                    operation_id, user_id, str(exc) or type(exc).__name__
                )
            raise

        deduction = None
        if cost == 0:
            state = GuardState.FREE
        else:
            deduction = await self.process_deduction(
                user_id, cost, endpoint, request_id=operation_id, metadata=metadata
            )
            state = GuardState.DEDUCTED if deduction else GuardState.DEDUCTION_FAILED

        if self._operations is not None:
            await self._operations.complete(
                operation_id, user_id, deduction.transaction_id if deduction else None
            )
        return GuardedResult(
            operation_id=operation_id,
            state=state,
            required_credits=cost,
            result=result,
            deduction=deduction,
        )
