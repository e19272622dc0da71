from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class CreditErrorCode(str, Enum):
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"


class CreditError(Exception):
    """
    Base class for credit ledger failures.

    Business-rule rejections (insufficient balance, bad amounts, unknown users)
    and infrastructure faults share this base so callers can render a single
    structured payload via `to_payload()`.
    """

    code: CreditErrorCode = CreditErrorCode.TRANSACTION_FAILED
    suggested_action: str = "Please try again or contact support"

    def __init__(self, message: str, user_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_id = user_id

    def details(self) -> Dict[str, Any]:
        return {"suggestedAction": self.suggested_action}

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details(),
            }
        }


class UserNotFound(CreditError):
    code = CreditErrorCode.USER_NOT_FOUND
    suggested_action = "Sign in again to initialise your credit account"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}", user_id=user_id)


class InvalidAmount(CreditError, ValueError):
    code = CreditErrorCode.INVALID_AMOUNT
    suggested_action = "Provide a valid credit amount"

    def __init__(self, message: str, amount: Any = None, user_id: Optional[str] = None) -> None:
        super().__init__(message, user_id=user_id)
        self.amount = amount


class InsufficientCredits(CreditError):
    code = CreditErrorCode.INSUFFICIENT_CREDITS
    suggested_action = "Please purchase additional credits or upgrade your subscription"

    def __init__(self, user_id: str, current_balance: int, required_credits: int) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required_credits}, Available: {current_balance}",
            user_id=user_id,
        )
        self.current_balance = current_balance
        self.required_credits = required_credits

    def details(self) -> Dict[str, Any]:
        return {
            "currentBalance": self.current_balance,
            "requiredCredits": self.required_credits,
            "suggestedAction": self.suggested_action,
        }


class TransactionFailed(CreditError):
    """The storage operation itself failed; the message is never shown to end users."""

    code = CreditErrorCode.TRANSACTION_FAILED

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": "Credit service is temporarily unavailable. Please retry.",
                "details": self.details(),
            }
        }
