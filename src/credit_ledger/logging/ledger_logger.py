from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..errors import CreditError
from ..models.ledger import LedgerEntry, LedgerEventType
from ..models.transaction import CreditTransaction


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Audit trail for credit events: one `LedgerEntry` per event, stored through
    the `BaseDBManager` and appended as a JSON line to `file_path`.

    Every entry is also mirrored to the standard `logging` tree, so missed
    deductions show up in ordinary logs even when both sinks are unavailable.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def file_path(self) -> Path:
        return self._file_path

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.TRANSACTION,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_credit_transaction(
        self,
        tx: CreditTransaction,
        message: str,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        details = {
            "transaction_id": tx.id,
            "type": tx.type.value,
            "amount": tx.amount,
            "balance_after": tx.balance_after,
            "reason": tx.reason,
        }
        if tx.metadata:
            details["metadata"] = tx.metadata
        return await self.log_transaction(tx.user_id, message, details, correlation_id)

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.ERROR,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: Optional[dict[str, Any]] = None) -> LedgerEntry:
        return await self._log(
            LedgerEventType.SYSTEM,
            user_id=None,
            message=message,
            details=details or {},
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> LedgerEntry:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        level = logging.ERROR if event_type is LedgerEventType.ERROR else logging.INFO
        logger.log(
            level,
            "%s: %s",
            event_type.value,
            message,
            extra={"user_id": user_id, "correlation_id": correlation_id},
        )

        try:
            await self._db.add_ledger_entry(entry)
        except CreditError:
            logger.error("Ledger entry could not be persisted; file log only", exc_info=True)

        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.warning("Ledger file %s is not writable", self._file_path, exc_info=True)
        return entry
