from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ..cache.base import AsyncCacheBackend
from ..models.operation import OperationRecord, OperationStatus


logger = logging.getLogger(__name__)


class OperationTracker:
    """
    Best-effort progress store for guarded operations.

    Records live in an `AsyncCacheBackend` and expire `ttl_seconds` after
    their last update and are keyed by user, so two callers may reuse the
    same request id. With the in-memory cache this is single-process
    state: a restart or a second worker will not see it.
    """

    def __init__(
        self,
        cache: AsyncCacheBackend,
        ttl_seconds: float = 300,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _key(user_id: str, operation_id: str) -> str:
        return f"operation:{user_id}:{operation_id}"

    async def _save(self, record: OperationRecord) -> OperationRecord:
        record.updated_at = self._clock()
        await self._cache.set(
            self._key(record.user_id, record.operation_id),
            record.model_dump(),
            ttl_seconds=self._ttl_seconds,
        )
        return record

    async def start(self, operation_id: str, user_id: str, endpoint: str) -> OperationRecord:
        now = self._clock()
        record = OperationRecord(
            operation_id=operation_id,
            user_id=user_id,
            endpoint=endpoint,
            created_at=now,
            updated_at=now,
        )
        return await self._save(record)

    async def get(self, operation_id: str, user_id: str) -> Optional[OperationRecord]:
        """Return the caller's record; ids are scoped per user."""
        raw = await self._cache.get(self._key(user_id, operation_id))
        if raw is None:
            return None
        return OperationRecord.model_validate(raw)

    async def update(
        self, operation_id: str, user_id: str, status: OperationStatus, **changes: Any
    ) -> Optional[OperationRecord]:
        record = await self.get(operation_id, user_id)
        if record is None:
            logger.debug("Operation %s expired before status %s", operation_id, status.value)
            return None
        if record.status.is_final:
            return record
        record.status = status
        for name, value in changes.items():
            setattr(record, name, value)
        return await self._save(record)

    async def mark_processing(
        self, operation_id: str, user_id: str, progress: int = 10
    ) -> Optional[OperationRecord]:
        return await self.update(operation_id, user_id, OperationStatus.PROCESSING, progress=progress)

    async def complete(
        self, operation_id: str, user_id: str, transaction_id: Optional[str] = None
    ) -> Optional[OperationRecord]:
        return await self.update(
            operation_id,
            user_id,
            OperationStatus.COMPLETED,
            progress=100,
            transaction_id=transaction_id,
        )

    async def fail(self, operation_id: str, user_id: str, error: str) -> Optional[OperationRecord]:
        return await self.update(operation_id, user_id, OperationStatus.FAILED, error=error)

    async def cleanup(self) -> int:
        removed = await self._cache.purge_expired()
        if removed:
            logger.debug("Dropped %d expired operation records", removed)
        return removed
