from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async key/value cache with per-key TTL.

    Used for short-lived, single-process state such as operation progress.
    Nothing stored here is authoritative; ledger data always lives in the
    configured `BaseDBManager`.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ...

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired keys and return how many were removed."""
        ...
