from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

from .base import AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Process-local cache with optional TTL.

    Not shared between workers and lost on restart. Expired keys are
    dropped lazily on read and in bulk by `purge_expired`.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}

    def __len__(self) -> int:
        return len(self._store)

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    async def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at, self._clock()):
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._store[key] = (value, expires_at)

    async def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, (_, exp) in self._store.items() if self._expired(exp, now)]
        for key in stale:
            del self._store[key]
        return len(stale)
