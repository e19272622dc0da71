from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


class AsyncNotificationQueue(ABC):
    """
    Outbound channel for credit notifications. Delivery (email, push, a
    broker consumer) happens on the other side of the queue.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    Collects payloads in a list; used by tests.
    """

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)

    def drain(self) -> List[Dict[str, Any]]:
        messages, self.messages = self.messages, []
        return messages


class LoggingNotificationQueue(AsyncNotificationQueue):
    """
    Default queue when no broker is configured: each payload becomes one
    structured log line for an external shipper to pick up.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        logger.log(self._level, "notification %s", json.dumps(payload, default=str))
