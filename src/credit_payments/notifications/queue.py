from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class AsyncNotificationQueue(ABC):
    """
    Outbound channel towards the email sender. Messages are the dicts built
    by `NotificationEvent.to_queue_message`.
    """

    @abstractmethod
    async def enqueue(self, message: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """
    Keeps the most recent `maxlen` messages in process. Used by tests and
    when no broker is configured, in which case nothing is delivered.
    """

    def __init__(self, maxlen: Optional[int] = 1000) -> None:
        self.messages: Deque[Dict[str, Any]] = deque(maxlen=maxlen)

    async def enqueue(self, message: Dict[str, Any]) -> None:
        logger.debug("Queued %s notification for user %s", message.get("type"), message.get("user_id"))
        self.messages.append(message)
