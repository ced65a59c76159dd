from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction. Backs idempotency keys for client
    requests; a shared backend (Redis, memcached) is needed once more than
    one API process serves the same users.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def add(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Set `key` only if it is absent. Returns True if the value was stored."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...
