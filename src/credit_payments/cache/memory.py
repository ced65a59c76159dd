from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

from .base import AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    In-process cache with optional TTL.
    Intended for tests and single-process deployments.
    """

    def __init__(self) -> None:
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        item = self._store.get(key)
        if item is None:
            return None
        if item[1] is not None and item[1] < time.time():
            self._store.pop(key, None)
            return None
        return item

    async def get(self, key: str) -> Optional[Any]:
        item = self._live(key)
        return item[0] if item is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds is not None else None
        self._store[key] = (value, expires_at)

    async def add(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        if self._live(key) is not None:
            return False
        await self.set(key, value, ttl_seconds)
        return True

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)
