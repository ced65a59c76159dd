from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..cache.base import AsyncCacheBackend
from ..models.base import utcnow

logger = logging.getLogger(__name__)

# Covers delayed client retries
IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60


class IdempotencyState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class IdempotencyRecord(BaseModel):
    state: IdempotencyState
    endpoint: str
    user_id: str
    result: Optional[Any] = None
    status_code: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class IdempotencyService:
    """
    Makes client-retried requests (``X-Idempotency-Key``) execute once.

    A key is reserved as pending before the operation runs. A retry finding
    a pending key is told the request is in progress; one finding a
    completed key gets the cached result. Failed operations drop the key so
    the client can retry.
    """

    key_prefix = "idempotency:"

    def __init__(self, cache: AsyncCacheBackend, ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS) -> None:
        self._cache = cache
        self._ttl = ttl_seconds

    def _cache_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        raw = await self._cache.get(self._cache_key(key))
        return IdempotencyRecord.model_validate(raw) if raw is not None else None

    async def begin(self, key: str, endpoint: str, user_id: str) -> Optional[IdempotencyRecord]:
        """
        Reserve `key`. Returns None when the caller may proceed, otherwise the
        record already stored under the key.
        """
        record = IdempotencyRecord(
            state=IdempotencyState.PENDING, endpoint=endpoint, user_id=user_id
        )
        if await self._cache.add(self._cache_key(key), record.model_dump(mode="json"), self._ttl):
            return None
        return await self.get(key)

    async def complete(self, key: str, result: Any, status_code: int = 200) -> None:
        existing = await self.get(key)
        if existing is None:
            logger.warning("Attempted to complete unknown idempotency key %s", key)
            return
        record = existing.model_copy(
            update={
                "state": IdempotencyState.COMPLETED,
                "result": result,
                "status_code": status_code,
                "completed_at": utcnow(),
            }
        )
        await self._cache.set(self._cache_key(key), record.model_dump(mode="json"), self._ttl)

    async def fail(self, key: str) -> None:
        await self._cache.delete(self._cache_key(key))
