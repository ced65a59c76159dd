from __future__ import annotations

from datetime import timedelta

from ..db.base import BaseDBManager
from ..models.base import utcnow
from ..models.payment import RevenueSummary


class ReportingService:
    """Read-only revenue queries for analytics; never used by the payment flows."""

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def revenue_summary(self, window_days: int = 30) -> RevenueSummary:
        since = utcnow() - timedelta(days=window_days)
        return RevenueSummary(
            total=await self._db.sum_completed_purchases(),
            last_30_days=await self._db.sum_completed_purchases(since=since),
            by_provider=await self._db.group_by_provider(),
        )
