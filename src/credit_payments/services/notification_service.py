from __future__ import annotations

import logging
from typing import Any, Dict

from ..db.base import BaseDBManager
from ..models.notification import (
    NotificationEvent,
    NotificationStatus,
    NotificationType,
)
from ..notifications.queue import AsyncNotificationQueue

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Records notifications and hands them to the delivery queue.

    Delivery is a side channel: a failure here is logged and never fails the
    payment flow that triggered it.
    """

    def __init__(self, db: BaseDBManager, queue: AsyncNotificationQueue) -> None:
        self._db = db
        self._queue = queue

    async def notify_purchase_completed(
        self, user_id: str, credits: int, new_balance: int, payment_id: str | None
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.PURCHASE_COMPLETED,
            {"credits": credits, "new_balance": new_balance},
            payment_id,
        )

    async def notify_refund_processed(
        self, user_id: str, credits: int, new_balance: int, payment_id: str | None
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.REFUND_PROCESSED,
            {"credits": credits, "new_balance": new_balance},
            payment_id,
        )

    async def notify_transaction_error(
        self, user_id: str, message: str, details: dict
    ) -> None:
        await self._dispatch(
            user_id,
            NotificationType.TRANSACTION_ERROR,
            {"message": message, "details": details},
        )

    async def _dispatch(
        self,
        user_id: str,
        notification_type: NotificationType,
        payload: Dict[str, Any],
        payment_id: str | None = None,
    ) -> None:
        try:
            event = await self._db.add_notification_event(
                NotificationEvent(
                    user_id=user_id,
                    notification_type=notification_type,
                    payment_id=payment_id,
                    payload=payload,
                    status=NotificationStatus.PENDING,
                )
            )
            await self._queue.enqueue(event.to_queue_message())
        except Exception:
            logger.exception(
                "Failed to enqueue %s notification for user %s",
                notification_type.value,
                user_id,
            )
