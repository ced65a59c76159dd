from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec, utcnow


class NotificationType(str, Enum):
    PURCHASE_COMPLETED = "purchase_completed"
    REFUND_PROCESSED = "refund_processed"
    TRANSACTION_ERROR = "transaction_error"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(DBSerializableModel):
    """
    A purchase/refund notification as handed to the delivery queue. The
    consumer (email sender) updates `status` and `sent_at`.
    """

    collection_name: ClassVar[str] = "credit_notifications"
    indexes: ClassVar[List[IndexSpec]] = [
        IndexSpec(name="idx_notification_user", fields=["user_id", "created_at"]),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    notification_type: NotificationType
    payment_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None

    def to_queue_message(self) -> Dict[str, Any]:
        return {
            "notification_id": self.id,
            "type": self.notification_type.value,
            "user_id": self.user_id,
            "payment_id": self.payment_id,
            "payload": self.payload,
        }
