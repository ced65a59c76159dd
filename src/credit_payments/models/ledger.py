from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec, utcnow
from .transaction import PaymentProvider


class LedgerEventType(str, Enum):
    # Balance mutations
    TRANSACTION = "transaction"
    # Provider-side events: checkouts opened, captures, webhooks
    PAYMENT = "payment"
    ERROR = "error"


class LedgerEntry(DBSerializableModel):
    """
    Audit record of one ledger event. Entries are append-only and keyed by
    user and provider payment id so support can reconstruct a purchase.
    """

    collection_name: ClassVar[str] = "credit_ledger"
    indexes: ClassVar[List[IndexSpec]] = [
        IndexSpec(name="idx_ledger_payment", fields=["payment_id", "created_at"]),
        IndexSpec(name="idx_ledger_user", fields=["user_id", "created_at"]),
    ]

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    payment_id: Optional[str] = None
    provider: Optional[PaymentProvider] = None
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = Field(
        default=None, description="Groups the entries written by one request."
    )
    created_at: datetime = Field(default_factory=utcnow)
