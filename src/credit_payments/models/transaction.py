from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec, utcnow


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    REFUND = "refund"
    ACHIEVEMENT = "achievement"
    ADJUSTMENT = "adjustment"
    USAGE = "usage"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    STRIPE_LINK = "stripe_link"
    PAYPAL = "paypal"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        if target == self:
            return True
        return target in _ALLOWED_TRANSITIONS[self]

    @classmethod
    def sources_for(cls, target: "PaymentStatus") -> List["PaymentStatus"]:
        """Statuses from which `target` may be entered (excluding itself)."""
        return [status for status, allowed in _ALLOWED_TRANSITIONS.items() if target in allowed]


_ALLOWED_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Types guarded by the (payment_provider, payment_id, type) uniqueness constraint
UNIQUE_PAYMENT_TYPES = (TransactionType.PURCHASE, TransactionType.REFUND)

# Rows whose balance change must follow; `credits_applied` marks it done.
UNAPPLIED_GRANT_STATES = (
    (TransactionType.PURCHASE, PaymentStatus.COMPLETED),
    (TransactionType.REFUND, PaymentStatus.REFUNDED),
)


class Transaction(DBSerializableModel):
    """
    A single credit-affecting event in the ledger.

    `amount` is signed: grants are positive, usage is negative, and a refund
    stores the magnitude of the grant it reverses.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    indexes: ClassVar[List[IndexSpec]] = [
        IndexSpec(
            name="uniq_provider_payment_type",
            fields=["payment_provider", "payment_id", "type"],
            unique=True,
            partial_filter={"type": [t.value for t in UNIQUE_PAYMENT_TYPES]},
            require_fields=["payment_id"],
        ),
        IndexSpec(name="idx_payment_status", fields=["payment_id", "payment_status"]),
        IndexSpec(name="idx_user_created", fields=["user_id", "created_at"]),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    type: TransactionType
    amount: int
    description: Optional[str] = None
    payment_id: Optional[str] = Field(
        default=None,
        description="Provider payment/order id; idempotency key with payment_provider.",
    )
    payment_provider: Optional[PaymentProvider] = None
    payment_status: Optional[PaymentStatus] = None
    payment_amount: Optional[float] = Field(
        default=None, description="Monetary amount charged, for reporting."
    )
    currency: Optional[str] = None
    credits_applied: bool = Field(
        default=False,
        description="Set once the balance change for a completed grant or refund has been applied.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
