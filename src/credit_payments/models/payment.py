from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .transaction import PaymentProvider, TransactionType


class ErrorCode(str, Enum):
    """Stable error strings consumed by the presentation layer."""

    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    CAPTURE_FAILED = "CAPTURE_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_PACKAGE = "INVALID_PACKAGE"
    USER_NOT_FOUND = "USER_NOT_FOUND"


class WebhookEventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    SESSION_EXPIRED = "session.expired"
    # Authentic provider event with no ledger meaning (e.g. order approved)
    IGNORED = "event.ignored"


# Gateway DTOs


class CreditPackage(BaseModel):
    id: str
    name: str
    credits: int
    bonus_credits: int = 0
    price_eur: float
    discount: int = 0
    badge: Optional[str] = None

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus_credits


class CheckoutParams(BaseModel):
    user_id: str
    user_email: Optional[str] = None
    package: CreditPackage
    success_url: str
    cancel_url: str


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None
    provider: PaymentProvider


class CaptureResult(BaseModel):
    success: bool
    credits: Optional[int] = None
    capture_id: Optional[str] = None
    error: Optional[str] = None


class RefundResult(BaseModel):
    success: bool
    refund_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class PaymentVerification(BaseModel):
    success: bool
    credits: Optional[int] = None
    status: Optional[str] = None


class WebhookEvent(BaseModel):
    """Provider notification normalised by a gateway."""

    type: WebhookEventType
    payment_id: Optional[str] = None
    user_id: Optional[str] = None
    amount: Optional[float] = None
    credits: Optional[int] = None
    currency: Optional[str] = None
    provider_event_type: Optional[str] = None
    raw_event: Any = None


# Ledger DTOs


class CreditOperation(BaseModel):
    user_id: str
    amount: int
    type: TransactionType
    description: Optional[str] = None
    payment_provider: Optional[PaymentProvider] = None
    payment_id: Optional[str] = None
    payment_amount: Optional[float] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CreditResult(BaseModel):
    success: bool
    new_balance: int = 0
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    # True when the operation found its work already done (lost race / replay)
    already_applied: bool = False


class BalanceCheck(BaseModel):
    sufficient: bool
    balance: int
    required: int


class ProviderRevenue(BaseModel):
    payment_provider: Optional[PaymentProvider] = None
    total: float = 0.0
    count: int = 0


# Use case results


class CapturePaymentResult(BaseModel):
    success: bool
    credits: Optional[int] = None
    capture_id: Optional[str] = None
    new_balance: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None


class WebhookProcessingResult(BaseModel):
    success: bool
    processed: bool
    event_type: Optional[str] = None
    error: Optional[str] = None


class CheckoutResult(BaseModel):
    success: bool
    session_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None


class VerifyPaymentResult(BaseModel):
    success: bool
    credits: Optional[int] = None
    new_balance: Optional[int] = None
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None


class RevenueSummary(BaseModel):
    total: float
    last_30_days: float
    by_provider: List[ProviderRevenue] = Field(default_factory=list)
