from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import ClassVar, Dict, FrozenSet, Iterable, Mapping, Optional

from ..exceptions import CaptureNotSupportedError, CreditPaymentsError
from ..models.payment import (
    CaptureResult,
    CheckoutParams,
    CheckoutSession,
    PaymentVerification,
    RefundResult,
    WebhookEvent,
)
from ..models.transaction import PaymentProvider


class GatewayCapability(str, Enum):
    CAPTURE = "capture"
    REFUND = "refund"
    VERIFY_PAYMENT = "verify_payment"


class PaymentGateway(ABC):
    """
    Uniform interface over one payment provider.

    Callers must check `is_configured()` before anything else and query
    optional operations with `supports()` instead of inspecting the concrete
    class. Gateways never touch the ledger.
    """

    provider: PaymentProvider
    capabilities: ClassVar[FrozenSet[GatewayCapability]] = frozenset()

    def supports(self, capability: GatewayCapability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutSession:
        """
        Create the provider-side session/order. Its id becomes the
        `payment_id` of the PENDING transaction.
        """
        ...

    @abstractmethod
    async def verify_payment(self, session_id: str) -> PaymentVerification:
        ...

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes | str,
        signature: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        """
        Authenticate and normalise a provider notification.

        Returns None on any verification failure; raises
        GatewayNotConfiguredError when the webhook secrets are missing.
        """
        ...

    async def capture_payment(self, order_id: str, user_id: str) -> CaptureResult:
        raise CaptureNotSupportedError(self.provider.value)

    async def refund_payment(
        self, payment_id: str, amount: Optional[float] = None
    ) -> RefundResult:
        raise CreditPaymentsError(
            f"{self.provider.value} does not support refunds", code="REFUND_NOT_SUPPORTED"
        )


class GatewayRegistry:
    """Case-insensitive lookup of gateways by provider name."""

    def __init__(self, gateways: Iterable[PaymentGateway] = ()) -> None:
        self._gateways: Dict[str, PaymentGateway] = {}
        for gateway in gateways:
            self.register(gateway)

    def register(self, gateway: PaymentGateway) -> None:
        self._gateways[gateway.provider.value] = gateway

    def get(self, name: str) -> Optional[PaymentGateway]:
        return self._gateways.get((name or "").strip().lower().replace("-", "_"))

    def configured(self, name: str) -> Optional[PaymentGateway]:
        gateway = self.get(name)
        if gateway is None or not gateway.is_configured():
            return None
        return gateway

    def names(self) -> list[str]:
        return sorted(self._gateways)
