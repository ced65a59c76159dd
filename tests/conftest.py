from __future__ import annotations

import asyncio
from typing import Callable, Optional

import pytest

from credit_payments.db.memory import InMemoryDBManager
from credit_payments.gateways.base import GatewayCapability, GatewayRegistry, PaymentGateway
from credit_payments.logging.ledger_logger import LedgerLogger
from credit_payments.models.payment import (
    CaptureResult,
    CheckoutSession,
    PaymentVerification,
    WebhookEvent,
)
from credit_payments.models.transaction import (
    PaymentProvider,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from credit_payments.models.user import UserAccount
from credit_payments.notifications.queue import InMemoryNotificationQueue
from credit_payments.services.credit_service import CreditService
from credit_payments.services.notification_service import NotificationService


class FakeGateway(PaymentGateway):
    """Scriptable gateway; records the calls made to it."""

    def __init__(
        self,
        provider: PaymentProvider = PaymentProvider.PAYPAL,
        *,
        configured: bool = True,
        capabilities=(GatewayCapability.CAPTURE, GatewayCapability.VERIFY_PAYMENT),
        event: Optional[WebhookEvent] = None,
        capture_result: Optional[CaptureResult] = None,
        capture_error: Optional[Exception] = None,
        verification: Optional[PaymentVerification] = None,
        session_id: str = "SESSION-1",
    ) -> None:
        self.provider = provider
        self.capabilities = frozenset(capabilities)
        self._configured = configured
        self.event = event
        self.capture_result = capture_result or CaptureResult(success=True, credits=None)
        self.capture_error = capture_error
        self.verification = verification or PaymentVerification(success=True, status="paid")
        self.session_id = session_id
        self.checkout_params = []
        self.capture_calls = []

    def is_configured(self) -> bool:
        return self._configured

    async def create_checkout_session(self, params):
        self.checkout_params.append(params)
        return CheckoutSession(
            session_id=self.session_id,
            url=f"https://pay.example/{self.session_id}",
            provider=self.provider,
        )

    async def verify_payment(self, session_id):
        return self.verification

    async def verify_webhook(self, payload, signature, headers=None):
        if signature != "valid":
            return None
        return self.event

    async def capture_payment(self, order_id, user_id):
        self.capture_calls.append((order_id, user_id))
        if self.capture_error is not None:
            raise self.capture_error
        return self.capture_result


class SlowLookupDB(InMemoryDBManager):
    """Yields to the event loop before every lookup so concurrent callers interleave."""

    async def find_by_payment_id_and_status(self, payment_id, status):
        await asyncio.sleep(0)
        return await super().find_by_payment_id_and_status(payment_id, status)

    async def find_by_payment_id_and_type(self, payment_id, type):
        await asyncio.sleep(0)
        return await super().find_by_payment_id_and_type(payment_id, type)


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def queue() -> InMemoryNotificationQueue:
    return InMemoryNotificationQueue()


@pytest.fixture
def credit_service(db, ledger, queue) -> CreditService:
    notifications = NotificationService(db=db, queue=queue)
    return CreditService(db=db, ledger=ledger, notifications=notifications)


@pytest.fixture
def make_gateway() -> Callable[..., FakeGateway]:
    return FakeGateway


@pytest.fixture
def registry_for() -> Callable[..., GatewayRegistry]:
    def _build(*gateways: PaymentGateway) -> GatewayRegistry:
        return GatewayRegistry(gateways)

    return _build


async def add_user(db, user_id: str = "user-1", credits: int = 0) -> UserAccount:
    return await db.add_user(UserAccount(id=user_id, email=f"{user_id}@example.com", credits=credits))


async def add_pending_purchase(
    db,
    payment_id: str,
    user_id: str = "user-1",
    amount: int = 25,
    provider: PaymentProvider = PaymentProvider.PAYPAL,
) -> Transaction:
    return await db.add_transaction(
        Transaction(
            user_id=user_id,
            type=TransactionType.PURCHASE,
            amount=amount,
            payment_id=payment_id,
            payment_provider=provider,
            payment_status=PaymentStatus.PENDING,
            payment_amount=10.0,
            currency="EUR",
        )
    )
