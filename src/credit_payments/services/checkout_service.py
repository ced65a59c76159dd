from __future__ import annotations

import logging
from typing import List

from ..catalog import PackageCatalog
from ..db.base import BaseDBManager
from ..gateways.base import GatewayCapability, GatewayRegistry
from ..logging.ledger_logger import LedgerLogger
from ..models.payment import (
    CheckoutParams,
    CheckoutResult,
    CreditPackage,
    ErrorCode,
    VerifyPaymentResult,
)
from ..models.transaction import PaymentStatus, Transaction, TransactionType
from .credit_service import CreditService

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    First phase of a purchase, plus the redirect-return verification that
    backs up webhooks when the buyer comes back before the provider calls us.
    """

    def __init__(
        self,
        db: BaseDBManager,
        credit_service: CreditService,
        gateways: GatewayRegistry,
        ledger: LedgerLogger,
        catalog: PackageCatalog | None = None,
    ) -> None:
        self._db = db
        self._credits = credit_service
        self._gateways = gateways
        self._ledger = ledger
        self._catalog = catalog or PackageCatalog()

    def list_packages(self) -> List[CreditPackage]:
        return self._catalog.all()

    async def create_checkout(
        self, user_id: str, package_id: str, provider: str, frontend_url: str
    ) -> CheckoutResult:
        try:
            gateway = self._gateways.configured(provider)
            if gateway is None:
                return CheckoutResult(
                    success=False,
                    error=f"{provider} payments not configured",
                    error_code=ErrorCode.PROVIDER_NOT_CONFIGURED,
                )

            package = self._catalog.get(package_id)
            if package is None:
                return CheckoutResult(
                    success=False, error="Invalid package", error_code=ErrorCode.INVALID_PACKAGE
                )

            user = await self._db.get_user(user_id)
            if user is None:
                return CheckoutResult(
                    success=False, error="User not found", error_code=ErrorCode.USER_NOT_FOUND
                )

            base = frontend_url.rstrip("/")
            session = await gateway.create_checkout_session(
                CheckoutParams(
                    user_id=user_id,
                    user_email=user.email,
                    package=package,
                    success_url=(
                        f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"
                        f"&provider={gateway.provider.value}"
                    ),
                    cancel_url=f"{base}/payment/cancelled",
                )
            )

            await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    type=TransactionType.PURCHASE,
                    amount=package.total_credits,
                    description=f"Purchase: {package.name}",
                    payment_id=session.session_id,
                    payment_provider=session.provider,
                    payment_status=PaymentStatus.PENDING,
                    payment_amount=package.price_eur,
                    currency="EUR",
                    metadata={"package_id": package.id},
                )
            )
            await self._ledger.log_payment(
                message="Checkout session created",
                details={
                    "package_id": package.id,
                    "credits": package.total_credits,
                    "price_eur": package.price_eur,
                },
                user_id=user_id,
                payment_id=session.session_id,
                provider=session.provider,
            )
            return CheckoutResult(success=True, session_id=session.session_id, url=session.url)
        except Exception as exc:
            logger.exception("Checkout creation via %s failed", provider)
            return CheckoutResult(
                success=False,
                error=str(exc) or "Failed to create checkout session",
                error_code=ErrorCode.INTERNAL_ERROR,
            )

    async def verify_payment(
        self, user_id: str, provider: str, session_id: str
    ) -> VerifyPaymentResult:
        """
        Ask the provider whether the session was paid and, if so, apply the
        grant through the same completion path the webhook uses.
        """
        try:
            gateway = self._gateways.configured(provider)
            if gateway is None:
                return VerifyPaymentResult(
                    success=False,
                    error=f"{provider} payments not configured",
                    error_code=ErrorCode.PROVIDER_NOT_CONFIGURED,
                )
            if not gateway.supports(GatewayCapability.VERIFY_PAYMENT):
                return VerifyPaymentResult(
                    success=False, error=f"{provider} does not support payment verification"
                )

            verification = await gateway.verify_payment(session_id)
            if not verification.success:
                return VerifyPaymentResult(
                    success=False,
                    status=verification.status,
                    error=f"Payment not completed. Status: {verification.status}",
                )

            completed = await self._db.find_by_payment_id_and_status(
                session_id, PaymentStatus.COMPLETED
            )
            if completed is not None:
                logger.info("Credits already added for session %s", session_id)
                return VerifyPaymentResult(
                    success=True,
                    credits=verification.credits or completed.amount,
                    status=verification.status,
                )

            pending = await self._db.find_by_payment_id_and_status(
                session_id, PaymentStatus.PENDING
            )
            if pending is None:
                logger.error("No pending transaction for session %s", session_id)
                return VerifyPaymentResult(
                    success=True,
                    credits=verification.credits,
                    status=verification.status,
                    error="Transaction record not found - please contact support if credits not received",
                )
            if pending.user_id != user_id:
                logger.warning(
                    "Session %s belongs to user %s, verified by %s",
                    session_id,
                    pending.user_id,
                    user_id,
                )

            credits = verification.credits or pending.amount
            granted = await self._credits.complete_purchase(pending, credits)
            if not granted.success:
                return VerifyPaymentResult(
                    success=False, error=granted.error, error_code=ErrorCode.INTERNAL_ERROR
                )
            return VerifyPaymentResult(
                success=True,
                credits=credits,
                new_balance=None if granted.already_applied else granted.new_balance,
                status=verification.status,
            )
        except Exception as exc:
            logger.exception("Payment verification of %s failed", session_id)
            return VerifyPaymentResult(
                success=False,
                error=str(exc) or "Verification failed",
                error_code=ErrorCode.INTERNAL_ERROR,
            )
