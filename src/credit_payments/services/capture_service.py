from __future__ import annotations

import logging

from ..db.base import BaseDBManager
from ..gateways.base import GatewayCapability, GatewayRegistry
from ..models.payment import CapturePaymentResult, ErrorCode
from ..models.transaction import PaymentStatus
from .credit_service import CreditService

logger = logging.getLogger(__name__)


class CaptureService:
    """
    Second phase of the checkout -> capture flow.

    Credits are granted only after the provider confirms the capture. The
    grant itself goes through `CreditService.complete_purchase`, which claims
    the PENDING row before touching the balance, so a retried capture can
    never credit twice.
    """

    def __init__(
        self,
        db: BaseDBManager,
        credit_service: CreditService,
        gateways: GatewayRegistry,
    ) -> None:
        self._db = db
        self._credits = credit_service
        self._gateways = gateways

    async def capture(self, user_id: str, order_id: str, provider: str) -> CapturePaymentResult:
        try:
            return await self._capture(user_id, order_id, provider)
        except Exception as exc:
            logger.exception("Capture of %s order %s failed", provider, order_id)
            return CapturePaymentResult(
                success=False,
                error=str(exc) or "Failed to capture payment",
                error_code=ErrorCode.INTERNAL_ERROR,
            )

    async def _capture(self, user_id: str, order_id: str, provider: str) -> CapturePaymentResult:
        gateway = self._gateways.configured(provider)
        if gateway is None:
            return CapturePaymentResult(
                success=False,
                error=f"{provider} payments not configured",
                error_code=ErrorCode.PROVIDER_NOT_CONFIGURED,
            )

        if not gateway.supports(GatewayCapability.CAPTURE):
            return CapturePaymentResult(
                success=False,
                error="This payment provider does not require capture",
                error_code=ErrorCode.CAPTURE_FAILED,
            )

        captured = await gateway.capture_payment(order_id, user_id)
        if not captured.success:
            return CapturePaymentResult(
                success=False,
                error=captured.error or "Payment capture failed",
                error_code=ErrorCode.CAPTURE_FAILED,
            )

        completed = await self._db.find_by_payment_id_and_status(order_id, PaymentStatus.COMPLETED)
        if completed is not None:
            logger.info("Credits already added for order %s", order_id)
            return CapturePaymentResult(
                success=True,
                credits=captured.credits or completed.amount,
                capture_id=captured.capture_id,
            )

        pending = await self._db.find_by_payment_id_and_status(order_id, PaymentStatus.PENDING)
        if pending is None:
            logger.error("No pending transaction found for order %s", order_id)
            return CapturePaymentResult(
                success=False,
                error="No pending transaction found - please contact support",
                error_code=ErrorCode.INTERNAL_ERROR,
            )

        if pending.user_id != user_id:
            logger.warning(
                "Order %s belongs to user %s but was captured by %s; crediting the owner",
                order_id,
                pending.user_id,
                user_id,
            )

        credits = captured.credits or pending.amount
        granted = await self._credits.complete_purchase(pending, credits)
        if not granted.success:
            return CapturePaymentResult(
                success=False,
                error=granted.error or "Failed to add credits",
                error_code=ErrorCode.INTERNAL_ERROR,
            )
        if granted.already_applied:
            # A concurrent capture or webhook completed the row first.
            return CapturePaymentResult(
                success=True, credits=credits, capture_id=captured.capture_id
            )

        return CapturePaymentResult(
            success=True,
            credits=credits,
            capture_id=captured.capture_id,
            new_balance=granted.new_balance,
        )
