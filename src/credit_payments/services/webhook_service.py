from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional

from ..db.base import BaseDBManager
from ..exceptions import DuplicateTransactionError
from ..gateways.base import GatewayRegistry, PaymentGateway
from ..models.payment import (
    CreditOperation,
    WebhookEvent,
    WebhookEventType,
    WebhookProcessingResult,
)
from ..models.transaction import PaymentStatus, TransactionType
from .credit_service import CreditService

logger = logging.getLogger(__name__)

Handler = Callable[[PaymentGateway, WebhookEvent], Awaitable[WebhookProcessingResult]]


class WebhookService:
    """
    Applies verified provider notifications to the ledger exactly once.

    Delivery is at-least-once and possibly concurrent. Every handler looks up
    what is already recorded for the payment before acting, and the store's
    uniqueness constraint plus the completion claim turn a lost race into a
    no-op instead of a second grant or refund.
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
        self._handlers: Dict[WebhookEventType, Handler] = {
            WebhookEventType.PAYMENT_COMPLETED: self._handle_completed,
            WebhookEventType.PAYMENT_FAILED: self._handle_failed,
            WebhookEventType.SESSION_EXPIRED: self._handle_failed,
            WebhookEventType.PAYMENT_REFUNDED: self._handle_refunded,
        }

    async def process(
        self,
        provider: str,
        payload: bytes | str,
        signature: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookProcessingResult:
        gateway = self._gateways.get(provider)
        if gateway is None:
            return WebhookProcessingResult(
                success=False, processed=False, error=f"Unknown payment provider: {provider}"
            )
        if not gateway.is_configured():
            return WebhookProcessingResult(
                success=False, processed=False, error=f"{provider} payments not configured"
            )

        event_type: Optional[str] = None
        try:
            event = await gateway.verify_webhook(payload, signature, headers)
            if event is None:
                logger.warning("Rejected %s webhook: invalid signature", provider)
                return WebhookProcessingResult(
                    success=False, processed=False, error="Invalid webhook signature"
                )
            event_type = event.type.value

            handler = self._handlers.get(event.type)
            if handler is None:
                logger.info(
                    "Ignoring %s webhook event %s", provider, event.provider_event_type
                )
                return WebhookProcessingResult(
                    success=True, processed=False, event_type=event_type
                )
            if not event.payment_id:
                logger.warning(
                    "%s webhook event %s carries no payment id",
                    provider,
                    event.provider_event_type,
                )
                return WebhookProcessingResult(
                    success=True, processed=False, event_type=event_type
                )

            return await handler(gateway, event)
        except DuplicateTransactionError as exc:
            logger.info("Webhook for payment %s already applied (%s)", exc.payment_id, exc.transaction_type)
            return WebhookProcessingResult(success=True, processed=True, event_type=event_type)
        except Exception as exc:
            logger.exception("Error processing %s webhook", provider)
            return WebhookProcessingResult(
                success=False,
                processed=False,
                event_type=event_type,
                error=str(exc) or "Failed to process webhook",
            )

    async def _handle_completed(
        self, gateway: PaymentGateway, event: WebhookEvent
    ) -> WebhookProcessingResult:
        payment_id = event.payment_id or ""
        done = WebhookProcessingResult(success=True, processed=True, event_type=event.type.value)

        if await self._db.find_by_payment_id_and_status(payment_id, PaymentStatus.COMPLETED):
            logger.info("Webhook already processed for payment %s", payment_id)
            return done

        pending = await self._db.find_by_payment_id_and_status(payment_id, PaymentStatus.PENDING)
        if pending is None:
            logger.error("No pending transaction found for payment %s", payment_id)
            return done

        if event.user_id and event.user_id != pending.user_id:
            logger.warning(
                "Webhook for payment %s names user %s; crediting transaction owner %s",
                payment_id,
                event.user_id,
                pending.user_id,
            )

        result = await self._credits.apply_grant(
            CreditOperation(
                user_id=pending.user_id,
                amount=event.credits or pending.amount,
                type=TransactionType.PURCHASE,
                description=f"Credit purchase via {gateway.provider.value}",
                payment_provider=pending.payment_provider or gateway.provider,
                payment_id=payment_id,
                payment_amount=event.amount,
                currency=event.currency,
            ),
            existing=pending,
        )
        if not result.success:
            return WebhookProcessingResult(
                success=False, processed=False, event_type=event.type.value, error=result.error
            )
        logger.info(
            "Payment %s completed for user %s (balance %s)",
            payment_id,
            pending.user_id,
            result.new_balance,
        )
        return done

    async def _handle_failed(
        self, gateway: PaymentGateway, event: WebhookEvent
    ) -> WebhookProcessingResult:
        logger.info("Payment failed/expired for %s", event.payment_id)
        await self._credits.update_transaction_status(event.payment_id or "", PaymentStatus.FAILED)
        return WebhookProcessingResult(success=True, processed=True, event_type=event.type.value)

    async def _handle_refunded(
        self, gateway: PaymentGateway, event: WebhookEvent
    ) -> WebhookProcessingResult:
        payment_id = event.payment_id or ""
        done = WebhookProcessingResult(success=True, processed=True, event_type=event.type.value)

        if await self._db.find_by_payment_id_and_type(payment_id, TransactionType.REFUND):
            logger.info("Refund already processed for %s", payment_id)
            return done

        original = await self._db.find_by_payment_id_and_status(payment_id, PaymentStatus.COMPLETED)
        if original is None:
            logger.error("No completed transaction found for refund %s", payment_id)
            return done

        # The grant recorded on the purchase is reversed in full, whatever
        # monetary amount the provider reports.
        result = await self._credits.process_refund(
            original.user_id,
            original.amount,
            payment_id,
            original.payment_provider or gateway.provider,
        )
        if not result.success:
            return WebhookProcessingResult(
                success=False, processed=False, event_type=event.type.value, error=result.error
            )
        logger.info("Refund processed for %s", payment_id)
        return done
