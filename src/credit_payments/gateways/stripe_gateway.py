from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from .base import GatewayCapability, PaymentGateway
from ..exceptions import GatewayNotConfiguredError
from ..models.payment import (
    CheckoutParams,
    CheckoutSession,
    PaymentVerification,
    RefundResult,
    WebhookEvent,
    WebhookEventType,
)
from ..models.transaction import PaymentProvider

logger = logging.getLogger(__name__)

# Stripe rejects signatures older than this many seconds
WEBHOOK_TOLERANCE_SECONDS = 300


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class StripeGateway(PaymentGateway):
    """
    Stripe Checkout. Payment is captured by Stripe when the session is paid,
    so this gateway has no explicit capture step.

    The same class serves plain card checkout and card + Link checkout; they
    are registered as two providers so the ledger can tell them apart.
    """

    capabilities = frozenset({GatewayCapability.REFUND, GatewayCapability.VERIFY_PAYMENT})

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        use_link: bool = False,
    ) -> None:
        self.provider = PaymentProvider.STRIPE_LINK if use_link else PaymentProvider.STRIPE
        self._secret_key = secret_key or None
        self._webhook_secret = webhook_secret or None
        self._use_link = use_link

    def is_configured(self) -> bool:
        return self._secret_key is not None

    def _require_configured(self) -> str:
        if self._secret_key is None:
            raise GatewayNotConfiguredError(self.provider.value)
        return self._secret_key

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutSession:
        api_key = self._require_configured()
        package = params.package
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=api_key,
            mode="payment",
            payment_method_types=["card", "link"] if self._use_link else ["card"],
            customer_email=params.user_email,
            invoice_creation={"enabled": False},
            line_items=[
                {
                    "price_data": {
                        "currency": "eur",
                        "product_data": {
                            "name": package.name,
                            "description": f"{package.total_credits} credits",
                        },
                        "unit_amount": round(package.price_eur * 100),
                    },
                    "quantity": 1,
                }
            ],
            metadata={
                "userId": params.user_id,
                "packageId": package.id,
                "credits": str(package.total_credits),
            },
            success_url=params.success_url,
            cancel_url=params.cancel_url,
        )
        return CheckoutSession(session_id=session.id, url=session.url, provider=self.provider)

    async def verify_payment(self, session_id: str) -> PaymentVerification:
        api_key = self._require_configured()
        session = await asyncio.to_thread(
            stripe.checkout.Session.retrieve, session_id, api_key=api_key
        )
        logger.info(
            "Stripe session %s payment_status=%s", session_id, session.payment_status
        )
        if session.payment_status == "paid":
            metadata = session.metadata or {}
            return PaymentVerification(
                success=True, credits=_to_int(metadata.get("credits")) or 0, status="paid"
            )
        return PaymentVerification(success=False, status=session.payment_status)

    async def refund_payment(
        self, payment_id: str, amount: Optional[float] = None
    ) -> RefundResult:
        api_key = self._require_configured()
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, payment_id, api_key=api_key
            )
            params: Dict[str, Any] = {"payment_intent": session.payment_intent}
            if amount is not None:
                params["amount"] = round(amount * 100)
            refund = await asyncio.to_thread(stripe.Refund.create, api_key=api_key, **params)
        except stripe.StripeError as exc:
            logger.warning("Stripe refund for %s failed: %s", payment_id, exc)
            return RefundResult(success=False, error=exc.user_message or str(exc))
        return RefundResult(success=True, refund_id=refund.id, status=refund.status)

    async def verify_webhook(
        self,
        payload: bytes | str,
        signature: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        if self._secret_key is None or self._webhook_secret is None:
            raise GatewayNotConfiguredError(self.provider.value)

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(
                body, signature or "", self._webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
            event = json.loads(body)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            return None
        except ValueError:
            # UnicodeDecodeError and JSONDecodeError are both ValueErrors
            logger.warning("Stripe webhook payload is not valid UTF-8 JSON")
            return None

        return await self._map_event(event)

    async def _map_event(self, event: Dict[str, Any]) -> WebhookEvent:
        event_type = event.get("type", "")
        obj: Dict[str, Any] = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type in (
            "checkout.session.completed",
            "checkout.session.async_payment_succeeded",
        ):
            if obj.get("payment_status") == "paid":
                return WebhookEvent(
                    type=WebhookEventType.PAYMENT_COMPLETED,
                    payment_id=obj.get("id"),
                    user_id=metadata.get("userId"),
                    credits=_to_int(metadata.get("credits")),
                    amount=(obj.get("amount_total") or 0) / 100,
                    currency=obj.get("currency") or "eur",
                    provider_event_type=event_type,
                    raw_event=event,
                )
            # Delayed payment methods complete the session before the money moves.
            return self._ignored(event_type, event)

        if event_type == "checkout.session.async_payment_failed":
            return WebhookEvent(
                type=WebhookEventType.PAYMENT_FAILED,
                payment_id=obj.get("id"),
                provider_event_type=event_type,
                raw_event=event,
            )

        if event_type == "checkout.session.expired":
            return WebhookEvent(
                type=WebhookEventType.SESSION_EXPIRED,
                payment_id=obj.get("id"),
                provider_event_type=event_type,
                raw_event=event,
            )

        if event_type == "invoice.paid":
            credits = _to_int(metadata.get("credits"))
            if metadata.get("userId") and credits:
                return WebhookEvent(
                    type=WebhookEventType.PAYMENT_COMPLETED,
                    payment_id=obj.get("id"),
                    user_id=metadata.get("userId"),
                    credits=credits,
                    amount=(obj.get("amount_paid") or 0) / 100,
                    currency=obj.get("currency") or "eur",
                    provider_event_type=event_type,
                    raw_event=event,
                )
            logger.info("invoice.paid %s has no userId/credits metadata", obj.get("id"))
            return self._ignored(event_type, event)

        if event_type == "charge.refunded":
            payment_intent = obj.get("payment_intent")
            return WebhookEvent(
                type=WebhookEventType.PAYMENT_REFUNDED,
                payment_id=await self._session_for_payment_intent(payment_intent),
                amount=(obj.get("amount_refunded") or 0) / 100,
                currency=obj.get("currency"),
                provider_event_type=event_type,
                raw_event=event,
            )

        return self._ignored(event_type, event)

    @staticmethod
    def _ignored(event_type: str, event: Dict[str, Any]) -> WebhookEvent:
        logger.info("Unhandled Stripe event type: %s", event_type)
        return WebhookEvent(
            type=WebhookEventType.IGNORED, provider_event_type=event_type, raw_event=event
        )

    async def _session_for_payment_intent(self, payment_intent: Optional[str]) -> Optional[str]:
        """
        Purchases are keyed by checkout session id while refunds arrive keyed
        by payment intent. Resolve the session; fall back to the intent id.
        """
        if not payment_intent:
            return None
        try:
            sessions = await asyncio.to_thread(
                stripe.checkout.Session.list,
                payment_intent=payment_intent,
                limit=1,
                api_key=self._secret_key,
            )
        except stripe.StripeError as exc:
            logger.warning(
                "Could not resolve checkout session for %s: %s", payment_intent, exc
            )
            return payment_intent
        if sessions.data:
            return sessions.data[0].id
        return payment_intent
