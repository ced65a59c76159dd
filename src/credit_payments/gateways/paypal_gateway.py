from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .base import GatewayCapability, PaymentGateway
from ..exceptions import GatewayError, GatewayNotConfiguredError
from ..models.payment import (
    CaptureResult,
    CheckoutParams,
    CheckoutSession,
    PaymentVerification,
    RefundResult,
    WebhookEvent,
    WebhookEventType,
)
from ..models.transaction import PaymentProvider

logger = logging.getLogger(__name__)

SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"
LIVE_API_BASE = "https://api-m.paypal.com"

_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _credits_from_custom_id(custom_id: Optional[str]) -> int:
    if not custom_id:
        return 0
    try:
        return int(json.loads(custom_id).get("credits") or 0)
    except (ValueError, TypeError, AttributeError):
        logger.error("Failed to parse PayPal custom_id %r", custom_id)
        return 0


class PayPalGateway(PaymentGateway):
    """
    PayPal Orders v2 over the REST API.

    Checkout creates an order the buyer approves on PayPal; the money only
    moves when the order is captured, which the client triggers after the
    approval redirect.
    """

    provider = PaymentProvider.PAYPAL
    capabilities = frozenset(
        {GatewayCapability.CAPTURE, GatewayCapability.REFUND, GatewayCapability.VERIFY_PAYMENT}
    )

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        webhook_id: Optional[str],
        live: bool = False,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client_id = client_id or None
        self._client_secret = client_secret or None
        self._webhook_id = webhook_id or None
        self._client = client or httpx.AsyncClient(
            base_url=LIVE_API_BASE if live else SANDBOX_API_BASE, timeout=timeout
        )

    def is_configured(self) -> bool:
        return self._client_id is not None and self._client_secret is not None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _access_token(self) -> str:
        if not self.is_configured():
            raise GatewayNotConfiguredError(self.provider.value)
        response = await self._client.post(
            "/v1/oauth2/token",
            auth=(self._client_id or "", self._client_secret or ""),
            data={"grant_type": "client_credentials"},
        )
        if response.is_error:
            raise GatewayError(
                "Failed to get PayPal access token",
                provider=self.provider.value,
                status_code=response.status_code,
            )
        return response.json()["access_token"]

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        return await self._client.request(method, path, headers=headers, **kwargs)

    async def create_checkout_session(self, params: CheckoutParams) -> CheckoutSession:
        package = params.package
        response = await self._request(
            "POST",
            "/v2/checkout/orders",
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {"currency_code": "EUR", "value": f"{package.price_eur:.2f}"},
                        "description": f"{package.total_credits} credits",
                        "custom_id": json.dumps(
                            {
                                "userId": params.user_id,
                                "packageId": package.id,
                                "credits": package.total_credits,
                            }
                        ),
                    }
                ],
                "application_context": {
                    "landing_page": "LOGIN",
                    "user_action": "PAY_NOW",
                    "return_url": params.success_url,
                    "cancel_url": params.cancel_url,
                },
            },
        )
        if response.is_error:
            raise GatewayError(
                "PayPal order creation failed",
                provider=self.provider.value,
                status_code=response.status_code,
            )
        order = response.json()
        approval_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approval_url:
            raise GatewayError("PayPal did not return an approval URL", provider=self.provider.value)
        return CheckoutSession(session_id=order["id"], url=approval_url, provider=self.provider)

    async def verify_payment(self, session_id: str) -> PaymentVerification:
        response = await self._request("GET", f"/v2/checkout/orders/{session_id}")
        if response.is_error:
            logger.error("PayPal get order %s failed: %s", session_id, response.status_code)
            return PaymentVerification(success=False, status="ERROR")
        order = response.json()
        status = order.get("status")
        # Only a captured order has moved money; APPROVED still needs capture.
        if status == "COMPLETED":
            units = order.get("purchase_units") or [{}]
            return PaymentVerification(
                success=True,
                credits=_credits_from_custom_id(units[0].get("custom_id")),
                status=status,
            )
        return PaymentVerification(success=False, status=status)

    async def capture_payment(self, order_id: str, user_id: str) -> CaptureResult:
        response = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("PayPal capture of %s failed: %s", order_id, exc)
            return CaptureResult(success=False, error=self._error_message(response))

        data = response.json()
        if data.get("status") != "COMPLETED":
            return CaptureResult(success=False, error=f"Payment status: {data.get('status')}")

        unit = (data.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or [{}]
        custom_id = captures[0].get("custom_id") or unit.get("custom_id")
        return CaptureResult(
            success=True,
            credits=_credits_from_custom_id(custom_id),
            capture_id=captures[0].get("id") or data.get("id"),
        )

    async def refund_payment(
        self, payment_id: str, amount: Optional[float] = None
    ) -> RefundResult:
        """Refund a capture. `payment_id` is the capture id, not the order id."""
        body: Dict[str, Any] = {}
        if amount is not None:
            body["amount"] = {"currency_code": "EUR", "value": f"{amount:.2f}"}
        response = await self._request(
            "POST", f"/v2/payments/captures/{payment_id}/refund", json=body
        )
        if response.is_error:
            return RefundResult(success=False, error=self._error_message(response))
        data = response.json()
        return RefundResult(success=True, refund_id=data.get("id"), status=data.get("status"))

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"PayPal API error ({response.status_code})"
        return data.get("message") or data.get("name") or f"PayPal API error ({response.status_code})"

    async def verify_webhook(
        self,
        payload: bytes | str,
        signature: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        if not self.is_configured() or self._webhook_id is None:
            raise GatewayNotConfiguredError(self.provider.value)

        try:
            event = json.loads(payload)
        except ValueError:
            logger.warning("PayPal webhook payload is not valid JSON")
            return None

        if not await self._verify_signature(event, headers or {}):
            logger.warning("PayPal webhook signature verification failed")
            return None
        return self._map_event(event)

    async def _verify_signature(self, event: Dict[str, Any], headers: Mapping[str, str]) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        body = {field: lowered.get(header) for field, header in _SIGNATURE_HEADERS.items()}
        body["webhook_id"] = self._webhook_id
        body["webhook_event"] = event
        try:
            response = await self._request(
                "POST", "/v1/notifications/verify-webhook-signature", json=body
            )
        except (httpx.HTTPError, GatewayError) as exc:
            logger.error("PayPal webhook verification error: %s", exc)
            return False
        if response.is_error:
            logger.error("PayPal webhook verification request failed: %s", response.status_code)
            return False
        return response.json().get("verification_status") == "SUCCESS"

    def _map_event(self, event: Dict[str, Any]) -> WebhookEvent:
        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get(
            "order_id"
        )
        amount = (resource.get("amount") or {}).get("value")
        currency = (resource.get("amount") or {}).get("currency_code")

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            credits = _credits_from_custom_id(resource.get("custom_id"))
            return WebhookEvent(
                type=WebhookEventType.PAYMENT_COMPLETED,
                payment_id=order_id or resource.get("id"),
                credits=credits or None,
                amount=float(amount) if amount else None,
                currency=currency,
                provider_event_type=event_type,
                raw_event=event,
            )
        if event_type == "PAYMENT.CAPTURE.DENIED":
            return WebhookEvent(
                type=WebhookEventType.PAYMENT_FAILED,
                payment_id=order_id or resource.get("id"),
                provider_event_type=event_type,
                raw_event=event,
            )
        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            return WebhookEvent(
                type=WebhookEventType.PAYMENT_REFUNDED,
                payment_id=order_id or resource.get("id"),
                amount=float(amount) if amount else None,
                currency=currency,
                provider_event_type=event_type,
                raw_event=event,
            )

        # CHECKOUT.ORDER.APPROVED means the buyer agreed; nothing was captured yet.
        logger.info("Unhandled PayPal event type: %s", event_type)
        return WebhookEvent(
            type=WebhookEventType.IGNORED, provider_event_type=event_type, raw_event=event
        )
