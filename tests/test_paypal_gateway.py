from __future__ import annotations

import json

import httpx
import pytest

from credit_payments.exceptions import GatewayError, GatewayNotConfiguredError
from credit_payments.gateways.paypal_gateway import SANDBOX_API_BASE, PayPalGateway
from credit_payments.models.payment import CheckoutParams, CreditPackage, WebhookEventType

CUSTOM_ID = json.dumps({"userId": "user-1", "packageId": "basic", "credits": 25})

SIGNATURE_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
}


class PayPalStub:
    """Routes requests to canned PayPal responses and records them."""

    def __init__(self, routes=None, verification_status="SUCCESS"):
        self.routes = routes or {}
        self.verification_status = verification_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-abc"})
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        status, body = self.routes.get((request.method, path), (404, {"name": "RESOURCE_NOT_FOUND"}))
        return httpx.Response(status, json=body)

    def last(self, path):
        return [r for r in self.requests if r.url.path == path][-1]


def _gateway(stub, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub), base_url=SANDBOX_API_BASE)
    options = {"client_id": "client", "client_secret": "secret", "webhook_id": "WH-1"}
    options.update(kwargs)
    return PayPalGateway(client=client, **options)


def _capture_body(status="COMPLETED"):
    return {
        "id": "ORDER-456",
        "status": status,
        "purchase_units": [
            {"payments": {"captures": [{"id": "CAPTURE-789", "custom_id": CUSTOM_ID}]}}
        ],
    }


@pytest.mark.asyncio
async def test_capture_reads_credits_and_capture_id():
    stub = PayPalStub({("POST", "/v2/checkout/orders/ORDER-456/capture"): (201, _capture_body())})
    gateway = _gateway(stub)

    result = await gateway.capture_payment("ORDER-456", "user-1")

    assert result.success
    assert result.credits == 25
    assert result.capture_id == "CAPTURE-789"
    capture_request = stub.last("/v2/checkout/orders/ORDER-456/capture")
    assert capture_request.headers["Authorization"] == "Bearer token-abc"


@pytest.mark.asyncio
async def test_capture_not_completed():
    stub = PayPalStub(
        {("POST", "/v2/checkout/orders/ORDER-1/capture"): (201, _capture_body("PENDING"))}
    )

    result = await _gateway(stub).capture_payment("ORDER-1", "user-1")

    assert not result.success
    assert result.error == "Payment status: PENDING"


@pytest.mark.asyncio
async def test_capture_api_error_message():
    stub = PayPalStub(
        {
            ("POST", "/v2/checkout/orders/ORDER-1/capture"): (
                422,
                {"name": "UNPROCESSABLE_ENTITY", "message": "Order already captured"},
            )
        }
    )

    result = await _gateway(stub).capture_payment("ORDER-1", "user-1")

    assert not result.success
    assert result.error == "Order already captured"


@pytest.mark.asyncio
async def test_unconfigured_gateway_raises():
    gateway = _gateway(PayPalStub(), client_id=None)
    assert not gateway.is_configured()
    with pytest.raises(GatewayNotConfiguredError):
        await gateway.capture_payment("ORDER-1", "user-1")


@pytest.mark.asyncio
async def test_failed_token_request_raises_gateway_error():
    def deny(request):
        return httpx.Response(401, json={"error": "invalid_client"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(deny), base_url=SANDBOX_API_BASE)
    gateway = PayPalGateway("client", "secret", "WH-1", client=client)

    with pytest.raises(GatewayError):
        await gateway.verify_payment("ORDER-1")


@pytest.mark.asyncio
async def test_create_checkout_returns_approval_link():
    stub = PayPalStub(
        {
            ("POST", "/v2/checkout/orders"): (
                201,
                {
                    "id": "ORDER-456",
                    "links": [
                        {"rel": "self", "href": "https://api/self"},
                        {"rel": "approve", "href": "https://paypal.example/approve"},
                    ],
                },
            )
        }
    )
    package = CreditPackage(id="basic", name="Basic", credits=25, price_eur=10.0)

    session = await _gateway(stub).create_checkout_session(
        CheckoutParams(
            user_id="user-1",
            package=package,
            success_url="https://app.example/ok",
            cancel_url="https://app.example/cancel",
        )
    )

    assert session.session_id == "ORDER-456"
    assert session.url == "https://paypal.example/approve"
    body = json.loads(stub.last("/v2/checkout/orders").content)
    unit = body["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "EUR", "value": "10.00"}
    assert json.loads(unit["custom_id"]) == {"userId": "user-1", "packageId": "basic", "credits": 25}


@pytest.mark.asyncio
async def test_verify_payment_requires_completed_order():
    stub = PayPalStub(
        {
            ("GET", "/v2/checkout/orders/ORDER-1"): (
                200,
                {"status": "COMPLETED", "purchase_units": [{"custom_id": CUSTOM_ID}]},
            ),
            ("GET", "/v2/checkout/orders/ORDER-2"): (200, {"status": "APPROVED"}),
        }
    )
    gateway = _gateway(stub)

    completed = await gateway.verify_payment("ORDER-1")
    approved = await gateway.verify_payment("ORDER-2")

    assert completed.success and completed.credits == 25
    assert not approved.success and approved.status == "APPROVED"


@pytest.mark.asyncio
async def test_webhook_capture_completed_keyed_by_order():
    stub = PayPalStub()
    event = {
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAPTURE-789",
            "custom_id": CUSTOM_ID,
            "amount": {"value": "10.00", "currency_code": "EUR"},
            "supplementary_data": {"related_ids": {"order_id": "ORDER-456"}},
        },
    }

    result = await _gateway(stub).verify_webhook(json.dumps(event), "sig", SIGNATURE_HEADERS)

    assert result.type == WebhookEventType.PAYMENT_COMPLETED
    assert result.payment_id == "ORDER-456"
    assert result.credits == 25
    assert result.amount == 10.0
    verification = json.loads(stub.last("/v1/notifications/verify-webhook-signature").content)
    assert verification["webhook_id"] == "WH-1"
    assert verification["transmission_sig"] == "sig"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("PAYMENT.CAPTURE.DENIED", WebhookEventType.PAYMENT_FAILED),
        ("PAYMENT.CAPTURE.REFUNDED", WebhookEventType.PAYMENT_REFUNDED),
        ("CHECKOUT.ORDER.APPROVED", WebhookEventType.IGNORED),
    ],
)
async def test_webhook_event_mapping(event_type, expected):
    event = {"event_type": event_type, "resource": {"id": "ORDER-1"}}

    result = await _gateway(PayPalStub()).verify_webhook(json.dumps(event), "sig", SIGNATURE_HEADERS)

    assert result.type == expected


@pytest.mark.asyncio
async def test_webhook_failed_verification_or_bad_json():
    gateway = _gateway(PayPalStub(verification_status="FAILURE"))
    event = json.dumps({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}})

    assert await gateway.verify_webhook(event, "sig", SIGNATURE_HEADERS) is None
    assert await gateway.verify_webhook("not json", "sig", SIGNATURE_HEADERS) is None


@pytest.mark.asyncio
async def test_webhook_without_webhook_id_is_not_configured():
    gateway = _gateway(PayPalStub(), webhook_id=None)
    with pytest.raises(GatewayNotConfiguredError):
        await gateway.verify_webhook("{}", "sig", SIGNATURE_HEADERS)
