from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from conftest import add_pending_purchase, add_user
from credit_payments.db.base import BaseDBManager
from credit_payments.gateways.base import GatewayCapability
from credit_payments.models.payment import CaptureResult, ErrorCode
from credit_payments.models.transaction import PaymentProvider, PaymentStatus
from credit_payments.services.capture_service import CaptureService


def _service(db, credit_service, registry):
    return CaptureService(db=db, credit_service=credit_service, gateways=registry)


@pytest.mark.asyncio
async def test_capture_grants_credits_of_pending_order(db, credit_service, make_gateway, registry_for):
    await add_user(db, "user-1", credits=50)
    pending = await add_pending_purchase(db, "ORDER-456", amount=25)
    gateway = make_gateway(
        capture_result=CaptureResult(success=True, credits=25, capture_id="CAPTURE-789")
    )
    service = _service(db, credit_service, registry_for(gateway))

    result = await service.capture("user-1", "ORDER-456", "paypal")

    assert result.success
    assert result.credits == 25
    assert result.capture_id == "CAPTURE-789"
    assert result.new_balance == 75
    assert gateway.capture_calls == [("ORDER-456", "user-1")]
    stored = await db.get_transaction(pending.id)
    assert stored.payment_status == PaymentStatus.COMPLETED
    assert stored.credits_applied


@pytest.mark.asyncio
async def test_repeated_capture_does_not_credit_again(db, credit_service, make_gateway, registry_for):
    await add_user(db, "user-1", credits=50)
    await add_pending_purchase(db, "ORDER-456", amount=25)
    gateway = make_gateway(
        capture_result=CaptureResult(success=True, credits=25, capture_id="CAPTURE-789")
    )
    service = _service(db, credit_service, registry_for(gateway))
    await service.capture("user-1", "ORDER-456", "paypal")

    with patch.object(credit_service, "add_credits_to_user", wraps=credit_service.add_credits_to_user) as spy:
        again = await service.capture("user-1", "ORDER-456", "paypal")

    assert again.success
    assert again.credits == 25
    assert again.capture_id == "CAPTURE-789"
    assert again.new_balance is None
    spy.assert_not_called()
    assert await credit_service.get_balance("user-1") == 75


@pytest.mark.asyncio
async def test_credits_fall_back_to_pending_amount(db, credit_service, make_gateway, registry_for):
    await add_user(db, "user-1")
    await add_pending_purchase(db, "ORDER-1", amount=60)
    gateway = make_gateway(capture_result=CaptureResult(success=True, capture_id="CAP-1"))
    service = _service(db, credit_service, registry_for(gateway))

    result = await service.capture("user-1", "ORDER-1", "paypal")

    assert result.success and result.credits == 60 and result.new_balance == 60


@pytest.mark.asyncio
async def test_gateway_exception_becomes_internal_error(db, credit_service, make_gateway, registry_for):
    await add_user(db, "user-1")
    await add_pending_purchase(db, "ORDER-1")
    gateway = make_gateway(capture_error=RuntimeError("PayPal API error"))
    service = _service(db, credit_service, registry_for(gateway))

    result = await service.capture("user-1", "ORDER-1", "paypal")

    assert not result.success
    assert result.error == "PayPal API error"
    assert result.error_code == ErrorCode.INTERNAL_ERROR
    assert await credit_service.get_balance("user-1") == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected",
    [("Payment status: PENDING", "Payment status: PENDING"), (None, "Payment capture failed")],
)
async def test_unsuccessful_capture_is_capture_failed(
    db, credit_service, make_gateway, registry_for, error, expected
):
    await add_user(db, "user-1")
    pending = await add_pending_purchase(db, "ORDER-1")
    gateway = make_gateway(capture_result=CaptureResult(success=False, error=error))
    service = _service(db, credit_service, registry_for(gateway))

    result = await service.capture("user-1", "ORDER-1", "paypal")

    assert not result.success
    assert result.error == expected
    assert result.error_code == ErrorCode.CAPTURE_FAILED
    assert (await db.get_transaction(pending.id)).payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_provider_without_capture_touches_nothing(credit_service, make_gateway, registry_for):
    store = MagicMock(spec=BaseDBManager)
    gateway = make_gateway(
        PaymentProvider.STRIPE,
        capabilities=(GatewayCapability.REFUND, GatewayCapability.VERIFY_PAYMENT),
    )
    service = _service(store, credit_service, registry_for(gateway))

    result = await service.capture("user-1", "cs_123", "stripe")

    assert not result.success
    assert result.error == "This payment provider does not require capture"
    assert result.error_code == ErrorCode.CAPTURE_FAILED
    assert gateway.capture_calls == []
    assert store.mock_calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("provider", ["paypal", "bitcoin"])
async def test_unconfigured_or_unknown_provider(db, credit_service, make_gateway, registry_for, provider):
    service = _service(db, credit_service, registry_for(make_gateway(configured=False)))

    result = await service.capture("user-1", "ORDER-1", provider)

    assert not result.success
    assert result.error == f"{provider} payments not configured"
    assert result.error_code == ErrorCode.PROVIDER_NOT_CONFIGURED


@pytest.mark.asyncio
async def test_capture_without_pending_transaction(db, credit_service, make_gateway, registry_for):
    await add_user(db, "user-1")
    gateway = make_gateway(capture_result=CaptureResult(success=True, credits=25, capture_id="CAP-1"))
    service = _service(db, credit_service, registry_for(gateway))

    result = await service.capture("user-1", "ORDER-404", "paypal")

    assert not result.success
    assert result.error == "No pending transaction found - please contact support"
    assert result.error_code == ErrorCode.INTERNAL_ERROR
    assert await credit_service.get_balance("user-1") == 0


@pytest.mark.asyncio
async def test_capture_credits_the_order_owner(db, credit_service, make_gateway, registry_for):
    await add_user(db, "owner")
    await add_user(db, "intruder")
    await add_pending_purchase(db, "ORDER-1", user_id="owner", amount=10)
    service = _service(db, credit_service, registry_for(make_gateway()))

    result = await service.capture("intruder", "ORDER-1", "paypal")

    assert result.success
    assert await credit_service.get_balance("owner") == 10
    assert await credit_service.get_balance("intruder") == 0
