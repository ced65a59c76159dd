from __future__ import annotations

import pytest

from conftest import add_pending_purchase, add_user
from credit_payments.catalog import DEFAULT_CREDIT_PACKAGES, PackageCatalog
from credit_payments.gateways.base import GatewayCapability
from credit_payments.models.ledger import LedgerEventType
from credit_payments.models.payment import CreditPackage, ErrorCode, PaymentVerification
from credit_payments.models.transaction import PaymentProvider, PaymentStatus
from credit_payments.services.checkout_service import CheckoutService


@pytest.fixture
def stripe_gateway(make_gateway):
    return make_gateway(
        PaymentProvider.STRIPE,
        capabilities=(GatewayCapability.REFUND, GatewayCapability.VERIFY_PAYMENT),
        session_id="cs_test_1",
        verification=PaymentVerification(success=True, credits=60, status="paid"),
    )


@pytest.fixture
def checkout(db, credit_service, ledger, stripe_gateway, registry_for):
    return CheckoutService(
        db=db, credit_service=credit_service, gateways=registry_for(stripe_gateway), ledger=ledger
    )


def test_catalog_lists_default_packages(checkout):
    packages = checkout.list_packages()
    assert [p.id for p in packages] == ["starter", "basic", "popular", "value", "premium"]
    assert PackageCatalog().get("value").name == "Best Value"
    assert PackageCatalog().get("missing") is None


def test_total_credits_include_bonus():
    package = CreditPackage(id="promo", name="Promo", credits=50, bonus_credits=10, price_eur=15.0)
    assert package.total_credits == 60


@pytest.mark.asyncio
async def test_create_checkout_records_pending_purchase(db, checkout, stripe_gateway):
    await add_user(db, "user-1")

    result = await checkout.create_checkout("user-1", "popular", "stripe", "https://app.example/")

    assert result.success
    assert result.session_id == "cs_test_1"
    assert result.url == "https://pay.example/cs_test_1"

    params = stripe_gateway.checkout_params[0]
    assert params.user_email == "user-1@example.com"
    assert params.success_url == (
        "https://app.example/payment/success?session_id={CHECKOUT_SESSION_ID}&provider=stripe"
    )
    assert params.cancel_url == "https://app.example/payment/cancelled"

    tx = await db.find_by_payment_id_and_status("cs_test_1", PaymentStatus.PENDING)
    assert tx.amount == 60
    assert tx.payment_amount == 20.0
    assert tx.currency == "EUR"
    assert tx.payment_provider == PaymentProvider.STRIPE
    assert tx.metadata == {"package_id": "popular"}
    assert any(e.event_type == LedgerEventType.PAYMENT for e in db.ledger_entries)
    # Nothing is credited until the provider confirms payment.
    assert (await db.get_user("user-1")).credits == 0


@pytest.mark.asyncio
async def test_create_checkout_rejections(db, checkout):
    await add_user(db, "user-1")

    bad_package = await checkout.create_checkout("user-1", "mega", "stripe", "https://app.example")
    assert bad_package.error_code == ErrorCode.INVALID_PACKAGE

    no_user = await checkout.create_checkout("ghost", "basic", "stripe", "https://app.example")
    assert no_user.error_code == ErrorCode.USER_NOT_FOUND

    no_provider = await checkout.create_checkout("user-1", "basic", "paypal", "https://app.example")
    assert no_provider.error == "paypal payments not configured"
    assert no_provider.error_code == ErrorCode.PROVIDER_NOT_CONFIGURED

    assert await db.count_transactions("user-1") == 0


@pytest.mark.asyncio
async def test_verify_payment_completes_pending_purchase(db, checkout, credit_service):
    await add_user(db, "user-1")
    await add_pending_purchase(db, "cs_test_1", amount=60, provider=PaymentProvider.STRIPE)

    first = await checkout.verify_payment("user-1", "stripe", "cs_test_1")
    second = await checkout.verify_payment("user-1", "stripe", "cs_test_1")

    assert first.success and first.credits == 60 and first.new_balance == 60
    assert second.success and second.new_balance is None
    assert await credit_service.get_balance("user-1") == 60


@pytest.mark.asyncio
async def test_verify_unpaid_session(db, checkout, stripe_gateway):
    stripe_gateway.verification = PaymentVerification(success=False, status="unpaid")

    result = await checkout.verify_payment("user-1", "stripe", "cs_test_1")

    assert not result.success
    assert result.error == "Payment not completed. Status: unpaid"


@pytest.mark.asyncio
async def test_verify_without_transaction_record(db, checkout):
    await add_user(db, "user-1")

    result = await checkout.verify_payment("user-1", "stripe", "cs_lost")

    assert result.success
    assert result.error.startswith("Transaction record not found")
    assert (await db.get_user("user-1")).credits == 0


def test_default_packages_are_priced_in_euros():
    assert all(p.price_eur > 0 for p in DEFAULT_CREDIT_PACKAGES)
