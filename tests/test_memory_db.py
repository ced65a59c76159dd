from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import add_pending_purchase, add_user
from credit_payments.exceptions import DuplicateTransactionError
from credit_payments.models.base import utcnow
from credit_payments.models.transaction import (
    PaymentProvider,
    PaymentStatus,
    Transaction,
    TransactionType,
)


@pytest.mark.asyncio
async def test_unique_constraint_on_provider_payment_and_type(db):
    await add_pending_purchase(db, "PAY-1")

    with pytest.raises(DuplicateTransactionError) as excinfo:
        await add_pending_purchase(db, "PAY-1")
    assert excinfo.value.payment_id == "PAY-1"
    assert excinfo.value.transaction_type == "purchase"

    # Same payment id under another provider or as a refund is a different key.
    await add_pending_purchase(db, "PAY-1", provider=PaymentProvider.STRIPE)
    await db.add_transaction(
        Transaction(
            user_id="user-1",
            type=TransactionType.REFUND,
            amount=25,
            payment_id="PAY-1",
            payment_provider=PaymentProvider.PAYPAL,
            payment_status=PaymentStatus.REFUNDED,
        )
    )


@pytest.mark.asyncio
async def test_rows_outside_the_constraint_are_not_restricted(db):
    for _ in range(3):
        await db.add_transaction(Transaction(user_id="user-1", type=TransactionType.USAGE, amount=-1))
    assert await db.count_transactions("user-1") == 3


@pytest.mark.asyncio
async def test_update_status_only_applies_legal_transitions(db):
    await add_pending_purchase(db, "PAY-1")

    assert await db.update_status_by_payment_id("PAY-1", PaymentStatus.COMPLETED) == 1
    # COMPLETED is terminal: a late failure notification must not regress it.
    assert await db.update_status_by_payment_id("PAY-1", PaymentStatus.FAILED) == 0
    tx = await db.find_by_payment_id("PAY-1")
    assert tx.payment_status == PaymentStatus.COMPLETED
    # Same-status update is a no-op.
    assert await db.update_status_by_payment_id("PAY-1", PaymentStatus.COMPLETED) == 0


@pytest.mark.asyncio
async def test_compare_and_set_has_a_single_winner(db):
    tx = await add_pending_purchase(db, "PAY-1", amount=25)

    first = await db.compare_and_set_status(
        tx.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED, updates={"amount": 30}
    )
    second = await db.compare_and_set_status(tx.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED)

    assert first is not None and first.amount == 30
    assert second is None


@pytest.mark.asyncio
async def test_adjust_user_credits_respects_minimum_balance(db):
    await add_user(db, "user-1", credits=10)

    assert await db.adjust_user_credits("user-1", -15, minimum_balance=0) is None
    assert await db.get_user_credits("user-1") == 10
    assert await db.adjust_user_credits("user-1", -15) == -5
    assert await db.adjust_user_credits("missing", 5) is None


@pytest.mark.asyncio
async def test_returned_rows_are_copies(db):
    tx = await add_pending_purchase(db, "PAY-1")
    tx.payment_status = PaymentStatus.FAILED

    stored = await db.get_transaction(tx.id)
    assert stored.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_history_is_newest_first_and_paginated(db):
    now = utcnow()
    for i in range(5):
        await db.add_transaction(
            Transaction(
                user_id="user-1",
                type=TransactionType.USAGE,
                amount=-(i + 1),
                created_at=now + timedelta(seconds=i),
            )
        )
    await db.add_transaction(Transaction(user_id="user-1", type=TransactionType.ADJUSTMENT, amount=3))

    page = list(await db.get_transactions("user-1", limit=2, offset=0, type=TransactionType.USAGE))
    assert [t.amount for t in page] == [-5, -4]
    page = list(await db.get_transactions("user-1", limit=2, offset=4, type=TransactionType.USAGE))
    assert [t.amount for t in page] == [-1]
    assert await db.count_transactions("user-1", type=TransactionType.USAGE) == 5
    assert await db.count_transactions("user-1") == 6


@pytest.mark.asyncio
async def test_reporting_counts_completed_purchases_only(db):
    stripe_tx = await add_pending_purchase(db, "cs_1", provider=PaymentProvider.STRIPE)
    paypal_tx = await add_pending_purchase(db, "ORDER-1", provider=PaymentProvider.PAYPAL)
    await add_pending_purchase(db, "ORDER-2", provider=PaymentProvider.PAYPAL)
    await db.compare_and_set_status(stripe_tx.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED)
    await db.compare_and_set_status(paypal_tx.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED)

    assert await db.sum_completed_purchases() == 20.0
    assert await db.sum_completed_purchases(since=utcnow() + timedelta(days=1)) == 0.0

    groups = {g.payment_provider: g for g in await db.group_by_provider()}
    assert groups[PaymentProvider.STRIPE].total == 10.0
    assert groups[PaymentProvider.PAYPAL].count == 1


@pytest.mark.asyncio
async def test_unapplied_grants_are_found(db):
    tx = await add_pending_purchase(db, "ORDER-1")
    await db.compare_and_set_status(tx.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED)

    assert [t.id for t in await db.find_unapplied_grants()] == [tx.id]
    await db.mark_credits_applied(tx.id)
    assert await db.find_unapplied_grants() == []


@pytest.mark.asyncio
async def test_refund_rows_without_payment_id_are_not_unique(db):
    for _ in range(2):
        await db.add_transaction(
            Transaction(user_id="user-1", type=TransactionType.REFUND, amount=5, credits_applied=True)
        )
    assert await db.count_transactions("user-1", type=TransactionType.REFUND) == 2


@pytest.mark.asyncio
async def test_unapplied_refunds_are_found(db):
    refund = await db.add_transaction(
        Transaction(
            user_id="user-1",
            type=TransactionType.REFUND,
            amount=25,
            payment_id="ORDER-1",
            payment_provider=PaymentProvider.PAYPAL,
            payment_status=PaymentStatus.REFUNDED,
        )
    )
    await db.add_transaction(
        Transaction(user_id="user-1", type=TransactionType.REFUND, amount=5, credits_applied=True)
    )

    assert [t.id for t in await db.find_unapplied_grants()] == [refund.id]
    await db.mark_credits_applied(refund.id)
    assert await db.find_unapplied_grants() == []
