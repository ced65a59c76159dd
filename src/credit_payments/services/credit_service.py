from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.payment import BalanceCheck, CreditOperation, CreditResult
from ..models.transaction import (
    PaymentProvider,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from .notification_service import NotificationService

logger = logging.getLogger(__name__)


class CreditService:
    """
    The credit ledger: sole owner of balance mutation and of transaction
    status transitions.

    Business rejections (non-positive amount, unknown user, insufficient
    credits) come back as ``CreditResult(success=False)``. Store errors,
    including `DuplicateTransactionError`, propagate to the caller.

    Balances only move through `BaseDBManager.adjust_user_credits`, which is
    atomic per user, so concurrent grants and deductions never lose updates.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._notifications = notifications

    # Balance queries
    async def get_balance(self, user_id: str) -> Optional[int]:
        return await self._db.get_user_credits(user_id)

    async def check_sufficient_credits(self, user_id: str, required: int) -> BalanceCheck:
        balance = await self.get_balance(user_id)
        if balance is None:
            return BalanceCheck(sufficient=False, balance=0, required=required)
        return BalanceCheck(sufficient=balance >= required, balance=balance, required=required)

    # Spending
    async def deduct_credits(self, op: CreditOperation) -> CreditResult:
        """
        Spend credits. The decrement is conditional on the balance covering
        it, so two concurrent deductions can never overdraw the account.
        """
        if op.amount <= 0:
            return CreditResult(success=False, error="Amount must be positive")

        check = await self.check_sufficient_credits(op.user_id, op.amount)
        if not check.sufficient:
            return CreditResult(
                success=False,
                new_balance=check.balance,
                error=f"Insufficient credits: have {check.balance}, need {op.amount}",
            )

        async with self._db.transaction():
            new_balance = await self._db.adjust_user_credits(
                op.user_id, -op.amount, minimum_balance=0, spent_delta=op.amount
            )
            if new_balance is None:
                # Another deduction drained the balance between check and write.
                balance = await self.get_balance(op.user_id) or 0
                await self._ledger.log_error(
                    message="Insufficient credits for deduction",
                    details={"requested": op.amount, "balance": balance},
                    user_id=op.user_id,
                )
                return CreditResult(
                    success=False,
                    new_balance=balance,
                    error=f"Insufficient credits: have {balance}, need {op.amount}",
                )

            tx = await self._db.add_transaction(
                self._transaction_from(op, amount=-op.amount, credits_applied=True)
            )

            await self._ledger.log_transaction(
                user_id=op.user_id,
                message="Credits deducted",
                details={
                    "amount": op.amount,
                    "new_balance": new_balance,
                    "type": op.type.value,
                    "description": op.description or "",
                },
                payment_id=op.payment_id,
            )

        logger.info(
            "Deducted %s credits from user %s. New balance: %s. Transaction: %s",
            op.amount,
            op.user_id,
            new_balance,
            tx.id,
        )
        return CreditResult(success=True, new_balance=new_balance, transaction_id=tx.id)

    # Granting
    async def add_credits(self, op: CreditOperation) -> CreditResult:
        """
        Create a new transaction row and increment the balance.

        Rows carrying a payment id are created COMPLETED. A second grant for
        the same provider payment raises DuplicateTransactionError.
        """
        if op.amount <= 0:
            return CreditResult(success=False, error="Amount must be positive")
        if await self._db.get_user(op.user_id) is None:
            return CreditResult(success=False, error="User not found")

        async with self._db.transaction():
            tx = await self._db.add_transaction(
                self._transaction_from(
                    op,
                    amount=op.amount,
                    status=PaymentStatus.COMPLETED if op.payment_id else None,
                )
            )
            new_balance = await self._db.adjust_user_credits(
                op.user_id, op.amount, earned_delta=op.amount
            )
            if new_balance is None:
                await self._ledger.log_error(
                    message="Failed to add credits",
                    details={"amount": op.amount, "transaction_id": tx.id},
                    user_id=op.user_id,
                    payment_id=op.payment_id,
                )
                return CreditResult(
                    success=False, transaction_id=tx.id, error="Failed to add credits"
                )
            await self._db.mark_credits_applied(tx.id)  # type: ignore[arg-type]

            await self._ledger.log_transaction(
                user_id=op.user_id,
                message="Credits added",
                details={
                    "amount": op.amount,
                    "new_balance": new_balance,
                    "type": op.type.value,
                    "description": op.description or "",
                },
                payment_id=op.payment_id,
            )

        logger.info(
            "Added %s credits to user %s. New balance: %s. Transaction: %s",
            op.amount,
            op.user_id,
            new_balance,
            tx.id,
        )
        if op.type == TransactionType.PURCHASE and self._notifications:
            await self._notifications.notify_purchase_completed(
                op.user_id, op.amount, new_balance, op.payment_id
            )
        return CreditResult(success=True, new_balance=new_balance, transaction_id=tx.id)

    async def add_credits_to_user(self, user_id: str, amount: int) -> Optional[int]:
        """
        Increment the balance without creating a transaction.
        Returns the new balance, or None if the amount is invalid or the user
        does not exist.
        """
        if amount <= 0:
            logger.error("add_credits_to_user: amount must be positive (got %s)", amount)
            return None
        return await self._db.adjust_user_credits(user_id, amount, earned_delta=amount)

    async def complete_purchase(
        self, tx: Transaction, credits: Optional[int] = None
    ) -> CreditResult:
        """
        Apply the grant carried by an existing PENDING transaction.

        The row is claimed first with an atomic PENDING -> COMPLETED
        compare-and-set, so of any number of concurrent callers exactly one
        increments the balance. Losing the claim to a completed row is the
        idempotent no-op (``already_applied=True``). If the increment fails
        after the claim, the row stays COMPLETED with ``credits_applied`` unset
        and shows up in `find_unapplied_grants`.
        """
        amount = credits or tx.amount
        if amount <= 0:
            return CreditResult(success=False, error="Amount must be positive")

        claimed = await self._db.compare_and_set_status(
            tx.id,  # type: ignore[arg-type]
            PaymentStatus.PENDING,
            PaymentStatus.COMPLETED,
            updates={"amount": amount},
        )
        if claimed is None:
            current = await self._db.get_transaction(tx.id)  # type: ignore[arg-type]
            balance = await self.get_balance(tx.user_id) or 0
            if current is not None and current.payment_status == PaymentStatus.COMPLETED:
                logger.info("Payment %s already completed; skipping grant", tx.payment_id)
                return CreditResult(
                    success=True,
                    new_balance=balance,
                    transaction_id=current.id,
                    already_applied=True,
                )
            status = current.payment_status.value if current and current.payment_status else None
            return CreditResult(
                success=False,
                new_balance=balance,
                transaction_id=tx.id,
                error=f"Transaction cannot be completed from status {status}",
            )

        new_balance = await self.add_credits_to_user(tx.user_id, amount)
        if new_balance is None:
            await self._ledger.log_error(
                message="Failed to add credits",
                details={"amount": amount, "transaction_id": tx.id},
                user_id=tx.user_id,
                payment_id=tx.payment_id,
            )
            if self._notifications:
                await self._notifications.notify_transaction_error(
                    tx.user_id,
                    "Failed to add credits",
                    {"payment_id": tx.payment_id, "amount": amount},
                )
            return CreditResult(success=False, transaction_id=tx.id, error="Failed to add credits")

        await self._db.mark_credits_applied(tx.id)  # type: ignore[arg-type]
        await self._ledger.log_transaction(
            user_id=tx.user_id,
            message="Purchase completed",
            details={
                "amount": amount,
                "new_balance": new_balance,
                "provider": tx.payment_provider.value if tx.payment_provider else None,
            },
            payment_id=tx.payment_id,
        )
        logger.info(
            "Completed payment %s: %s credits to user %s. New balance: %s",
            tx.payment_id,
            amount,
            tx.user_id,
            new_balance,
        )
        if self._notifications:
            await self._notifications.notify_purchase_completed(
                tx.user_id, amount, new_balance, tx.payment_id
            )
        return CreditResult(success=True, new_balance=new_balance, transaction_id=tx.id)

    async def apply_grant(
        self, op: CreditOperation, existing: Optional[Transaction] = None
    ) -> CreditResult:
        """Single entry point for crediting a purchase, with or without a placeholder row."""
        if existing is not None:
            return await self.complete_purchase(existing, op.amount)
        return await self.add_credits(op)

    async def update_transaction_status(self, payment_id: str, status: PaymentStatus) -> bool:
        """
        Move the transactions of `payment_id` to `status` where the state
        machine allows it. Returns True if a row carries `status` afterwards.
        """
        changed = await self._db.update_status_by_payment_id(payment_id, status)
        if changed:
            logger.info("Payment %s moved to %s (%s rows)", payment_id, status.value, changed)
            return True
        existing = await self._db.find_by_payment_id_and_status(payment_id, status)
        if existing is None:
            logger.warning("No transaction of payment %s can move to %s", payment_id, status.value)
        return existing is not None

    # Reversals
    async def process_refund(
        self,
        user_id: str,
        amount: int,
        payment_id: str,
        provider: PaymentProvider,
    ) -> CreditResult:
        """
        Reverse a purchase the provider refunded.

        Creates the REFUND row (status REFUNDED, positive magnitude) and then
        decrements the balance. The balance may go negative: the money has
        already left.
        """
        if amount <= 0:
            return CreditResult(success=False, error="Refund amount must be positive")
        if await self._db.get_user(user_id) is None:
            return CreditResult(success=False, error="User not found")

        async with self._db.transaction():
            tx = await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    type=TransactionType.REFUND,
                    amount=amount,
                    description=f"Refund processed via {provider.value}",
                    payment_id=payment_id,
                    payment_provider=provider,
                    payment_status=PaymentStatus.REFUNDED,
                )
            )
            new_balance = await self._db.adjust_user_credits(
                user_id, -amount, earned_delta=-amount
            )
            if new_balance is None:
                await self._ledger.log_error(
                    message="Failed to deduct refunded credits",
                    details={"amount": amount, "transaction_id": tx.id},
                    user_id=user_id,
                    payment_id=payment_id,
                )
                return CreditResult(
                    success=False, transaction_id=tx.id, error="Failed to process refund"
                )
            await self._db.mark_credits_applied(tx.id)  # type: ignore[arg-type]

            await self._ledger.log_transaction(
                user_id=user_id,
                message="Refund processed",
                details={"amount": amount, "new_balance": new_balance, "provider": provider.value},
                payment_id=payment_id,
            )

        logger.info(
            "Processed refund of %s credits for user %s. New balance: %s. Transaction: %s",
            amount,
            user_id,
            new_balance,
            tx.id,
        )
        if self._notifications:
            await self._notifications.notify_refund_processed(
                user_id, amount, new_balance, payment_id
            )
        return CreditResult(success=True, new_balance=new_balance, transaction_id=tx.id)

    async def refund_credits(
        self,
        user_id: str,
        amount: int,
        reason: str,
        original_transaction_id: Optional[str] = None,
    ) -> CreditResult:
        """Give spent credits back, e.g. when a paid generation failed."""
        if amount <= 0:
            return CreditResult(success=False, error="Refund amount must be positive")
        if await self._db.get_user(user_id) is None:
            return CreditResult(success=False, error="User not found")

        async with self._db.transaction():
            tx = await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    type=TransactionType.REFUND,
                    amount=amount,
                    description=f"Refund: {reason}",
                    credits_applied=True,
                    metadata={"original_transaction_id": original_transaction_id}
                    if original_transaction_id
                    else {},
                )
            )
            new_balance = await self._db.adjust_user_credits(
                user_id, amount, spent_delta=-amount
            )
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits refunded",
                details={
                    "amount": amount,
                    "new_balance": new_balance,
                    "reason": reason,
                    "original_transaction_id": original_transaction_id,
                },
            )

        if new_balance is None:
            return CreditResult(success=False, transaction_id=tx.id, error="Failed to refund credits")
        return CreditResult(success=True, new_balance=new_balance, transaction_id=tx.id)

    async def adjust_credits(self, user_id: str, amount: int, reason: str) -> CreditResult:
        """Administrative correction in either direction."""
        if amount == 0:
            balance = await self.get_balance(user_id)
            return CreditResult(
                success=False, new_balance=balance or 0, error="Amount cannot be zero"
            )
        if amount < 0:
            return await self.deduct_credits(
                CreditOperation(
                    user_id=user_id,
                    amount=-amount,
                    type=TransactionType.ADJUSTMENT,
                    description=f"Admin adjustment: {reason}",
                )
            )
        return await self.add_credits(
            CreditOperation(
                user_id=user_id,
                amount=amount,
                type=TransactionType.ADJUSTMENT,
                description=f"Admin adjustment: {reason}",
            )
        )

    # History / reconciliation
    async def get_credit_history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> Tuple[List[Transaction], int]:
        rows = await self._db.get_transactions(user_id, limit=limit, offset=offset, type=type)
        total = await self._db.count_transactions(user_id, type=type)
        return list(rows), total

    async def find_unapplied_grants(self) -> List[Transaction]:
        return await self._db.find_unapplied_grants()

    @staticmethod
    def _transaction_from(
        op: CreditOperation,
        amount: int,
        status: Optional[PaymentStatus] = None,
        credits_applied: bool = False,
    ) -> Transaction:
        return Transaction(
            user_id=op.user_id,
            type=op.type,
            amount=amount,
            description=op.description,
            payment_id=op.payment_id,
            payment_provider=op.payment_provider,
            payment_status=status,
            payment_amount=op.payment_amount,
            currency=op.currency,
            credits_applied=credits_applied,
            metadata=dict(op.metadata),
        )
