from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import ProviderRevenue
from ..models.transaction import PaymentStatus, Transaction, TransactionType
from ..models.user import UserAccount


class BaseDBManager(ABC):
    """
    DB-agnostic async transaction store.

    Concrete implementations (in-memory, MongoDB, ...) must provide:

    - a uniqueness constraint on ``(payment_provider, payment_id, type)`` for
      PURCHASE and REFUND rows, reported as `DuplicateTransactionError`;
    - an atomic balance primitive (`adjust_user_credits`);
    - an atomic compare-and-set on a transaction's status.

    Check-then-act idempotency in the services is only race-free because of
    these three properties.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context if the backend supports it.
        Should rollback on exception and commit on success.
        """
        yield

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def get_user_credits(self, user_id: str) -> Optional[int]: ...

    @abstractmethod
    async def adjust_user_credits(
        self,
        user_id: str,
        delta: int,
        *,
        minimum_balance: Optional[int] = None,
        earned_delta: int = 0,
        spent_delta: int = 0,
    ) -> Optional[int]:
        """
        Atomically add `delta` (may be negative) to the user's balance.

        When `minimum_balance` is given the update only applies if the
        resulting balance stays at or above it. Returns the new balance, or
        None if the user does not exist or the condition failed.
        """
        ...

    # Transaction operations
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction:
        """
        Insert a new transaction and assign its id.
        Raises DuplicateTransactionError on a uniqueness violation.
        """
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def find_by_payment_id(self, payment_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def find_by_payment_id_and_status(
        self, payment_id: str, status: PaymentStatus
    ) -> Optional[Transaction]: ...

    @abstractmethod
    async def find_by_payment_id_and_type(
        self, payment_id: str, type: TransactionType
    ) -> Optional[Transaction]: ...

    @abstractmethod
    async def update_status_by_payment_id(
        self, payment_id: str, status: PaymentStatus
    ) -> int:
        """
        Move every transaction for `payment_id` whose current status may
        legally transition to `status`. Returns the number of rows changed;
        rows already in `status` or in a terminal status are left alone.
        """
        ...

    @abstractmethod
    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        """
        Atomically move one transaction from `expected` to `new`, applying
        `updates` in the same write. Returns the updated transaction, or None
        if it was not in `expected` (someone else won the race).
        """
        ...

    @abstractmethod
    async def mark_credits_applied(self, transaction_id: str) -> None: ...

    @abstractmethod
    async def find_unapplied_grants(self) -> List[Transaction]:
        """
        COMPLETED purchases and REFUNDED refunds whose balance change never
        landed.
        """
        ...

    @abstractmethod
    async def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> Iterable[Transaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_transactions(
        self, user_id: str, type: Optional[TransactionType] = None
    ) -> int: ...

    # Reporting
    @abstractmethod
    async def sum_completed_purchases(self, since: Optional[datetime] = None) -> float:
        """Total `payment_amount` of COMPLETED PURCHASE rows."""
        ...

    @abstractmethod
    async def group_by_provider(self) -> List[ProviderRevenue]: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
