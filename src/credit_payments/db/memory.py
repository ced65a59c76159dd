from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from .base import BaseDBManager
from ..exceptions import DuplicateTransactionError
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import ProviderRevenue
from ..models.transaction import (
    UNIQUE_PAYMENT_TYPES,
    UNAPPLIED_GRANT_STATES,
    PaymentProvider,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from ..models.user import UserAccount
from ..models.base import utcnow


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    No method awaits between its read and its write, so every operation is
    atomic with respect to other coroutines on the same event loop. The
    uniqueness constraint is enforced exactly like the Mongo partial index.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._unique_keys: Dict[Tuple[Optional[str], str, str], str] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)

    @property
    def notifications(self) -> List[NotificationEvent]:
        return list(self._notifications)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # Serialises multi-step blocks; there is no rollback.
        async with self._lock:
            yield

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        if user.id is None:
            user.id = self._next_id()
        self._users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self._users.get(user_id)

    async def get_user_credits(self, user_id: str) -> Optional[int]:
        user = self._users.get(user_id)
        return user.credits if user is not None else None

    async def adjust_user_credits(
        self,
        user_id: str,
        delta: int,
        *,
        minimum_balance: Optional[int] = None,
        earned_delta: int = 0,
        spent_delta: int = 0,
    ) -> Optional[int]:
        user = self._users.get(user_id)
        if user is None:
            return None
        new_balance = user.credits + delta
        if minimum_balance is not None and new_balance < minimum_balance:
            return None
        user.credits = new_balance
        user.total_credits_earned += earned_delta
        user.total_credits_spent += spent_delta
        user.updated_at = utcnow()
        return new_balance

    # Transaction operations
    @staticmethod
    def _unique_key(tx: Transaction) -> Optional[Tuple[Optional[str], str, str]]:
        if tx.payment_id is None or tx.type not in UNIQUE_PAYMENT_TYPES:
            return None
        provider = tx.payment_provider.value if tx.payment_provider else None
        return (provider, tx.payment_id, tx.type.value)

    async def add_transaction(self, tx: Transaction) -> Transaction:
        key = self._unique_key(tx)
        if key is not None and key in self._unique_keys:
            raise DuplicateTransactionError(tx.payment_id or "", tx.type.value)
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions[tx.id] = tx
        if key is not None:
            self._unique_keys[key] = tx.id
        return tx.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        tx = self._transactions.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    def _first(self, **criteria: Any) -> Optional[Transaction]:
        for tx in sorted(self._transactions.values(), key=lambda t: t.created_at):
            if all(getattr(tx, name) == value for name, value in criteria.items()):
                return tx.model_copy(deep=True)
        return None

    async def find_by_payment_id(self, payment_id: str) -> Optional[Transaction]:
        return self._first(payment_id=payment_id)

    async def find_by_payment_id_and_status(
        self, payment_id: str, status: PaymentStatus
    ) -> Optional[Transaction]:
        return self._first(payment_id=payment_id, payment_status=status)

    async def find_by_payment_id_and_type(
        self, payment_id: str, type: TransactionType
    ) -> Optional[Transaction]:
        return self._first(payment_id=payment_id, type=type)

    async def update_status_by_payment_id(
        self, payment_id: str, status: PaymentStatus
    ) -> int:
        changed = 0
        for tx in self._transactions.values():
            if tx.payment_id != payment_id or tx.payment_status is None:
                continue
            if tx.payment_status == status:
                continue
            if tx.payment_status.can_transition_to(status):
                tx.payment_status = status
                changed += 1
        return changed

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        tx = self._transactions.get(transaction_id)
        if tx is None or tx.payment_status != expected:
            return None
        tx.payment_status = new
        for name, value in (updates or {}).items():
            setattr(tx, name, value)
        return tx.model_copy(deep=True)

    async def mark_credits_applied(self, transaction_id: str) -> None:
        tx = self._transactions.get(transaction_id)
        if tx is not None:
            tx.credits_applied = True

    async def find_unapplied_grants(self) -> List[Transaction]:
        return [
            tx.model_copy(deep=True)
            for tx in self._transactions.values()
            if not tx.credits_applied
            and (tx.type, tx.payment_status) in UNAPPLIED_GRANT_STATES
        ]

    async def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> Iterable[Transaction]:
        rows = [
            t
            for t in self._transactions.values()
            if t.user_id == user_id and (type is None or t.type == type)
        ]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return [t.model_copy(deep=True) for t in rows[offset : offset + limit]]

    async def count_transactions(
        self, user_id: str, type: Optional[TransactionType] = None
    ) -> int:
        return sum(
            1
            for t in self._transactions.values()
            if t.user_id == user_id and (type is None or t.type == type)
        )

    # Reporting
    def _completed_purchases(self, since: Optional[datetime] = None) -> List[Transaction]:
        return [
            t
            for t in self._transactions.values()
            if t.type == TransactionType.PURCHASE
            and t.payment_status == PaymentStatus.COMPLETED
            and (since is None or t.created_at >= since)
        ]

    async def sum_completed_purchases(self, since: Optional[datetime] = None) -> float:
        return float(sum(t.payment_amount or 0 for t in self._completed_purchases(since)))

    async def group_by_provider(self) -> List[ProviderRevenue]:
        groups: Dict[Optional[PaymentProvider], ProviderRevenue] = {}
        for t in self._completed_purchases():
            entry = groups.setdefault(
                t.payment_provider, ProviderRevenue(payment_provider=t.payment_provider)
            )
            entry.total += t.payment_amount or 0
            entry.count += 1
        return list(groups.values())

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification)
        return notification

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry
