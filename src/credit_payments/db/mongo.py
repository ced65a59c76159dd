from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import BaseDBManager
from ..exceptions import DuplicateTransactionError
from ..models.base import DBSerializableModel, utcnow
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.payment import ProviderRevenue
from ..models.transaction import (
    UNAPPLIED_GRANT_STATES,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from ..models.user import UserAccount


TModel = TypeVar("TModel", bound=DBSerializableModel)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Every mutation the services rely on for idempotency is a single-document
    atomic write: `$inc` with a conditional filter for balances,
    `find_one_and_update` filtered on the expected status for the
    compare-and-set, and a unique partial index for duplicate grants.
    Call `ensure_indexes()` once at startup.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # Individual document writes are atomic in MongoDB; the services do
        # not depend on multi-document transactions.
        yield

    async def ensure_indexes(self) -> None:
        for model in (Transaction, UserAccount, LedgerEntry, NotificationEvent):
            col = self._db[model.collection_name]
            for index in model.indexes:
                options: Dict[str, Any] = {"name": index.name, "unique": index.unique}
                partial = index.mongo_partial_filter()
                if partial:
                    options["partialFilterExpression"] = partial
                await col.create_index([(f, 1) for f in index.fields], **options)

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_many(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> List[TModel]:
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    @property
    def _transactions(self):
        return self._db[Transaction.collection_name]

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        data = self._prepare_insert(user)
        await col.insert_one(data)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id})
        return self._decode(UserAccount, doc)

    async def get_user_credits(self, user_id: str) -> Optional[int]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id}, {"credits": 1})
        return int(doc.get("credits", 0)) if doc is not None else None

    async def adjust_user_credits(
        self,
        user_id: str,
        delta: int,
        *,
        minimum_balance: Optional[int] = None,
        earned_delta: int = 0,
        spent_delta: int = 0,
    ) -> Optional[int]:
        col = self._db[UserAccount.collection_name]
        query: Dict[str, Any] = {"_id": user_id}
        if minimum_balance is not None:
            # new balance >= minimum  <=>  current >= minimum - delta
            query["credits"] = {"$gte": minimum_balance - delta}
        doc = await col.find_one_and_update(
            query,
            {
                "$inc": {
                    "credits": delta,
                    "total_credits_earned": earned_delta,
                    "total_credits_spent": spent_delta,
                },
                "$set": {"updated_at": utcnow()},
            },
            projection={"credits": 1},
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["credits"]) if doc is not None else None

    # Transaction operations
    async def add_transaction(self, tx: Transaction) -> Transaction:
        data = self._prepare_insert(tx)
        try:
            await self._transactions.insert_one(data)
        except DuplicateKeyError as exc:
            raise DuplicateTransactionError(tx.payment_id or "", tx.type.value) from exc
        return tx

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        doc = await self._transactions.find_one({"_id": transaction_id})
        return self._decode(Transaction, doc)

    async def _find_one(self, query: Dict[str, Any]) -> Optional[Transaction]:
        cursor = self._transactions.find(query).sort("created_at", 1).limit(1)
        docs = await cursor.to_list(length=1)
        return self._decode(Transaction, docs[0]) if docs else None

    async def find_by_payment_id(self, payment_id: str) -> Optional[Transaction]:
        return await self._find_one({"payment_id": payment_id})

    async def find_by_payment_id_and_status(
        self, payment_id: str, status: PaymentStatus
    ) -> Optional[Transaction]:
        return await self._find_one(
            {"payment_id": payment_id, "payment_status": status.value}
        )

    async def find_by_payment_id_and_type(
        self, payment_id: str, type: TransactionType
    ) -> Optional[Transaction]:
        return await self._find_one({"payment_id": payment_id, "type": type.value})

    async def update_status_by_payment_id(
        self, payment_id: str, status: PaymentStatus
    ) -> int:
        sources = [s.value for s in PaymentStatus.sources_for(status)]
        if not sources:
            return 0
        result = await self._transactions.update_many(
            {"payment_id": payment_id, "payment_status": {"$in": sources}},
            {"$set": {"payment_status": status.value}},
        )
        return result.modified_count

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        fields: Dict[str, Any] = dict(updates or {})
        fields["payment_status"] = new.value
        doc = await self._transactions.find_one_and_update(
            {"_id": transaction_id, "payment_status": expected.value},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(Transaction, doc)

    async def mark_credits_applied(self, transaction_id: str) -> None:
        await self._transactions.update_one(
            {"_id": transaction_id}, {"$set": {"credits_applied": True}}
        )

    async def find_unapplied_grants(self) -> List[Transaction]:
        cursor = self._transactions.find(
            {
                "$or": [
                    {"type": tx_type.value, "payment_status": status.value}
                    for tx_type, status in UNAPPLIED_GRANT_STATES
                ],
                "credits_applied": {"$ne": True},
            }
        )
        docs = await cursor.to_list(length=None)
        return self._decode_many(Transaction, docs)

    @staticmethod
    def _user_query(user_id: str, type: Optional[TransactionType]) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": user_id}
        if type is not None:
            query["type"] = type.value
        return query

    async def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
    ) -> Iterable[Transaction]:
        cursor = (
            self._transactions.find(self._user_query(user_id, type))
            .sort("created_at", -1)
            .skip(offset)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return self._decode_many(Transaction, docs)

    async def count_transactions(
        self, user_id: str, type: Optional[TransactionType] = None
    ) -> int:
        return await self._transactions.count_documents(self._user_query(user_id, type))

    # Reporting
    @staticmethod
    def _completed_purchase_match(since: Optional[datetime] = None) -> Dict[str, Any]:
        match: Dict[str, Any] = {
            "type": TransactionType.PURCHASE.value,
            "payment_status": PaymentStatus.COMPLETED.value,
        }
        if since is not None:
            match["created_at"] = {"$gte": since}
        return match

    async def sum_completed_purchases(self, since: Optional[datetime] = None) -> float:
        pipeline = [
            {"$match": self._completed_purchase_match(since)},
            {"$group": {"_id": None, "total": {"$sum": "$payment_amount"}}},
        ]
        docs = await self._transactions.aggregate(pipeline).to_list(length=1)
        return float(docs[0]["total"]) if docs else 0.0

    async def group_by_provider(self) -> List[ProviderRevenue]:
        pipeline = [
            {"$match": self._completed_purchase_match()},
            {
                "$group": {
                    "_id": "$payment_provider",
                    "total": {"$sum": "$payment_amount"},
                    "count": {"$sum": 1},
                }
            },
        ]
        docs = await self._transactions.aggregate(pipeline).to_list(length=None)
        return [
            ProviderRevenue(payment_provider=d["_id"], total=float(d["total"]), count=d["count"])
            for d in docs
        ]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        data = self._prepare_insert(notification)
        await col.insert_one(data)
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data)
        return entry
