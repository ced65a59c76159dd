from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType
from ..models.transaction import PaymentProvider

logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Audit trail of the credit ledger.

    Every entry is stored through the `BaseDBManager` and mirrored as one
    JSON line in `file_path`. The store write is part of the operation; the
    file is a convenience copy for log shippers, so a failed append is only
    logged.
    """

    def __init__(self, db: BaseDBManager, file_path: Union[str, Path]) -> None:
        self._db = db
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def file_path(self) -> Path:
        return self._file_path

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        payment_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEntry(
                event_type=LedgerEventType.TRANSACTION,
                user_id=user_id,
                payment_id=payment_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )

    async def log_payment(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        provider: Optional[PaymentProvider] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self.record(
            LedgerEntry(
                event_type=LedgerEventType.PAYMENT,
                user_id=user_id,
                payment_id=payment_id,
                provider=provider,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        logger.error("%s (user=%s, payment=%s): %s", message, user_id, payment_id, details)
        return await self.record(
            LedgerEntry(
                event_type=LedgerEventType.ERROR,
                user_id=user_id,
                payment_id=payment_id,
                message=message,
                details=details,
                correlation_id=correlation_id,
            )
        )

    async def record(self, entry: LedgerEntry) -> LedgerEntry:
        stored = await self._db.add_ledger_entry(entry)
        self._append(stored)
        return stored

    def _append(self, entry: LedgerEntry) -> None:
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.serialize_for_db(), default=str) + "\n")
        except OSError:
            logger.warning("Could not append ledger entry to %s", self._file_path, exc_info=True)
