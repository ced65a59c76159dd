from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class UserAccount(DBSerializableModel):
    """
    User as seen by the credit ledger.

    The account itself is owned by the host application; the ledger only
    reads and atomically adjusts `credits` and the lifetime counters.
    """

    collection_name: ClassVar[str] = "credit_users"

    id: Optional[str] = Field(default=None)
    email: Optional[str] = None
    username: Optional[str] = None
    credits: int = 0
    total_credits_earned: int = 0
    total_credits_spent: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
