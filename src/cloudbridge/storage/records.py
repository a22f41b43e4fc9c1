"""
Record persistence for accounts and cached cost results.

A record is an opaque JSON body tagged with its kind and owning account, so
every backend can answer the two questions the service asks: "everything of
this kind" and "everything belonging to this account".
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, Field

from ..providers.base import utcnow

logger = logging.getLogger(__name__)

ACCOUNT_KIND = "account"


class StoredRecord(BaseModel):
    """One persisted row."""

    id: str = Field(..., min_length=1)
    kind: str = Field(..., min_length=1)
    account_id: str
    body: str
    updated_at: datetime = Field(default_factory=utcnow)


class RecordStore(ABC):
    """Abstract base class for record persistence backends."""

    @abstractmethod
    def upsert(self, record: StoredRecord) -> None:
        """Insert the record or replace the one with the same id."""
        pass

    @abstractmethod
    def query(self, kind: str | None = None, account_id: str | None = None) -> list[StoredRecord]:
        """Return records matching every given filter, oldest first."""
        pass

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """Delete a record; returns False when it did not exist."""
        pass

    def delete_account(self, account_id: str) -> int:
        """Delete every record belonging to an account."""
        removed = 0
        for record in self.query(account_id=account_id):
            if self.delete(record.id):
                removed += 1
        logger.debug(f"Deleted {removed} records for account {account_id}")
        return removed

    def clear(self, kind: str | None = None) -> int:
        """Delete every record, or every record of one kind."""
        removed = 0
        for record in self.query(kind=kind):
            if self.delete(record.id):
                removed += 1
        return removed

    def close(self) -> None:
        pass


class MemoryRecordStore(RecordStore):
    """Process-local store, used when persistence is disabled and in tests."""

    def __init__(self):
        self._records: dict[str, StoredRecord] = {}

    def upsert(self, record: StoredRecord) -> None:
        self._records[record.id] = record

    def query(self, kind: str | None = None, account_id: str | None = None) -> list[StoredRecord]:
        matches = [
            record
            for record in self._records.values()
            if (kind is None or record.kind == kind)
            and (account_id is None or record.account_id == account_id)
        ]
        return sorted(matches, key=lambda r: r.updated_at)

    def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def __len__(self) -> int:
        return len(self._records)
