"""diskcache-backed record store."""

import logging
from pathlib import Path

import diskcache as dc

from .records import RecordStore, StoredRecord

logger = logging.getLogger(__name__)


class DiskCacheRecordStore(RecordStore):
    """Records kept as JSON strings in a diskcache directory, keyed by record id."""

    def __init__(self, directory: str = "~/.cloudbridge/cache", size_limit: int = 100 * 1024 * 1024):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.cache = dc.Cache(str(self.directory), size_limit=size_limit)
        logger.info(f"Disk record store opened at {self.directory}")

    def upsert(self, record: StoredRecord) -> None:
        self.cache.set(record.id, record.model_dump_json())

    def query(self, kind: str | None = None, account_id: str | None = None) -> list[StoredRecord]:
        matches = []
        for key in list(self.cache.iterkeys()):
            raw = self.cache.get(key)
            if raw is None:
                continue
            record = StoredRecord.model_validate_json(raw)
            if kind is not None and record.kind != kind:
                continue
            if account_id is not None and record.account_id != account_id:
                continue
            matches.append(record)
        return sorted(matches, key=lambda r: r.updated_at)

    def delete(self, record_id: str) -> bool:
        return bool(self.cache.delete(record_id))

    def close(self) -> None:
        self.cache.close()
