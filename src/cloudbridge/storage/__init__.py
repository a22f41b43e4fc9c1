"""Persistence backends for accounts and cached cost results."""

from .disk_store import DiskCacheRecordStore
from .duckdb_store import DuckDBRecordStore
from .records import ACCOUNT_KIND, MemoryRecordStore, RecordStore, StoredRecord

__all__ = [
    "ACCOUNT_KIND",
    "DiskCacheRecordStore",
    "DuckDBRecordStore",
    "MemoryRecordStore",
    "RecordStore",
    "StoredRecord",
]
