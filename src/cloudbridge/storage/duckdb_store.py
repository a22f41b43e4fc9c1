"""DuckDB-backed record store."""

import logging
from datetime import datetime
from pathlib import Path

import duckdb

from .records import RecordStore, StoredRecord

logger = logging.getLogger(__name__)


class DuckDBRecordStore(RecordStore):
    """Embedded analytical database holding one `records` table."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            db_path = str(Path(db_path).expanduser())
        self.conn = duckdb.connect(db_path)
        self._init_db()
        logger.info(f"DuckDB record store opened at {self.db_path}")

    def _init_db(self):
        """Initialize database with the records table."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                account_id TEXT NOT NULL,
                body TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

    def upsert(self, record: StoredRecord) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO records (id, kind, account_id, body, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (record.id, record.kind, record.account_id, record.body, record.updated_at.isoformat()),
        )

    def query(self, kind: str | None = None, account_id: str | None = None) -> list[StoredRecord]:
        clauses = []
        params = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        if account_id is not None:
            clauses.append("account_id = ?")
            params.append(account_id)

        sql = "SELECT id, kind, account_id, body, updated_at FROM records"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY updated_at"

        rows = self.conn.execute(sql, params).fetchall()
        return [
            StoredRecord(
                id=row[0],
                kind=row[1],
                account_id=row[2],
                body=row[3],
                updated_at=datetime.fromisoformat(row[4]),
            )
            for row in rows
        ]

    def delete(self, record_id: str) -> bool:
        existing = self.conn.execute(
            "SELECT COUNT(*) FROM records WHERE id = ?", (record_id,)
        ).fetchone()
        if not existing or existing[0] == 0:
            return False
        self.conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
        return True

    def delete_account(self, account_id: str) -> int:
        count = self.conn.execute(
            "SELECT COUNT(*) FROM records WHERE account_id = ?", (account_id,)
        ).fetchone()[0]
        self.conn.execute("DELETE FROM records WHERE account_id = ?", (account_id,))
        logger.debug(f"Deleted {count} records for account {account_id}")
        return count

    def close(self) -> None:
        self.conn.close()
