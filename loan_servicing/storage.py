"""
Storage Backend Module

Repository primitives for the servicing engine: an abstract interface plus
in-memory (testing) and SQLite (persistence) implementations. Records are
JSON documents; monetary values are stored as Decimal strings.

Both backends honour atomic(): a failed payment, cancellation or
refinancing leaves no partial writes behind.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone, date
import sqlite3
import json
import threading
import copy
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Identity and timestamps shared by every servicing record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready dict with Decimals and dates as strings"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, date):
                result[key] = value.isoformat()
        return result

    def touch(self) -> None:
        """Refresh updated_at"""
        self.updated_at = datetime.now(timezone.utc)


class StorageInterface(ABC):
    """
    Table/record repository used by the servicing engine

    Tables hold credits, installments, payments, receipts, client scores and
    audit events. Each record is a JSON-compatible dict keyed by its id.
    """

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Record by id, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record; True when it existed"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    # Backends without transactions treat these as no-ops
    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """All writes in the block commit together or not at all"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Transactions snapshot every table on begin and restore the snapshot on
    rollback. Nested atomic() blocks join the outermost transaction.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._depth = 0

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip keeps stored data isolated from caller mutation
        return json.loads(json.dumps(record, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Store a detached copy"""
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Detached copy of a stored record"""
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._table(table))

    def begin_transaction(self) -> None:
        """Snapshot all tables (outermost transaction only)"""
        self._lock.acquire()
        if self._depth == 0:
            self._snapshot = copy.deepcopy(self._data)
        self._depth += 1

    def commit(self) -> None:
        """Drop the snapshot once the outermost transaction commits"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot taken by the outermost transaction"""
        try:
            self._depth -= 1
            if self._depth == 0 and self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None
        finally:
            self._lock.release()

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """SQLite persistence: one table per record kind, JSON payload per row"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Create the table and its created_at index on first use"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Filtered in Python over the decoded payloads"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}").fetchone()
            return row['count']

    def begin_transaction(self) -> None:
        """Hold the connection until the outermost block finishes"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Commit once the outermost block finishes"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Roll back the whole outermost block"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.rollback()
                # tables created inside the transaction are gone too
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
