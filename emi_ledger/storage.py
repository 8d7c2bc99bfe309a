"""
Storage Backend Module

Local durable key-value store with keyed tables, in-memory (testing) and SQLite
(on-device persistence). The owning client is the only writer, so backends do
no locking. Records are JSON documents; iteration follows insertion order.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import copy
import json
import sqlite3


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def count(self, table: str) -> int:
        return len(self.load_all(table))

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
        return [
            record for record in self.load_all(table)
            if all(key in record and record[key] == value for key, value in filters.items())
        ]

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> bool:
        """Merge ``changes`` into an existing record. Returns False if absent."""
        record = self.load(table, record_id)
        if record is None:
            return False
        record.update(changes)
        self.save(table, record_id, record)
        return True

    def delete_where(self, table: str, filters: Dict[str, Any], key: str = "id") -> int:
        """Delete every record matching ``filters``; ``key`` names the id field"""
        removed = 0
        for record in self.find(table, filters):
            if self.delete(table, record[key]):
                removed += 1
        return removed

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic multi-table writes. Nested blocks join the outer one."""
        depth = getattr(self, "_atomic_depth", 0)
        if depth:
            self._atomic_depth = depth + 1
            try:
                yield
            finally:
                self._atomic_depth = depth
            return

        self._atomic_depth = 1
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise
        finally:
            self._atomic_depth = 0


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        # Round-trip through JSON so callers cannot mutate stored state
        self._table(table)[record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._table(table).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        return self._table(table).pop(record_id, None) is not None

    def clear_table(self, table: str) -> None:
        self._data[table] = {}

    def begin_transaction(self) -> None:
        if self._snapshot is None:
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        self._snapshot = None

    def rollback(self) -> None:
        if self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._in_transaction = False
        self._tables = set()

        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._maybe_commit()
        self._tables.add(table)

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        # Upsert keeps the original row position so load_all stays in insertion order
        self._connection.execute(f"""
            INSERT INTO {table} (id, data, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
        """, (record_id, json.dumps(data, default=str), now))
        self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_table(table)
        row = self._connection.execute(
            f"SELECT data FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY seq")
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        self._maybe_commit()
        return cursor.rowcount > 0

    def count(self, table: str) -> int:
        self._ensure_table(table)
        return self._connection.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()['n']

    def clear_table(self, table: str) -> None:
        self._ensure_table(table)
        self._connection.execute(f"DELETE FROM {table}")
        self._maybe_commit()

    def begin_transaction(self) -> None:
        self._in_transaction = True

    def commit(self) -> None:
        if self._in_transaction:
            self._connection.commit()
            self._in_transaction = False

    def rollback(self) -> None:
        if self._in_transaction:
            self._connection.rollback()
            self._in_transaction = False
            # Tables created inside the rolled-back transaction are gone too
            self._tables.clear()

    def close(self) -> None:
        if self._connection:
            self._connection.close()
            self._connection = None


def create_storage(db_path: Optional[str] = None) -> StorageInterface:
    """SQLite for a real path, in-memory otherwise"""
    if not db_path or db_path == ":memory:":
        return InMemoryStorage()
    return SQLiteStorage(db_path)
