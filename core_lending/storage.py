"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import StorageUnavailableError


_FIELD_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def _check_field(name: str) -> str:
    """Only plain identifiers may be used as JSON paths or table names"""
    if not _FIELD_NAME.match(name):
        raise ValueError(f"Invalid field name: {name!r}")
    return name


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal and Enum objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = format(value, 'f')
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters, in insertion order"""
        pass

    @abstractmethod
    def compare_and_swap(self, table: str, record_id: str, field: str,
                         expected: Any, data: Dict[str, Any]) -> bool:
        """
        Replace a record only if its stored `field` still equals `expected`

        Returns:
            True if the record was replaced, False if it is missing or changed
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations (default: no isolation)"""
        yield


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing and single-process use"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        # Pre-transaction value of each record written inside atomic(), None if new
        self._undo: Optional[Dict[Tuple[str, str], Optional[Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        """Keep the first pre-transaction value of a record about to be written"""
        if self._undo is not None and (table, record_id) not in self._undo:
            # Stored records are replaced, never mutated, so no copy is needed
            self._undo[(table, record_id)] = self._data[table].get(record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return json.loads(json.dumps(record))
            return None

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            for key in filters:
                _check_field(key)

            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def compare_and_swap(self, table: str, record_id: str, field: str,
                         expected: Any, data: Dict[str, Any]) -> bool:
        """Replace a record if `field` is unchanged"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or current.get(field) != expected:
                return False
            self._remember(table, record_id)
            # Dict order is insertion order, so replacing in place keeps position
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))
            return True

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    @contextmanager
    def atomic(self):
        """Hold the store lock for the block and undo its writes on error"""
        with self._lock:
            if self._undo is not None:
                # Nested block joins the outer one
                yield
                return

            self._undo = {}
            try:
                yield
            except Exception:
                self._rollback()
                raise
            finally:
                self._undo = None

    def _rollback(self) -> None:
        for (table, record_id), previous in self._undo.items():
            if previous is None:
                self._data[table].pop(record_id, None)
            else:
                self._data[table][record_id] = previous


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        try:
            # isolation_level='DEFERRED' lets us group writes into one transaction
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                with self._lock:
                    self._connection.execute("PRAGMA journal_mode = WAL")
                    self._connection.execute("PRAGMA synchronous = NORMAL")
                    self._connection.commit()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open SQLite database {self.db_path}: {e}")

    @contextmanager
    def _guard(self):
        """Serialize access and translate driver errors"""
        with self._lock:
            if self._connection is None:
                raise StorageUnavailableError("Storage is closed")
            try:
                yield self._connection
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"SQLite error: {e}", {"db_path": self.db_path})

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_field(table)
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        # Create index on timestamps for better query performance
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._maybe_commit()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard() as conn:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps the original row (and its insertion order) on update
            conn.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))

            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard() as conn:
            self._ensure_table(table)
            cursor = conn.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._guard() as conn:
            self._ensure_table(table)
            cursor = conn.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON path lookups"""
        with self._guard() as conn:
            self._ensure_table(table)

            conditions = []
            params = []
            for key, value in filters.items():
                conditions.append(f"json_extract(data, '$.{_check_field(key)}') = ?")
                params.append(value)

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = conn.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY seq
            """, params)

            return [json.loads(row['data']) for row in cursor.fetchall()]

    def compare_and_swap(self, table: str, record_id: str, field: str,
                         expected: Any, data: Dict[str, Any]) -> bool:
        """Conditional single-statement update keyed on a JSON field"""
        with self._guard() as conn:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            cursor = conn.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND json_extract(data, '$.{_check_field(field)}') = ?
            """, (json.dumps(data, default=str), now, record_id, expected))

            self._maybe_commit()
            return cursor.rowcount == 1

    @contextmanager
    def atomic(self):
        """Run the block in one SQLite transaction, holding the connection lock"""
        with self._guard() as conn:
            if self._in_transaction:
                # Nested block joins the outer transaction
                yield
                return

            self._in_transaction = True
            try:
                yield
                conn.commit()
            except Exception:
                conn.rollback()
                # Tables created inside the transaction are gone again
                self._tables.clear()
                raise
            finally:
                self._in_transaction = False

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """
    Build the storage backend named in configuration

    Args:
        config: Object with `storage_backend` and `sqlite_path` attributes

    Returns:
        StorageInterface implementation
    """
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.sqlite_path)
    raise ValueError(f"Unsupported storage backend: {config.storage_backend}")
