"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Stores declare whether they can run multi-record atomic units
(``supports_transactions``) and enforce unique indexes on record fields, so
uniqueness is checked by the store at write time rather than by a prior read.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Union
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


_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class DuplicateKeyError(Exception):
    """Raised when a write violates the primary key or a unique index"""

    def __init__(self, table: str, field: str, value: Any = None):
        self.table = table
        self.field = field
        self.value = value
        super().__init__(f"Duplicate value for {table}.{field}: {value}")


class StorageTimeoutError(Exception):
    """Raised when an atomic unit cannot start within its timeout"""


def to_storage_value(value: Any) -> Any:
    """Convert a value to its JSON storage form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_storage_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_storage_value(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: to_storage_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    supports_transactions = False

    def __init__(self):
        self._lock = threading.RLock()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """
        Insert a new record

        Raises:
            DuplicateKeyError: If the id or a unique field is already taken
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def create_unique_index(self, table: str, field: str) -> None:
        """Enforce uniqueness of a record field across the table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self, timeout: Optional[float] = None):
        """
        Context manager for atomic operations

        The store's lock is held for the whole unit, so units against the same
        store are serialized. Nested units join the outermost one.

        Args:
            timeout: Seconds to wait for the unit to start; None waits forever

        Raises:
            StorageTimeoutError: If the lock cannot be acquired in time
        """
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise StorageTimeoutError(f"Could not start atomic unit within {timeout}s")
        try:
            self.begin_transaction()
            try:
                yield
                self.commit()
            except BaseException:
                self.rollback()
                raise
        finally:
            self._lock.release()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    With ``transactional=True`` atomic units snapshot the data and restore it
    on rollback. With ``transactional=False`` the store behaves like a backend
    without multi-record transactions.
    """

    def __init__(self, transactional: bool = True):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, Set[str]] = {}
        self._transactional = transactional
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._depth = 0

    @property
    def supports_transactions(self) -> bool:
        return self._transactional

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        for field in self._unique.get(table, ()):
            value = data.get(field)
            if value is None:
                continue
            for other_id, other in self._data[table].items():
                if other_id != record_id and other.get(field) == value:
                    raise DuplicateKeyError(table, field, value)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._copy(data)
            self._check_unique(table, record_id, record)
            self._data[table][record_id] = record

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateKeyError(table, "id", record_id)
            record = self._copy(data)
            self._check_unique(table, record_id, record)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def create_unique_index(self, table: str, field: str) -> None:
        """Register a unique field; existing duplicates are rejected"""
        with self._lock:
            self._ensure_table(table)
            seen = set()
            for record in self._data[table].values():
                value = record.get(field)
                if value is None:
                    continue
                if value in seen:
                    raise DuplicateKeyError(table, field, value)
                seen.add(value)
            self._unique.setdefault(table, set()).add(field)

    def begin_transaction(self) -> None:
        """Snapshot the data at the start of the outermost unit"""
        if not self._transactional:
            return
        with self._lock:
            if self._depth == 0:
                self._snapshot = self._copy(self._data)
            self._depth += 1

    def commit(self) -> None:
        """Drop the snapshot once the outermost unit completes"""
        if not self._transactional:
            return
        with self._lock:
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None

    def rollback(self) -> None:
        """Restore the snapshot taken when the outermost unit began"""
        if not self._transactional:
            return
        with self._lock:
            self._depth -= 1
            if self._depth == 0 and self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    supports_transactions = True

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level='DEFERRED',
            timeout=busy_timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._tables: Set[str] = set()
        self._unique: Dict[str, Set[str]] = {}
        self._depth = 0

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _commit_unless_in_transaction(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table}")
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
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
        self._tables.add(table)
        self._commit_unless_in_transaction()

    def _conflicting_field(self, table: str, error: sqlite3.IntegrityError) -> str:
        message = str(error)
        for field in self._unique.get(table, ()):
            if f"uq_{table}_{field}" in message:
                return field
        return "id"

    def _write(self, sql: str, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        created_at = str(data.get('created_at') or now)
        data_json = json.dumps(data, default=str)
        try:
            self._connection.execute(sql, (record_id, data_json, created_at, now))
        except sqlite3.IntegrityError as e:
            field = self._conflicting_field(table, e)
            if self._depth == 0:
                self._connection.rollback()
            value = record_id if field == "id" else data.get(field)
            raise DuplicateKeyError(table, field, value) from e
        self._commit_unless_in_transaction()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            self._write(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, table, record_id, data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into SQLite"""
        with self._lock:
            self._ensure_table(table)
            self._write(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def create_unique_index(self, table: str, field: str) -> None:
        """Create a unique expression index on a JSON field"""
        if not _IDENTIFIER.match(field):
            raise ValueError(f"Invalid field name: {field}")
        with self._lock:
            self._ensure_table(table)
            try:
                self._connection.execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_{field}
                    ON {table}(json_extract(data, '$.{field}'))
                """)
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(table, field) from e
            self._unique.setdefault(table, set()).add(field)
            self._commit_unless_in_transaction()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if self._depth == 0 and not self._connection.in_transaction:
                # Take the write lock up front so other connections wait for us
                self._connection.execute("BEGIN IMMEDIATE")
            self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            self._depth -= 1
            if self._depth == 0:
                self._connection.commit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            self._depth -= 1
            if self._depth == 0:
                self._connection.rollback()
                # DDL issued inside the unit is rolled back as well
                self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, memory_transactions: bool = True) -> StorageInterface:
    """
    Create a storage backend from a URL

    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` alone opens an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(transactional=memory_transactions)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
