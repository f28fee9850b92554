"""
Storage Backend Module

Provides the storage interface used by every repository plus in-memory
(testing), SQLite and PostgreSQL implementations. Records are JSON documents
keyed by id. All monetary values are stored as Decimal strings.

Guarantees the ledger relies on:
- insert() never overwrites; an existing id raises DuplicateKeyError.
- load_for_update() inside atomic() holds an exclusive lock on the record
  until the unit of work commits or rolls back.
- A failed unit of work leaves no partial writes behind.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager


class DuplicateKeyError(Exception):
    """Raised by insert() when the record id already exists in the table"""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"Duplicate key {record_id!r} in table {table!r}")
        self.table = table
        self.record_id = record_id


def _to_storable(value: Any) -> Any:
    """Convert a Python value into its JSON-storable form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_storable(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _to_storable(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._unit = threading.local()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising DuplicateKeyError if the id exists"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record and hold an exclusive lock on it until the unit of work ends"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table, oldest first"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a unit of work (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current unit of work (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current unit of work (default no-op)"""
        pass

    def in_transaction(self) -> bool:
        """True when the calling thread is inside atomic()"""
        return getattr(self._unit, 'depth', 0) > 0

    def _require_transaction(self) -> None:
        if not self.in_transaction():
            raise RuntimeError("load_for_update() must be called inside atomic()")

    @contextmanager
    def atomic(self):
        """
        Run a block as one unit of work.

        Nested atomic() blocks on the same thread join the outermost one;
        only the outermost block commits or rolls back.
        """
        depth = getattr(self._unit, 'depth', 0)
        if depth:
            self._unit.depth = depth + 1
            try:
                yield
            finally:
                self._unit.depth = depth
            return

        self.begin_transaction()
        self._unit.depth = 1
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise
        finally:
            self._unit.depth = 0


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Writes made inside atomic() are journaled per thread and undone on
    rollback. Until the unit commits, other threads keep reading the last
    committed version of each record it wrote, and a second writer to such a
    record waits for the unit to end. Record locks taken by load_for_update()
    are released when the unit of work ends.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._unit_ended = threading.Condition(self._lock)
        self._record_locks: Dict[Tuple[str, str], threading.Lock] = {}
        # (table, record_id) -> (owning unit, last committed version)
        self._uncommitted: Dict[Tuple[str, str], Tuple[object, Optional[Dict[str, Any]]]] = {}

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _owned_elsewhere(self, key: Tuple[str, str]) -> bool:
        entry = self._uncommitted.get(key)
        return entry is not None and entry[0] is not getattr(self._unit, 'token', None)

    def _visible(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        key = (table, record_id)
        if self._owned_elsewhere(key):
            return self._uncommitted[key][1]
        return self._data[table].get(record_id)

    def _wait_for_owner(self, table: str, record_id: str) -> None:
        while self._owned_elsewhere((table, record_id)):
            self._unit_ended.wait()

    def _write(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        previous = self._data[table].get(record_id)
        journal = getattr(self._unit, 'journal', None)
        if journal is not None:
            journal.append((table, record_id, previous))
            self._uncommitted.setdefault((table, record_id), (self._unit.token, previous))
        self._data[table][record_id] = self._copy(data)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._wait_for_owner(table, record_id)
            self._write(table, record_id, data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._wait_for_owner(table, record_id)
            if record_id in self._data[table]:
                raise DuplicateKeyError(table, record_id)
            self._write(table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._visible(table, record_id)
            if record is not None:
                return self._copy(record)
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._require_transaction()
        key = (table, record_id)
        held = self._unit.held
        if key not in held:
            with self._lock:
                record_lock = self._record_locks.setdefault(key, threading.Lock())
            # Blocks until the owning unit of work ends
            record_lock.acquire()
            held.append(key)
        return self.load(table, record_id)

    def _visible_records(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        records = (self._visible(table, record_id) for record_id in list(self._data[table]))
        return [record for record in records if record is not None]

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._visible_records(table)]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return self._visible(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._visible_records(table)
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._visible_records(table))

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        self._unit.token = object()
        self._unit.journal = []
        self._unit.held = []

    def commit(self) -> None:
        with self._lock:
            self._end_unit()
        self._release_record_locks()

    def rollback(self) -> None:
        journal = getattr(self._unit, 'journal', None) or []
        with self._lock:
            for table, record_id, previous in reversed(journal):
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
            self._end_unit()
        self._release_record_locks()

    def _end_unit(self) -> None:
        token = getattr(self._unit, 'token', None)
        for key in [key for key, entry in self._uncommitted.items() if entry[0] is token]:
            del self._uncommitted[key]
        self._unit.journal = None
        self._unit.token = None
        self._unit_ended.notify_all()

    def _release_record_locks(self) -> None:
        held = getattr(self._unit, 'held', None) or []
        self._unit.held = []
        for key in reversed(held):
            self._record_locks[key].release()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    The connection runs in autocommit mode. A unit of work issues
    BEGIN IMMEDIATE and keeps the storage lock for its whole duration, so
    one writer at a time proceeds and load_for_update() needs no extra
    locking.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
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
            # DDL inside a unit of work is rolled back with it
            if not self._in_transaction:
                self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError:
                raise DuplicateKeyError(table, record_id)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._require_transaction()
        return self.load(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        self._in_transaction = True

    def commit(self) -> None:
        if not self._in_transaction:
            return
        self._connection.execute("COMMIT")
        self._in_transaction = False
        self._lock.release()

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        try:
            self._connection.execute("ROLLBACK")
        finally:
            self._in_transaction = False
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend.

    Rows live in JSONB documents. load_for_update() issues SELECT ... FOR UPDATE
    so writers in other processes are serialized on the same row; writers in
    this process share one connection and are serialized by the storage lock.
    """

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()
        self._connection = self.psycopg2.connect(
            self.connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._connection.autocommit = False

    def _finish_statement(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        data JSONB NOT NULL,
                        created_at TIMESTAMP DEFAULT NOW(),
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                self._finish_statement()
                if not self._in_transaction:
                    self._tables.add(table)
            finally:
                cursor.close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))
                self._finish_statement()
            finally:
                cursor.close()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                """, (record_id, json.dumps(data, default=str), now, now))
                self._finish_statement()
            except self.psycopg2.IntegrityError:
                # Inside a unit of work the caller's rollback clears the aborted transaction
                if not self._in_transaction:
                    self._connection.rollback()
                raise DuplicateKeyError(table, record_id)
            finally:
                cursor.close()

    def _select_one(self, table: str, record_id: str, suffix: str = "") -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE id = %s {suffix}
                """, (record_id,))
                row = cursor.fetchone()
                self._finish_statement()
                if row:
                    return dict(row['data'])
                return None
            finally:
                cursor.close()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._select_one(table, record_id)

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._require_transaction()
        return self._select_one(table, record_id, "FOR UPDATE")

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                if not filters:
                    cursor.execute(f"""
                        SELECT data FROM {table} ORDER BY created_at
                    """)
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY created_at
                    """, (json.dumps(filters, default=str),))
                rows = cursor.fetchall()
                self._finish_statement()
                return [dict(row['data']) for row in rows]
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                result = cursor.fetchone()['count']
                self._finish_statement()
                return result
            finally:
                cursor.close()

    def begin_transaction(self) -> None:
        # psycopg2 opens the transaction on the first statement
        self._lock.acquire()
        self._in_transaction = True

    def commit(self) -> None:
        if not self._in_transaction:
            return
        self._connection.commit()
        self._in_transaction = False
        self._lock.release()

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        try:
            self._connection.rollback()
        finally:
            self._in_transaction = False
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db`` (``sqlite://``
    alone means an in-memory SQLite database) and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
