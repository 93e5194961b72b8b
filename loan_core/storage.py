"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Both backends support re-entrant atomic() blocks: nested blocks join the
outermost transaction and an exception anywhere rolls back all of it.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .logging_config import get_logger

logger = get_logger("loan_core.storage")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageError(Exception):
    """Raised when the storage backend is misused"""


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


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
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
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

    def on_commit(self, callback: Callable[[], None]) -> None:
        """
        Run callback once the current transaction commits

        Outside a transaction the callback runs immediately. Callbacks
        registered in a transaction that rolls back are discarded.
        """
        self._run_callbacks([callback])

    def _run_callbacks(self, callbacks: List[Callable[[], None]]) -> None:
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Post-commit callback {getattr(callback, '__name__', repr(callback))} failed: {e}")

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Writes made inside a transaction are buffered per thread and applied
    under the lock on commit, so other threads never see partial work.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    # Per-thread transaction state

    def _depth(self) -> int:
        return getattr(self._local, 'depth', 0)

    def _pending(self) -> Optional[Dict[Tuple[str, str], Optional[Dict[str, Any]]]]:
        """Buffered writes of the current thread; None value marks a delete"""
        if self._depth() == 0:
            return None
        return self._local.pending

    def _table_view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows merged with this thread's buffered writes"""
        with self._lock:
            self._ensure_table(table)
            view = dict(self._data[table])
        pending = self._pending()
        if pending:
            for (pending_table, record_id), data in pending.items():
                if pending_table != table:
                    continue
                if data is None:
                    view.pop(record_id, None)
                else:
                    view[record_id] = data
        return view

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        pending = self._pending()
        if pending is not None:
            pending[(table, record_id)] = _copy(data)
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._table_view(table).get(record_id)
        if record:
            return _copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._table_view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        pending = self._pending()
        if pending is not None:
            existed = record_id in self._table_view(table)
            pending[(table, record_id)] = None
            return existed
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._table_view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._table_view(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._table_view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Start (or join) this thread's transaction"""
        depth = self._depth()
        if depth == 0:
            self._local.pending = {}
            self._local.callbacks = []
            self._local.rollback_only = False
        self._local.depth = depth + 1

    def commit(self) -> None:
        """Apply buffered writes once the outermost block completes"""
        depth = self._depth()
        if depth == 0:
            return
        self._local.depth = depth - 1
        if depth > 1:
            return

        pending = self._local.pending
        callbacks = self._local.callbacks
        rollback_only = self._local.rollback_only
        self._local.pending = None
        self._local.callbacks = None
        if rollback_only:
            raise StorageError("Transaction was rolled back by a nested block")

        with self._lock:
            for (table, record_id), data in pending.items():
                self._ensure_table(table)
                if data is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = data

        self._run_callbacks(callbacks)

    def rollback(self) -> None:
        """Discard buffered writes; a nested rollback dooms the outer block"""
        depth = self._depth()
        if depth == 0:
            return
        self._local.depth = depth - 1
        if depth > 1:
            self._local.rollback_only = True
            return
        self._local.pending = None
        self._local.callbacks = None

    def on_commit(self, callback: Callable[[], None]) -> None:
        if self._depth() == 0:
            self._run_callbacks([callback])
        else:
            self._local.callbacks.append(callback)

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    The connection lock is held from begin_transaction until commit or
    rollback so one thread's commit never flushes another thread's writes.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._callbacks: List[Callable[[], None]] = []
        self._rollback_only = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._tx_depth > 0

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
            if not self._in_transaction:
                self._connection.commit()
                self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            created_at = data.get('created_at') or ""
            updated_at = data.get('updated_at') or created_at
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, created_at, updated_at))

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()

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
                SELECT data FROM {table} ORDER BY created_at, id
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            if not self._in_transaction:
                self._connection.commit()
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
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

            if not self._in_transaction:
                self._connection.commit()

    def begin_transaction(self) -> None:
        """Start (or join) a transaction; keeps the connection lock until it ends"""
        self._lock.acquire()
        if self._tx_depth == 0:
            self._callbacks = []
            self._rollback_only = False
        self._tx_depth += 1

    def commit(self) -> None:
        """Commit once the outermost block completes"""
        if not self._in_transaction:
            return
        callbacks = []
        try:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                if self._rollback_only:
                    self._connection.rollback()
                    self._callbacks = []
                    raise StorageError("Transaction was rolled back by a nested block")
                self._connection.commit()
                callbacks, self._callbacks = self._callbacks, []
        finally:
            self._lock.release()
        self._run_callbacks(callbacks)

    def rollback(self) -> None:
        """Rollback the whole transaction"""
        if not self._in_transaction:
            return
        try:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._connection.rollback()
                self._callbacks = []
            else:
                self._rollback_only = True
        finally:
            self._lock.release()

    def on_commit(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if self._in_transaction:
                self._callbacks.append(callback)
                return
        self._run_callbacks([callback])

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    memory:// selects InMemoryStorage, sqlite:///path (or sqlite:///:memory:)
    selects SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise StorageError(f"Unsupported database URL: {database_url}")
