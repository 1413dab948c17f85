"""
Database Manager Module - Classbook

This module provides the persistent document store used by every Classbook
manager. Documents are plain key/value maps addressed by a composite
(school_id, collection, doc_id) key and stored as JSON in SQLite. Nested
collections such as a user's notifications are expressed as slash paths
(``users/<user_id>/notifications``).

Features:
- SQLite connection management (thread-local connections, shared in-memory connection)
- Document CRUD: get, add, set (with merge), update, delete
- Field queries: equality, inequality, range, array-contains and membership
- Atomic write batches with a per-commit operation limit
- Transaction support
"""

import sqlite3
import logging
import threading
import json
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from classbook.modules.errors import BatchLimitError, DocumentNotFoundError

# Per-commit limit of the underlying store
MAX_BATCH_OPERATIONS = 500

_MISSING = object()


@dataclass(frozen=True)
class Where:
    """A single field predicate used by DatabaseManager.query."""
    field: str
    op: str
    value: Any

    OPERATORS = ('==', '!=', '<', '<=', '>', '>=', 'array-contains', 'in')

    def __post_init__(self):
        if self.op not in self.OPERATORS:
            raise ValueError(f"Unsupported query operator: {self.op}")

    def matches(self, document: Dict[str, Any]) -> bool:
        actual = document.get(self.field, _MISSING)
        if actual is _MISSING:
            return False

        if self.op == '==':
            return actual == self.value
        if self.op == '!=':
            return actual != self.value
        if self.op == 'array-contains':
            return isinstance(actual, list) and self.value in actual
        if self.op == 'in':
            return actual in self.value

        if actual is None:
            return False
        try:
            if self.op == '<':
                return actual < self.value
            if self.op == '<=':
                return actual <= self.value
            if self.op == '>':
                return actual > self.value
            return actual >= self.value
        except TypeError:
            # Mixed types never match a range predicate
            return False


class WriteBatch:
    """
    Collects set/update/delete operations and commits them atomically.

    A batch is bound to the DatabaseManager that created it; nothing is
    written until commit() is called.
    """

    def __init__(self, database_manager: 'DatabaseManager'):
        self._db = database_manager
        self._operations: List[tuple] = []

    def __len__(self) -> int:
        return len(self._operations)

    def set(self, school_id: str, collection: str, doc_id: str,
            data: Dict[str, Any], merge: bool = False) -> 'WriteBatch':
        self._operations.append(('set', school_id, collection, doc_id, dict(data), merge))
        return self

    def update(self, school_id: str, collection: str, doc_id: str,
               partial: Dict[str, Any]) -> 'WriteBatch':
        self._operations.append(('update', school_id, collection, doc_id, dict(partial), False))
        return self

    def delete(self, school_id: str, collection: str, doc_id: str) -> 'WriteBatch':
        self._operations.append(('delete', school_id, collection, doc_id, None, False))
        return self

    def commit(self) -> int:
        """
        Commit every queued operation in one transaction.

        Returns:
            int: Number of operations written
        """
        count = self._db.commit_batch(self._operations)
        self._operations = []
        return count


class DatabaseManager:
    """
    Document store over SQLite for the Classbook core.
    Handles connection management, schema creation and document access with
    proper error handling and transaction support.
    """

    def __init__(self, db_path):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file, or ':memory:'
        """
        self.db_path = str(db_path)
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        self._lock = threading.RLock()
        self._shared_connection: Optional[sqlite3.Connection] = None

        if self.db_path != ':memory:':
            # Ensure database directory exists
            os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)

        self.initialize_database()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=30.0
        )
        connection.row_factory = sqlite3.Row
        return connection

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        File databases get one connection per thread; an in-memory database
        shares a single connection so every thread sees the same data.
        Access is serialized by a re-entrant lock.

        Yields:
            sqlite3.Connection: Database connection object
        """
        with self._lock:
            if self.db_path == ':memory:':
                if self._shared_connection is None:
                    self._shared_connection = self._open_connection()
                connection = self._shared_connection
            else:
                if not hasattr(self._local, 'connection'):
                    self._local.connection = self._open_connection()
                connection = self._local.connection

            try:
                yield connection
            except Exception as e:
                connection.rollback()
                self.logger.error(f"Database operation failed: {str(e)}")
                raise

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions with automatic rollback on error.

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception as e:
                conn.rollback()
                self.logger.error(f"Transaction rolled back: {str(e)}")
                raise

    def initialize_database(self):
        """
        Create the document table and its indexes.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.transaction() as conn:
                cursor = conn.cursor()
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS documents (
                        school_id VARCHAR(100) NOT NULL,
                        collection VARCHAR(255) NOT NULL,
                        doc_id VARCHAR(100) NOT NULL,
                        data TEXT NOT NULL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (school_id, collection, doc_id)
                    )
                """)
                cursor.execute(
                    "CREATE INDEX IF NOT EXISTS idx_documents_collection "
                    "ON documents(school_id, collection)"
                )

            self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    @staticmethod
    def new_id() -> str:
        """Generate a new document id."""
        return uuid.uuid4().hex[:20]

    @staticmethod
    def _decode(doc_id: str, raw: str) -> Dict[str, Any]:
        document = json.loads(raw)
        document['id'] = doc_id
        return document

    @staticmethod
    def _encode(data: Dict[str, Any]) -> str:
        payload = {k: v for k, v in data.items() if k != 'id'}
        return json.dumps(payload, ensure_ascii=False)

    def _read(self, cursor, school_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        cursor.execute(
            "SELECT data FROM documents WHERE school_id = ? AND collection = ? AND doc_id = ?",
            (school_id, collection, doc_id)
        )
        row = cursor.fetchone()
        return self._decode(doc_id, row['data']) if row else None

    def _write(self, cursor, school_id: str, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        cursor.execute("""
            INSERT INTO documents (school_id, collection, doc_id, data)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(school_id, collection, doc_id)
            DO UPDATE SET data = excluded.data, updated_at = CURRENT_TIMESTAMP
        """, (school_id, collection, doc_id, self._encode(data)))

    def _apply(self, cursor, operation: tuple) -> None:
        kind, school_id, collection, doc_id, data, merge = operation

        if kind == 'delete':
            cursor.execute(
                "DELETE FROM documents WHERE school_id = ? AND collection = ? AND doc_id = ?",
                (school_id, collection, doc_id)
            )
            return

        existing = self._read(cursor, school_id, collection, doc_id)

        if kind == 'update':
            if existing is None:
                raise DocumentNotFoundError(school_id, collection, doc_id)
            existing.update(data)
            self._write(cursor, school_id, collection, doc_id, existing)
            return

        if merge and existing is not None:
            existing.update(data)
            data = existing
        self._write(cursor, school_id, collection, doc_id, data)

    def get(self, school_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a single document.

        Args:
            school_id (str): Owning school
            collection (str): Collection path
            doc_id (str): Document id

        Returns:
            Dict[str, Any]: Document with its id under 'id', or None
        """
        if not doc_id:
            return None
        with self.get_connection() as conn:
            return self._read(conn.cursor(), school_id, collection, doc_id)

    def query(self, school_id: str, collection: str, *predicates: Where,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Return documents of a collection matching every predicate.

        Args:
            school_id (str): Owning school
            collection (str): Collection path
            *predicates (Where): Field predicates, combined with AND
            order_by (str): Field to sort on; documents missing it sort last
            descending (bool): Reverse the sort order
            limit (int): Maximum number of documents

        Returns:
            List[Dict[str, Any]]: Matching documents
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT doc_id, data FROM documents WHERE school_id = ? AND collection = ? "
                "ORDER BY created_at, rowid",
                (school_id, collection)
            )
            rows = cursor.fetchall()

        documents = [self._decode(row['doc_id'], row['data']) for row in rows]
        documents = [doc for doc in documents if all(p.matches(doc) for p in predicates)]

        if order_by:
            present = [doc for doc in documents if doc.get(order_by) is not None]
            absent = [doc for doc in documents if doc.get(order_by) is None]
            present.sort(key=lambda doc: doc[order_by], reverse=descending)
            documents = present + absent

        if limit is not None:
            documents = documents[:limit]

        return documents

    def count(self, school_id: str, collection: str, *predicates: Where) -> int:
        """Count documents matching every predicate."""
        return len(self.query(school_id, collection, *predicates))

    def add(self, school_id: str, collection: str, data: Dict[str, Any]) -> str:
        """
        Insert a document under a generated id.

        Returns:
            str: The new document id
        """
        doc_id = self.new_id()
        self.set(school_id, collection, doc_id, data)
        return doc_id

    def set(self, school_id: str, collection: str, doc_id: str,
            data: Dict[str, Any], merge: bool = False) -> None:
        """Create or overwrite a document; with merge=True existing fields are kept."""
        with self.transaction() as conn:
            self._apply(conn.cursor(), ('set', school_id, collection, doc_id, dict(data), merge))

    def update(self, school_id: str, collection: str, doc_id: str, partial: Dict[str, Any]) -> None:
        """
        Update fields of an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        with self.transaction() as conn:
            self._apply(conn.cursor(), ('update', school_id, collection, doc_id, dict(partial), False))

    def delete(self, school_id: str, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document is a no-op."""
        with self.transaction() as conn:
            self._apply(conn.cursor(), ('delete', school_id, collection, doc_id, None, False))

    def batch(self) -> WriteBatch:
        """Start a new atomic write batch."""
        return WriteBatch(self)

    def commit_batch(self, operations: List[tuple]) -> int:
        """
        Apply a list of batch operations atomically.

        Args:
            operations (list): Operations queued by a WriteBatch

        Returns:
            int: Number of operations written

        Raises:
            BatchLimitError: If the batch exceeds MAX_BATCH_OPERATIONS
        """
        if len(operations) > MAX_BATCH_OPERATIONS:
            raise BatchLimitError(
                f"Batch of {len(operations)} operations exceeds the limit of {MAX_BATCH_OPERATIONS}"
            )
        if not operations:
            return 0

        with self.transaction() as conn:
            cursor = conn.cursor()
            for operation in operations:
                self._apply(cursor, operation)

        self.logger.debug(f"Committed batch of {len(operations)} operations")
        return len(operations)

    def close_all_connections(self):
        """Close database connections for cleanup."""
        try:
            if hasattr(self._local, 'connection'):
                self._local.connection.close()
                del self._local.connection
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None
        except sqlite3.Error as e:
            self.logger.error(f"Error closing connections: {str(e)}")
