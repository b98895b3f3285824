"""
Shared SQLite handle for the queue and execution state stores.

Prototype: SQLite. The queue and the state store can share one Database so
that a claim and a checkpoint commit under the same lock.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional


class Database:
    """
    A SQLite connection in autocommit mode plus a re-entrant lock.

    Writers wrap their work in `transaction()`, which issues
    BEGIN IMMEDIATE so a read-then-write sequence cannot interleave with
    another writer on the same file.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically. Nested calls join the outer transaction."""
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outermost:
                self._conn.execute("COMMIT")

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
